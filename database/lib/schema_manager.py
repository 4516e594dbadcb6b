"""Database schema management module.

This module handles projection schema versioning and migrations. Schema versions
live in database/schema/vN.py, each exporting a ``schema`` dict with the full table
layout of that version plus the ``migrations`` needed to reach it from N-1.
"""
import importlib
import logging
from pathlib import Path
from typing import Dict, Any, List

from ..exceptions import DatabaseSchemaError

logger = logging.getLogger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent.parent / 'schema'


class SchemaManager:
    """Manages database schema versioning and migrations."""

    def __init__(self, pool, schema_dir: Path = SCHEMA_DIR) -> None:
        """Initialize schema manager.

        Args:
            pool: Database connection pool
            schema_dir: Directory containing schema version files
        """
        self.pool = pool
        self._schema_dir = Path(schema_dir)
        self.current_version = 0

    async def initialize(self, force_recreate: bool = False) -> None:
        """Create the version table if needed and run any pending migrations.

        Args:
            force_recreate: Drop every projection table and install the latest version

        Raises:
            DatabaseSchemaError: If initialization fails or no valid schema files are found
        """
        schema_files = self.load_schema_files()
        if not schema_files:
            raise DatabaseSchemaError(f"No valid schema files found in {self._schema_dir}")

        try:
            async with self.pool.acquire() as conn:
                await conn.execute('''
                    CREATE TABLE IF NOT EXISTS schema_version (
                        version INT8 PRIMARY KEY,
                        applied_at TIMESTAMP NOT NULL DEFAULT now()
                    )
                ''')
                if force_recreate:
                    await conn.execute('DELETE FROM schema_version')

                row = await conn.fetchrow(
                    'SELECT version FROM schema_version ORDER BY version DESC LIMIT 1'
                )
                self.current_version = row['version'] if row else 0

                await self._apply_migrations(conn, schema_files)

        except DatabaseSchemaError:
            raise
        except Exception as e:
            logger.error(f"Schema initialization failed: {e}")
            raise DatabaseSchemaError(f"Failed to initialize schema: {e}") from e

    def load_schema_files(self) -> Dict[int, Dict[str, Any]]:
        """Load all schema version files.

        Returns:
            Dict mapping version numbers to schema definitions, ordered by version
        """
        schema_files = {}

        if not self._schema_dir.exists():
            return schema_files

        for file in self._schema_dir.glob('v*.py'):
            try:
                version = int(file.stem[1:])
            except ValueError:
                logger.warning(f"Invalid schema filename: {file}")
                continue

            module = importlib.import_module(f"database.schema.{file.stem}")
            schema = getattr(module, 'schema', None)
            if schema is None:
                raise DatabaseSchemaError(f"Schema file {file} missing 'schema' definition")
            if schema['version'] != version:
                raise DatabaseSchemaError(
                    f"Schema version mismatch in {file}: "
                    f"Expected v{version}, got v{schema['version']}"
                )
            schema_files[version] = schema

        return dict(sorted(schema_files.items()))

    async def _apply_migrations(self, conn, schema_files: Dict[int, Dict[str, Any]]) -> None:
        latest_version = max(schema_files)
        if self.current_version >= latest_version:
            logger.info(f"Schema is up to date (v{self.current_version})")
            return

        logger.info(f"Updating schema from version {self.current_version} to {latest_version}")

        async with conn.transaction():
            if self.current_version == 0:
                await self._create_fresh_schema(conn, schema_files[latest_version])
                return

            for version in range(self.current_version + 1, latest_version + 1):
                if version not in schema_files:
                    continue
                for statement in schema_files[version].get('migrations', []):
                    await conn.execute(statement)
                await conn.execute('INSERT INTO schema_version (version) VALUES ($1)', version)
                logger.info(f"Successfully migrated to version {version}")

        self.current_version = latest_version

    async def _create_fresh_schema(self, conn, schema: Dict[str, Any]) -> None:
        tables = schema.get('tables', [])

        # Children first so foreign keys don't block the drop
        for table in reversed(tables):
            await conn.execute(f'DROP TABLE IF EXISTS {table["name"]} CASCADE')

        for table in tables:
            await conn.execute(self.create_table_sql(table))
            for statement in self.index_sql(table):
                await conn.execute(statement)
            logger.info(f"Created table {table['name']}")

        await conn.execute('INSERT INTO schema_version (version) VALUES ($1)', schema['version'])
        logger.info(f"Successfully created fresh schema version {schema['version']}")

    @staticmethod
    def create_table_sql(table: Dict[str, Any]) -> str:
        """Render CREATE TABLE for a table definition dict."""
        columns = []
        constraints = []

        for col in table['columns']:
            col_def = f"{col['name']} {col['type']}"
            if col.get('primary_key'):
                constraints.append(f"PRIMARY KEY ({col['name']})")
            if 'default' in col:
                col_def += f" DEFAULT {col['default']}"
            if col.get('nullable') is False:
                col_def += " NOT NULL"
            columns.append(col_def)

        if isinstance(table.get('primary_key'), list):
            constraints.append(f"PRIMARY KEY ({', '.join(table['primary_key'])})")

        for fk in table.get('foreign_keys', []):
            constraints.append(
                f"CONSTRAINT fk_{table['name']}_{fk['columns'][0]} "
                f"FOREIGN KEY ({', '.join(fk['columns'])}) REFERENCES {fk['references']}"
            )

        return f"CREATE TABLE IF NOT EXISTS {table['name']} ({', '.join(columns + constraints)})"

    @staticmethod
    def index_sql(table: Dict[str, Any]) -> List[str]:
        """Render CREATE INDEX statements for a table definition dict."""
        statements = []
        for idx in table.get('indexes', []):
            unique = 'UNIQUE ' if idx.get('unique') else ''
            where = f" WHERE {idx['where']}" if 'where' in idx else ''
            statements.append(
                f"CREATE {unique}INDEX IF NOT EXISTS {idx['name']} "
                f"ON {table['name']} ({', '.join(idx['columns'])}){where}"
            )
        return statements
