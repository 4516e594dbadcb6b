"""Schema v2 - Idempotent history and replay checkpoints.

This version:
- Enforces at most one transaction row per (hash, type) so redelivered
  events cannot duplicate history. Existing duplicates are removed first.
- Adds ledger_cursors, the last applied (block_number, log_index) per source,
  used to replay events missed while disconnected.
"""

from .v1 import schema as v1_schema

schema = {
    'version': 2,
    'tables': [
        *[
            {
                **table,
                'indexes': table.get('indexes', []) + [
                    {'name': 'idx_transactions_hash_type', 'columns': ['hash', 'type'], 'unique': True}
                ]
            } if table['name'] == 'transactions' else table
            for table in v1_schema['tables']
        ],
        {
            'name': 'ledger_cursors',
            'columns': [
                {'name': 'source', 'type': 'TEXT', 'primary_key': True},
                {'name': 'block_number', 'type': 'INT8', 'nullable': False},
                {'name': 'log_index', 'type': 'INT8', 'nullable': False},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ]
        }
    ],
    'migrations': [
        '''
        DELETE FROM transactions
        WHERE id IN (
            SELECT id FROM (
                SELECT
                    id,
                    row_number() OVER (PARTITION BY hash, type ORDER BY timestamp, id) AS rn
                FROM transactions
            ) AS ranked
            WHERE rn > 1
        )
        ''',
        'CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_hash_type ON transactions (hash, type)',
        '''
        CREATE TABLE IF NOT EXISTS ledger_cursors (
            source TEXT PRIMARY KEY,
            block_number INT8 NOT NULL,
            log_index INT8 NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        '''
    ]
}
