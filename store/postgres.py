"""asyncpg-backed projection store (CockroachDB / PostgreSQL).

Every session runs inside ``conn.transaction()``; ticket reads inside a
session take a row lock (``SELECT ... FOR UPDATE``) and updates use
``UPDATE ... RETURNING`` so concurrent handlers for the same ticket
serialize on the row.

Driver and server failures (asyncpg.PostgresError, asyncpg.InterfaceError,
OSError) surface as StoreError.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Tuple

import asyncpg

from . import (
    Cursor,
    Listing,
    ListingExistsError,
    StateSession,
    StateStore,
    StoreError,
    Ticket,
    TicketNotFoundError,
    TicketStatus,
    Transaction,
    TransactionType,
)

logger = logging.getLogger(__name__)


def _ticket(row) -> Ticket:
    return Ticket(
        token_id=row['token_id'],
        owner_address=row['owner_address'],
        status=TicketStatus(row['status']),
        price=int(row['price'])
    )


def _listing(row) -> Listing:
    return Listing(
        token_id=row['token_id'],
        seller_address=row['seller_address'],
        price=int(row['price'])
    )


def _transaction(row) -> Transaction:
    return Transaction(
        hash=row['hash'],
        type=TransactionType(row['type']),
        user_address=row['user_address'],
        token_id=row['token_id'],
        amount=row['amount'],
        timestamp=row['timestamp']
    )


class PostgresSession(StateSession):

    def __init__(self, conn):
        self.conn = conn

    async def get_ticket(self, token_id: int) -> Optional[Ticket]:
        row = await self.conn.fetchrow(
            'SELECT * FROM tickets WHERE token_id = $1 FOR UPDATE',
            token_id
        )
        return _ticket(row) if row else None

    async def upsert_ticket(self, token_id: int, owner_address: str) -> Ticket:
        row = await self.conn.fetchrow(
            '''
            INSERT INTO tickets (token_id, owner_address, status, price)
            VALUES ($1, $2, 'IDLE', 0)
            ON CONFLICT (token_id) DO UPDATE
            SET owner_address = EXCLUDED.owner_address,
                updated_at = now()
            RETURNING *
            ''',
            token_id,
            owner_address
        )
        return _ticket(row)

    async def update_ticket(self, token_id, status=None, price=None, owner_address=None) -> Ticket:
        # Build update query dynamically based on provided fields
        update_fields = []
        params = [token_id]

        if status is not None:
            params.append(TicketStatus(status).value)
            update_fields.append(f"status = ${len(params)}")
        if price is not None:
            params.append(price)
            update_fields.append(f"price = ${len(params)}")
        if owner_address is not None:
            params.append(owner_address)
            update_fields.append(f"owner_address = ${len(params)}")

        if not update_fields:
            ticket = await self.get_ticket(token_id)
            if ticket is None:
                raise TicketNotFoundError(f"Ticket {token_id} not found")
            return ticket

        row = await self.conn.fetchrow(
            f'''
            UPDATE tickets
            SET {", ".join(update_fields)},
                updated_at = now()
            WHERE token_id = $1
            RETURNING *
            ''',
            *params
        )
        if row is None:
            raise TicketNotFoundError(f"Ticket {token_id} not found")
        return _ticket(row)

    async def ensure_user(self, address: str) -> None:
        await self.conn.execute(
            'INSERT INTO users (address) VALUES ($1) ON CONFLICT (address) DO NOTHING',
            address
        )

    async def get_listing(self, token_id: int) -> Optional[Listing]:
        row = await self.conn.fetchrow('SELECT * FROM listings WHERE token_id = $1', token_id)
        return _listing(row) if row else None

    async def create_listing(self, token_id: int, seller_address: str, price: int) -> Listing:
        row = await self.conn.fetchrow(
            '''
            INSERT INTO listings (token_id, seller_address, price)
            VALUES ($1, $2, $3)
            ON CONFLICT (token_id) DO NOTHING
            RETURNING *
            ''',
            token_id,
            seller_address,
            price
        )
        if row is None:
            raise ListingExistsError(f"Ticket {token_id} already has an active listing")
        return _listing(row)

    async def delete_listing(self, token_id: int) -> bool:
        row = await self.conn.fetchrow(
            'DELETE FROM listings WHERE token_id = $1 RETURNING token_id',
            token_id
        )
        return row is not None

    async def has_transaction(self, tx_hash: str, tx_type: TransactionType, token_id: int) -> bool:
        return await self.conn.fetchval(
            'SELECT EXISTS (SELECT 1 FROM transactions WHERE hash = $1 AND type = $2 AND token_id = $3)',
            tx_hash,
            TransactionType(tx_type).value,
            token_id
        )

    async def append_transaction(self, transaction: Transaction) -> bool:
        row = await self.conn.fetchrow(
            '''
            INSERT INTO transactions (hash, type, user_address, token_id, amount, timestamp)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (hash, type, token_id) DO NOTHING
            RETURNING id
            ''',
            transaction.hash,
            transaction.type.value,
            transaction.user_address,
            transaction.token_id,
            transaction.amount,
            transaction.timestamp
        )
        return row is not None

    async def save_cursor(self, source: str, block_number: int, log_index: int) -> None:
        await self.conn.execute(
            '''
            INSERT INTO ledger_cursors (source, block_number, log_index)
            VALUES ($1, $2, $3)
            ON CONFLICT (source) DO UPDATE
            SET block_number = EXCLUDED.block_number,
                log_index = EXCLUDED.log_index,
                updated_at = now()
            WHERE (ledger_cursors.block_number, ledger_cursors.log_index)
                < (EXCLUDED.block_number, EXCLUDED.log_index)
            ''',
            source,
            block_number,
            log_index
        )


class PostgresStateStore(StateStore):
    """Projection persisted in CockroachDB through an asyncpg pool."""

    def __init__(self, pool):
        """Initialize the store.

        Args:
            pool: asyncpg pool, normally from database.init_db()
        """
        self.pool = pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresSession]:
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    yield PostgresSession(conn)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise StoreError(f"Projection write failed: {e}") from e

    @asynccontextmanager
    async def _reading(self, what: str):
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            raise StoreError(f"Failed to read {what}: {e}") from e

    async def get_cursor(self, source: str) -> Optional[Cursor]:
        async with self._reading('cursor') as conn:
            row = await conn.fetchrow(
                'SELECT source, block_number, log_index FROM ledger_cursors WHERE source = $1',
                source
            )
        return Cursor(row['source'], row['block_number'], row['log_index']) if row else None

    async def user_exists(self, address: str) -> bool:
        async with self._reading('user') as conn:
            return await conn.fetchval(
                'SELECT EXISTS (SELECT 1 FROM users WHERE address = $1)',
                address
            )

    async def get_ticket(self, token_id: int) -> Optional[Ticket]:
        async with self._reading('ticket') as conn:
            row = await conn.fetchrow('SELECT * FROM tickets WHERE token_id = $1', token_id)
        return _ticket(row) if row else None

    async def get_tickets_by_owner(self, address: str) -> List[Ticket]:
        async with self._reading('owner tickets') as conn:
            rows = await conn.fetch(
                'SELECT * FROM tickets WHERE owner_address = $1 ORDER BY token_id',
                address
            )
        return [_ticket(row) for row in rows]

    async def get_listings_by_seller(self, address: str) -> List[Listing]:
        async with self._reading('seller listings') as conn:
            rows = await conn.fetch(
                'SELECT * FROM listings WHERE seller_address = $1 ORDER BY token_id',
                address
            )
        return [_listing(row) for row in rows]

    async def get_recent_transactions(self, address: str, limit: int = 10) -> List[Transaction]:
        async with self._reading('transaction history') as conn:
            rows = await conn.fetch(
                '''
                SELECT hash, type, user_address, token_id, amount, timestamp
                FROM transactions
                WHERE user_address = $1
                ORDER BY timestamp DESC, seq DESC
                LIMIT $2
                ''',
                address,
                limit
            )
        return [_transaction(row) for row in rows]

    async def get_active_listings(self) -> List[Tuple[Listing, Ticket]]:
        async with self._reading('active listings') as conn:
            rows = await conn.fetch(
                '''
                SELECT
                    l.token_id,
                    l.seller_address,
                    l.price AS listing_price,
                    t.owner_address,
                    t.status,
                    t.price AS ticket_price
                FROM listings l
                JOIN tickets t ON t.token_id = l.token_id
                ORDER BY l.token_id
                '''
            )
        return [
            (
                Listing(row['token_id'], row['seller_address'], int(row['listing_price'])),
                Ticket(
                    row['token_id'],
                    row['owner_address'],
                    TicketStatus(row['status']),
                    int(row['ticket_price'])
                )
            )
            for row in rows
        ]

    async def close(self) -> None:
        # Pool lifecycle belongs to the database module
        logger.debug("Postgres store closed")
