"""Store module holding the off-ledger projection.

The projection is four relational entities (Ticket, User, Listing, Transaction)
plus one replay cursor per event source. Writes happen only through a
``StateSession`` obtained from ``StateStore.transaction()``; everything done in
one session commits or rolls back together. Reads used by the query surface
live directly on ``StateStore``.

Two implementations are provided:
- ``store.memory.MemoryStateStore`` for tests and single-process runs
- ``store.postgres.PostgresStateStore`` backed by asyncpg/CockroachDB
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncContextManager, Dict, List, Optional, Tuple


class TicketStatus(str, Enum):
    IDLE = 'IDLE'
    STAKED = 'STAKED'
    COLLATERALIZED = 'COLLATERALIZED'
    LISTED = 'LISTED'


class TransactionType(str, Enum):
    MINT = 'MINT'
    TRANSFER = 'TRANSFER'
    STAKE = 'STAKE'
    UNSTAKE = 'UNSTAKE'
    DEPOSIT = 'DEPOSIT'
    WITHDRAW = 'WITHDRAW'
    LIST = 'LIST'
    CANCEL = 'CANCEL'
    SALE = 'SALE'


@dataclass
class Ticket:
    token_id: int
    owner_address: str
    status: TicketStatus = TicketStatus.IDLE
    price: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data


@dataclass
class Listing:
    token_id: int
    seller_address: str
    price: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Transaction:
    hash: str
    type: TransactionType
    user_address: str
    token_id: int
    timestamp: datetime
    amount: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['type'] = self.type.value
        return data


@dataclass(frozen=True)
class Cursor:
    """Last applied log position for one source."""
    source: str
    block_number: int
    log_index: int

    @property
    def position(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)


class StoreError(Exception):
    """Base exception for projection store operations."""
    pass


class TicketNotFoundError(StoreError):
    """Raised when an event references a ticket that was never minted."""
    pass


class ListingExistsError(StoreError):
    """Raised when a ticket already has an active listing."""
    pass


class StateSession(ABC):
    """Atomic unit of work over the projection."""

    @abstractmethod
    async def get_ticket(self, token_id: int) -> Optional[Ticket]:
        """Read a ticket, locking its row for the rest of the session."""

    @abstractmethod
    async def upsert_ticket(self, token_id: int, owner_address: str) -> Ticket:
        """Set the owner, creating the ticket as IDLE with price 0 if absent."""

    @abstractmethod
    async def update_ticket(
        self,
        token_id: int,
        status: Optional[TicketStatus] = None,
        price: Optional[int] = None,
        owner_address: Optional[str] = None
    ) -> Ticket:
        """Update fields of an existing ticket.

        Raises:
            TicketNotFoundError: If the ticket doesn't exist
        """

    @abstractmethod
    async def ensure_user(self, address: str) -> None:
        """Create the user row if it doesn't exist."""

    @abstractmethod
    async def get_listing(self, token_id: int) -> Optional[Listing]:
        pass

    @abstractmethod
    async def create_listing(self, token_id: int, seller_address: str, price: int) -> Listing:
        """Create the active listing for a ticket.

        Raises:
            ListingExistsError: If the ticket already has one
        """

    @abstractmethod
    async def delete_listing(self, token_id: int) -> bool:
        """Delete the listing for a ticket; returns whether one existed."""

    @abstractmethod
    async def has_transaction(self, tx_hash: str, tx_type: TransactionType, token_id: int) -> bool:
        pass

    @abstractmethod
    async def append_transaction(self, transaction: Transaction) -> bool:
        """Append a history row unless (hash, type, token_id) is already recorded.

        Returns:
            True if a row was inserted
        """

    @abstractmethod
    async def save_cursor(self, source: str, block_number: int, log_index: int) -> None:
        """Advance the source's cursor; never moves it backwards."""


class StateStore(ABC):
    """Persisted projection plus its read API."""

    @abstractmethod
    def transaction(self) -> AsyncContextManager[StateSession]:
        """Open an atomic session; commits on normal exit, rolls back on error."""

    @abstractmethod
    async def get_cursor(self, source: str) -> Optional[Cursor]:
        pass

    async def save_cursor(self, source: str, block_number: int, log_index: int) -> None:
        """Advance a cursor in its own session."""
        async with self.transaction() as session:
            await session.save_cursor(source, block_number, log_index)

    @abstractmethod
    async def user_exists(self, address: str) -> bool:
        pass

    @abstractmethod
    async def get_ticket(self, token_id: int) -> Optional[Ticket]:
        pass

    @abstractmethod
    async def get_tickets_by_owner(self, address: str) -> List[Ticket]:
        pass

    @abstractmethod
    async def get_listings_by_seller(self, address: str) -> List[Listing]:
        pass

    @abstractmethod
    async def get_recent_transactions(self, address: str, limit: int = 10) -> List[Transaction]:
        """Transactions for a user, newest first."""

    @abstractmethod
    async def get_active_listings(self) -> List[Tuple[Listing, Ticket]]:
        """All listings joined with their ticket."""

    async def close(self) -> None:
        pass


__all__ = [
    'TicketStatus',
    'TransactionType',
    'Ticket',
    'Listing',
    'Transaction',
    'Cursor',
    'StoreError',
    'TicketNotFoundError',
    'ListingExistsError',
    'StateSession',
    'StateStore',
]
