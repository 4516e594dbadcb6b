"""In-memory projection store.

Sessions are serialized by a single lock and work on a snapshot of the
tables; the snapshot replaces the live tables only when the session exits
cleanly, so a failing handler leaves no partial writes behind.
"""

import asyncio
import copy
import itertools
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple

from . import (
    Cursor,
    Listing,
    ListingExistsError,
    StateSession,
    StateStore,
    Ticket,
    TicketNotFoundError,
    TicketStatus,
    Transaction,
    TransactionType,
)


@dataclass
class _Tables:
    users: Set[str] = field(default_factory=set)
    tickets: Dict[int, Ticket] = field(default_factory=dict)
    listings: Dict[int, Listing] = field(default_factory=dict)
    # (sequence, row); sequence breaks timestamp ties in insertion order
    transactions: List[Tuple[int, Transaction]] = field(default_factory=list)
    transaction_keys: Set[Tuple[str, str, int]] = field(default_factory=set)
    cursors: Dict[str, Cursor] = field(default_factory=dict)


class MemorySession(StateSession):

    def __init__(self, tables: _Tables, sequence):
        self._t = tables
        self._sequence = sequence

    async def get_ticket(self, token_id: int) -> Optional[Ticket]:
        ticket = self._t.tickets.get(token_id)
        return replace(ticket) if ticket else None

    async def upsert_ticket(self, token_id: int, owner_address: str) -> Ticket:
        ticket = self._t.tickets.get(token_id)
        if ticket is None:
            ticket = Ticket(token_id=token_id, owner_address=owner_address)
            self._t.tickets[token_id] = ticket
        else:
            ticket.owner_address = owner_address
        return replace(ticket)

    async def update_ticket(self, token_id, status=None, price=None, owner_address=None) -> Ticket:
        ticket = self._t.tickets.get(token_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {token_id} not found")
        if status is not None:
            ticket.status = TicketStatus(status)
        if price is not None:
            ticket.price = price
        if owner_address is not None:
            ticket.owner_address = owner_address
        return replace(ticket)

    async def ensure_user(self, address: str) -> None:
        self._t.users.add(address)

    async def get_listing(self, token_id: int) -> Optional[Listing]:
        listing = self._t.listings.get(token_id)
        return replace(listing) if listing else None

    async def create_listing(self, token_id: int, seller_address: str, price: int) -> Listing:
        if token_id in self._t.listings:
            raise ListingExistsError(f"Ticket {token_id} already has an active listing")
        if token_id not in self._t.tickets:
            raise TicketNotFoundError(f"Ticket {token_id} not found")
        listing = Listing(token_id=token_id, seller_address=seller_address, price=price)
        self._t.listings[token_id] = listing
        return replace(listing)

    async def delete_listing(self, token_id: int) -> bool:
        return self._t.listings.pop(token_id, None) is not None

    async def has_transaction(self, tx_hash: str, tx_type: TransactionType, token_id: int) -> bool:
        return (tx_hash, TransactionType(tx_type).value, token_id) in self._t.transaction_keys

    async def append_transaction(self, transaction: Transaction) -> bool:
        key = (transaction.hash, transaction.type.value, transaction.token_id)
        if key in self._t.transaction_keys:
            return False
        self._t.transaction_keys.add(key)
        self._t.transactions.append((next(self._sequence), replace(transaction)))
        return True

    async def save_cursor(self, source: str, block_number: int, log_index: int) -> None:
        current = self._t.cursors.get(source)
        if current is None or current.position < (block_number, log_index):
            self._t.cursors[source] = Cursor(source, block_number, log_index)


class MemoryStateStore(StateStore):
    """Projection kept in process memory."""

    def __init__(self):
        self._tables = _Tables()
        self._lock = asyncio.Lock()
        self._sequence = itertools.count()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemorySession]:
        async with self._lock:
            working = copy.deepcopy(self._tables)
            yield MemorySession(working, self._sequence)
            self._tables = working

    async def get_cursor(self, source: str) -> Optional[Cursor]:
        return self._tables.cursors.get(source)

    async def user_exists(self, address: str) -> bool:
        return address in self._tables.users

    async def get_ticket(self, token_id: int) -> Optional[Ticket]:
        ticket = self._tables.tickets.get(token_id)
        return replace(ticket) if ticket else None

    async def get_tickets_by_owner(self, address: str) -> List[Ticket]:
        return [
            replace(t) for t in sorted(self._tables.tickets.values(), key=lambda t: t.token_id)
            if t.owner_address == address
        ]

    async def get_listings_by_seller(self, address: str) -> List[Listing]:
        return [
            replace(l) for l in sorted(self._tables.listings.values(), key=lambda l: l.token_id)
            if l.seller_address == address
        ]

    async def get_recent_transactions(self, address: str, limit: int = 10) -> List[Transaction]:
        rows = [
            (tx.timestamp, seq, tx) for seq, tx in self._tables.transactions
            if tx.user_address == address
        ]
        rows.sort(key=lambda row: (row[0], row[1]), reverse=True)
        return [replace(tx) for _, _, tx in rows[:limit]]

    async def get_active_listings(self) -> List[Tuple[Listing, Ticket]]:
        return [
            (replace(listing), replace(self._tables.tickets[token_id]))
            for token_id, listing in sorted(self._tables.listings.items())
            if token_id in self._tables.tickets
        ]

    async def count_transactions(self, tx_hash: Optional[str] = None) -> int:
        return sum(1 for _, tx in self._tables.transactions if tx_hash is None or tx.hash == tx_hash)
