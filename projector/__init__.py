"""Projector module mapping ledger events onto the projection.

Each handler is registered in ``HANDLERS`` under its ``(source, event name)``
and receives an open ``StateSession`` plus the decoded event. The projector
wraps every handler, together with the source cursor advance, in a single
store transaction, so an event is either fully applied or not at all.

Redelivery is detected through the transaction log: if the event's
``(hash, type, token_id)`` row already exists the event is skipped before
any state is touched.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ledger.events import NULL_ADDRESS, LedgerEvent
from store import (
    StateSession,
    StateStore,
    Ticket,
    TicketStatus,
    Transaction,
    TransactionType,
)

logger = logging.getLogger(__name__)


class HandlerError(Exception):
    """Base exception for failures while applying an event."""
    pass


class MalformedEventError(HandlerError):
    """Raised when an event payload is missing fields or has wrong types."""
    pass


class UnknownEventError(HandlerError):
    """Raised when no handler is registered for an event."""
    pass


@dataclass
class Delta:
    """Summary of what one applied event changed, for live subscribers."""
    source: str
    event: str
    token_id: Optional[int]
    tx_hash: str
    ticket: Optional[Ticket] = None
    listing: Optional[Dict[str, Any]] = None
    listing_removed: bool = False
    transaction: Optional[Transaction] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source': self.source,
            'event': self.event,
            'token_id': self.token_id,
            'tx_hash': self.tx_hash,
            'ticket': self.ticket.to_dict() if self.ticket else None,
            'listing': self.listing,
            'listing_removed': self.listing_removed,
            'transaction': self.transaction.to_dict() if self.transaction else None,
        }


@dataclass
class HandlerContext:
    """Per-event helpers handed to handlers."""
    session: StateSession
    event: LedgerEvent
    decimals: int
    now: datetime
    delta: Delta = field(init=False)

    def __post_init__(self):
        self.delta = Delta(
            source=self.event.source,
            event=self.event.name,
            token_id=self.event.token_id,
            tx_hash=self.event.tx_hash
        )

    def arg(self, name: str, kind: type) -> Any:
        """Fetch a payload field, checking presence and type."""
        if name not in self.event.args:
            raise MalformedEventError(f"{self.event.name} payload missing '{name}'")
        value = self.event.args[name]
        if kind is int and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
            raise MalformedEventError(f"{self.event.name}.{name} must be a non-negative integer, got {value!r}")
        if kind is str and (not isinstance(value, str) or not value.startswith('0x')):
            raise MalformedEventError(f"{self.event.name}.{name} must be a hex address, got {value!r}")
        return value.lower() if kind is str else value

    async def already_applied(self, tx_type: TransactionType, token_id: int) -> bool:
        """Whether this transaction already recorded tx_type for the ticket.

        One transaction can carry several events of a type for different
        tickets (a batch mint), so the ticket is part of the key.
        """
        if await self.session.has_transaction(self.event.tx_hash, tx_type, token_id):
            logger.info(f"Skipping redelivered {self.event.describe()} ({tx_type.value} of ticket {token_id} already recorded)")
            return True
        return False

    async def set_status(self, token_id: int, status: TicketStatus, **fields) -> Ticket:
        """Change status; leaving LISTED always removes the listing."""
        ticket = await self.session.update_ticket(token_id, status=status, **fields)
        if status != TicketStatus.LISTED and await self.session.delete_listing(token_id):
            self.delta.listing_removed = True
        self.delta.ticket = ticket
        return ticket

    async def record(
        self,
        tx_type: TransactionType,
        user_address: str,
        token_id: int,
        amount: Optional[int] = None
    ) -> None:
        await self.session.ensure_user(user_address)
        transaction = Transaction(
            hash=self.event.tx_hash,
            type=tx_type,
            user_address=user_address,
            token_id=token_id,
            amount=to_display_units(amount, self.decimals) if amount is not None else None,
            timestamp=self.now
        )
        if await self.session.append_transaction(transaction):
            self.delta.transaction = transaction


Handler = Callable[[HandlerContext], Awaitable[None]]

# Dispatch table keyed by (source, event name)
HANDLERS: Dict[Tuple[str, str], Handler] = {}


def handles(source: str, name: str):
    """Register a handler for one event."""
    def decorator(func: Handler) -> Handler:
        HANDLERS[(source, name)] = func
        return func
    return decorator


def to_display_units(value: int, decimals: int) -> Decimal:
    """Scale a smallest-unit integer to display units, rounding down."""
    quantum = Decimal(1).scaleb(-decimals)
    return (Decimal(value) / (Decimal(10) ** decimals)).quantize(quantum, rounding=ROUND_DOWN)


@handles('registry', 'Transfer')
async def on_transfer(ctx: HandlerContext) -> None:
    sender = ctx.arg('from', str)
    recipient = ctx.arg('to', str)
    token_id = ctx.arg('tokenId', int)
    tx_type = TransactionType.MINT if sender == NULL_ADDRESS else TransactionType.TRANSFER

    if await ctx.already_applied(tx_type, token_id):
        return

    ctx.delta.ticket = await ctx.session.upsert_ticket(token_id, recipient)
    await ctx.session.ensure_user(recipient)
    if sender != NULL_ADDRESS:
        await ctx.session.ensure_user(sender)
    await ctx.record(tx_type, recipient, token_id)


@handles('staking', 'TokenStaked')
async def on_token_staked(ctx: HandlerContext) -> None:
    user = ctx.arg('user', str)
    token_id = ctx.arg('tokenId', int)
    value = ctx.arg('value', int)
    if await ctx.already_applied(TransactionType.STAKE, token_id):
        return
    await ctx.set_status(token_id, TicketStatus.STAKED)
    await ctx.record(TransactionType.STAKE, user, token_id, amount=value)


@handles('staking', 'TokenUnstaked')
async def on_token_unstaked(ctx: HandlerContext) -> None:
    user = ctx.arg('user', str)
    token_id = ctx.arg('tokenId', int)
    if await ctx.already_applied(TransactionType.UNSTAKE, token_id):
        return
    await ctx.set_status(token_id, TicketStatus.IDLE)
    await ctx.record(TransactionType.UNSTAKE, user, token_id)


@handles('lending', 'CollateralDeposited')
async def on_collateral_deposited(ctx: HandlerContext) -> None:
    user = ctx.arg('user', str)
    token_id = ctx.arg('tokenId', int)
    value = ctx.arg('value', int)
    if await ctx.already_applied(TransactionType.DEPOSIT, token_id):
        return
    await ctx.set_status(token_id, TicketStatus.COLLATERALIZED)
    await ctx.record(TransactionType.DEPOSIT, user, token_id, amount=value)


@handles('lending', 'CollateralWithdrawn')
async def on_collateral_withdrawn(ctx: HandlerContext) -> None:
    user = ctx.arg('user', str)
    token_id = ctx.arg('tokenId', int)
    if await ctx.already_applied(TransactionType.WITHDRAW, token_id):
        return
    await ctx.set_status(token_id, TicketStatus.IDLE)
    await ctx.record(TransactionType.WITHDRAW, user, token_id)


@handles('marketplace', 'ItemListed')
async def on_item_listed(ctx: HandlerContext) -> None:
    seller = ctx.arg('seller', str)
    token_id = ctx.arg('tokenId', int)
    price = ctx.arg('price', int)
    if await ctx.already_applied(TransactionType.LIST, token_id):
        return
    await ctx.set_status(token_id, TicketStatus.LISTED)
    # Raises ListingExistsError for a second active listing; the session rolls back
    listing = await ctx.session.create_listing(token_id, seller, price)
    ctx.delta.listing = listing.to_dict()
    await ctx.record(TransactionType.LIST, seller, token_id, amount=price)


@handles('marketplace', 'ItemCanceled')
async def on_item_canceled(ctx: HandlerContext) -> None:
    seller = ctx.arg('seller', str)
    token_id = ctx.arg('tokenId', int)
    if await ctx.already_applied(TransactionType.CANCEL, token_id):
        return
    await ctx.set_status(token_id, TicketStatus.IDLE)
    await ctx.record(TransactionType.CANCEL, seller, token_id)


@handles('marketplace', 'ItemBought')
async def on_item_bought(ctx: HandlerContext) -> None:
    buyer = ctx.arg('buyer', str)
    token_id = ctx.arg('tokenId', int)
    price = ctx.arg('price', int)
    if await ctx.already_applied(TransactionType.SALE, token_id):
        return
    await ctx.set_status(token_id, TicketStatus.IDLE, owner_address=buyer)
    await ctx.record(TransactionType.SALE, buyer, token_id, amount=price)


@handles('oracle', 'PriceUpdated')
async def on_price_updated(ctx: HandlerContext) -> None:
    token_id = ctx.arg('tokenId', int)
    price = ctx.arg('price', int)
    # Price changes are not part of the audit trail
    ctx.delta.ticket = await ctx.session.update_ticket(token_id, price=price)


class Projector:
    """Applies decoded ledger events to a StateStore."""

    def __init__(
        self,
        store: StateStore,
        decimals: int = 6,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        """Initialize the projector.

        Args:
            store: Projection store, the only thing the projector writes to
            decimals: Decimal places used to scale amounts for the history log
            clock: Source of transaction timestamps
        """
        self.store = store
        self.decimals = decimals
        self.clock = clock

    def handler_for(self, event: LedgerEvent) -> Handler:
        handler = HANDLERS.get((event.source, event.name))
        if handler is None:
            raise UnknownEventError(f"No handler for {event.source}.{event.name}")
        return handler

    async def apply(self, event: LedgerEvent) -> Optional[Delta]:
        """Apply one event atomically and advance the source cursor.

        Returns:
            The change summary, or None if the event was a redelivery

        Raises:
            HandlerError: Malformed or unknown event
            StoreError: Missing referenced row or invariant violation
        """
        handler = self.handler_for(event)

        async with self.store.transaction() as session:
            ctx = HandlerContext(session, event, self.decimals, self.clock())
            await handler(ctx)
            await session.save_cursor(event.source, event.block_number, event.log_index)

        delta = ctx.delta
        if delta.ticket is None and delta.transaction is None and not delta.listing_removed:
            return None

        logger.info(f"Applied {event.describe()} token={event.token_id}")
        return delta


__all__ = [
    'Projector',
    'Delta',
    'HandlerContext',
    'HANDLERS',
    'HandlerError',
    'MalformedEventError',
    'UnknownEventError',
    'handles',
    'to_display_units',
]
