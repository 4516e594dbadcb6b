"""Query module serving read-only views of the projection.

Two views are exposed:
- portfolio: a user's tickets, listings and most recent history rows
- market: every active listing together with its ticket
"""

import logging
from typing import Any, Dict, List

from store import StateStore, StoreError

logger = logging.getLogger(__name__)

DEFAULT_RECENT_LIMIT = 10


class QueryError(Exception):
    """Raised when the projection cannot be read."""
    pass


def empty_portfolio(address: str) -> Dict[str, Any]:
    return {
        'address': address,
        'exists': False,
        'tickets': [],
        'listings': [],
        'transactions': [],
    }


class QueryGateway:
    """Read facade over a StateStore."""

    def __init__(self, store: StateStore, recent_limit: int = DEFAULT_RECENT_LIMIT):
        self.store = store
        self.recent_limit = recent_limit

    async def get_portfolio(self, address: str) -> Dict[str, Any]:
        """Get a user's holdings and recent activity.

        Unknown users get an empty portfolio rather than an error.

        Args:
            address: User address, any case

        Returns:
            Dict with address, exists, tickets, listings and transactions
            (newest first, at most ``recent_limit``)

        Raises:
            QueryError: If the store cannot be read
        """
        address = address.lower()
        try:
            if not await self.store.user_exists(address):
                return empty_portfolio(address)

            tickets = await self.store.get_tickets_by_owner(address)
            listings = await self.store.get_listings_by_seller(address)
            transactions = await self.store.get_recent_transactions(address, self.recent_limit)
        except StoreError as e:
            logger.error(f"Error reading portfolio for {address}: {e}")
            raise QueryError(f"Failed to read portfolio: {e}") from e
        except OSError as e:
            logger.error(f"Store unreachable reading portfolio for {address}: {e}")
            raise QueryError(f"Failed to read portfolio: {e}") from e

        return {
            'address': address,
            'exists': True,
            'tickets': [ticket.to_dict() for ticket in tickets],
            'listings': [listing.to_dict() for listing in listings],
            'transactions': [tx.to_dict() for tx in transactions],
        }

    async def get_active_listings(self) -> List[Dict[str, Any]]:
        """Get all active listings, each with its ticket nested under ``ticket``."""
        try:
            rows = await self.store.get_active_listings()
        except (StoreError, OSError) as e:
            logger.error(f"Error reading market listings: {e}")
            raise QueryError(f"Failed to read market: {e}") from e

        market = []
        for listing, ticket in rows:
            entry = listing.to_dict()
            entry['ticket'] = ticket.to_dict()
            market.append(entry)
        return market


__all__ = [
    'QueryGateway',
    'QueryError',
    'empty_portfolio',
]
