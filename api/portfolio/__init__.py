"""Portfolio endpoints for per-user holdings and history."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from query import QueryError, QueryGateway
from .. import get_gateway

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/portfolio",
    tags=["Portfolio"]
)


class TicketModel(BaseModel):
    """Model for a ticket."""
    token_id: int
    owner_address: str
    status: str
    price: int


class ListingModel(BaseModel):
    """Model for an active listing."""
    token_id: int
    seller_address: str
    price: int


class TransactionModel(BaseModel):
    """Model for a history row."""
    hash: str
    type: str
    user_address: str
    token_id: int
    amount: Optional[Decimal] = None
    timestamp: datetime


class Portfolio(BaseModel):
    """Model for a user's portfolio."""
    address: str
    exists: bool
    tickets: List[TicketModel]
    listings: List[ListingModel]
    transactions: List[TransactionModel]


@router.get("/{address}", response_model=Portfolio)
async def get_portfolio(address: str, gateway: QueryGateway = Depends(get_gateway)):
    """Get a user's tickets, listings and 10 most recent transactions.

    Unknown addresses return an empty portfolio with ``exists`` false.
    """
    try:
        return await gateway.get_portfolio(address)
    except QueryError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e)
        )
