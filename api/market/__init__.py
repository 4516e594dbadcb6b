"""Market endpoints listing tickets currently for sale."""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from query import QueryError, QueryGateway
from .. import get_gateway
from ..portfolio import TicketModel

router = APIRouter(
    prefix="/market",
    tags=["Market"]
)


class MarketListing(BaseModel):
    """Model for an active listing with its ticket."""
    token_id: int
    seller_address: str
    price: int
    ticket: TicketModel


@router.get("", response_model=List[MarketListing])
async def get_market(gateway: QueryGateway = Depends(get_gateway)):
    """Get all active listings joined with their tickets."""
    try:
        return await gateway.get_active_listings()
    except QueryError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e)
        )
