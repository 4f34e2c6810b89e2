"""Transaction history contracts."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from hotwallet.networks import Network


class Direction(str, Enum):
    """Direction of a transfer relative to the queried address."""

    INCOMING = "incoming"
    OUTGOING = "outgoing"
    SELF = "self"


class HistoryOptions(BaseModel):
    """Filters and paging for a history query."""

    include_token_transfers: bool = True
    include_nft_transfers: bool = False
    from_block: Optional[int] = Field(None, ge=0, description="Lowest block (inclusive)")
    to_block: Optional[int] = Field(None, ge=0, description="Highest block (inclusive)")
    limit: int = Field(default=100, ge=1, le=1000, description="Max records per page")


class HistoryRecord(BaseModel):
    """A normalised history entry."""

    network: Network
    hash: str
    direction: Direction
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    asset: str
    amount: str = Field(..., description="Decimal string in human units")
    token_id: Optional[int] = None
    block_number: Optional[int] = None
    timestamp: Optional[int] = None
    status: str = "confirmed"

    @property
    def counterparties(self) -> list[str]:
        return [a for a in (self.from_address, self.to_address) if a]


class HistoryPage(BaseModel):
    """One page of history, newest first.

    ``next_to_block`` is the upper bound to pass as ``to_block`` for the next
    (older) page; None when the range is exhausted.
    """

    network: Network
    address: str
    records: list[HistoryRecord] = Field(default_factory=list)
    next_to_block: Optional[int] = None
