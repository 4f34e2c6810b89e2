"""NFT contracts."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class NFTStandard(str, Enum):
    """Token standard of an NFT collection."""

    ERC721 = "erc721"  # single-unit
    ERC1155 = "erc1155"  # multi-unit


class NFTAsset(BaseModel):
    """An NFT held by an address."""

    contract_address: str
    token_id: int
    standard: NFTStandard
    quantity: int = 1
    metadata: Optional[dict[str, Any]] = None


class NFTCollection(BaseModel):
    """A collection the engine knows how to enumerate."""

    contract_address: str
    standard: NFTStandard
    name: Optional[str] = None
    symbol: Optional[str] = None
    token_ids: list[int] = Field(
        default_factory=list, description="Known token ids (ERC-1155 enumeration)"
    )


class NFTTransferItem(BaseModel):
    """One asset + destination pair in a batch transfer."""

    contract_address: str
    token_id: int
    to_address: str
    standard: NFTStandard = NFTStandard.ERC721
    quantity: int = Field(default=1, ge=1)
