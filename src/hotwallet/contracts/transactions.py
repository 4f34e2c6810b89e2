"""Transaction contracts.

Value-bearing numbers are integers in base units (wei, satoshi, lamports);
caller-facing amounts are decimal strings. Floats never appear.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from hotwallet.networks import Network


class Priority(str, Enum):
    """Fee aggressiveness tier."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TransactionState(str, Enum):
    """Pipeline states of a transaction."""

    DRAFT = "draft"
    QUOTED = "quoted"
    SIMULATED = "simulated"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ReceiptStatus(str, Enum):
    """On-chain outcome of a transaction."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class TransactionRequest(BaseModel):
    """A transfer request. Immutable once created."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    network: Network = Field(..., description="Network identifier")
    from_address: str = Field(..., description="Sending wallet address")
    to_address: str = Field(..., description="Recipient address (or contract for calls)")
    amount: str = Field(default="0", description="Amount in human units as a decimal string")
    token: Optional[str] = Field(None, description="Token symbol or contract/mint address")
    priority: Priority = Field(default=Priority.MEDIUM, description="Fee tier")
    nonce: Optional[int] = Field(None, description="Explicit nonce (EVM only)")
    data: Optional[str] = Field(None, description="Raw calldata for EVM contract calls")


class FeeQuote(BaseModel):
    """Fee quote for a built transaction.

    ``estimated_cost = fixed_fee + gas_limit * (max_fee_per_gas or gas_price)``
    in native base units. For BTC ``gas_limit`` is the virtual size and
    ``gas_price`` is sat/vB; for SOL ``fixed_fee`` holds signature fees and
    ``gas_price`` is micro-lamports per compute unit, so the
    compute-unit part is divided by 10**6 and rounded up.
    """

    network: Network
    priority: Priority = Priority.MEDIUM
    gas_limit: int = Field(..., ge=0)
    gas_price: Optional[int] = Field(None, description="Legacy gas price / unit price")
    max_fee_per_gas: Optional[int] = Field(None, description="EIP-1559 max fee")
    max_priority_fee_per_gas: Optional[int] = Field(None, description="EIP-1559 tip")
    fixed_fee: int = Field(default=0, description="Fee component independent of gas")
    estimated_cost: int = Field(..., ge=0, description="Worst-case fee in native base units")
    is_fallback: bool = Field(default=False, description="Priced from configured fallback")

    @property
    def is_eip1559(self) -> bool:
        return self.max_fee_per_gas is not None


class SimulationResult(BaseModel):
    """Outcome of a dry-run."""

    success: bool
    estimated_gas: Optional[int] = None
    error_detail: Optional[str] = None
    logs: list[str] = Field(default_factory=list)


class TransactionReceipt(BaseModel):
    """Receipt of a submitted transaction."""

    network: Network
    hash: str
    status: ReceiptStatus
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    effective_gas_price: Optional[int] = None
    fee_paid: Optional[int] = Field(None, description="Fee paid in native base units")
    confirmations: int = 0


class TransactionResult(BaseModel):
    """Result of running a request through the pipeline."""

    network: Network
    state: TransactionState
    hash: Optional[str] = None
    fee_quote: Optional[FeeQuote] = None
    simulation: Optional[SimulationResult] = None
    receipt: Optional[TransactionReceipt] = None
    error: Optional[dict] = None


class BatchItemOutcome(BaseModel):
    """Per-item result of a batch operation."""

    index: int
    success: bool
    state: TransactionState
    hash: Optional[str] = None
    error: Optional[dict] = None
