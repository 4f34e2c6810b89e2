"""Typed errors raised by the hot-wallet engine.

Every error carries a stable ``code`` and can be rendered to a plain dict
for an API layer via ``to_dict()``.
"""

from typing import Any, Optional


class HotWalletError(Exception):
    """Base class for all engine errors."""

    code = "hotwallet_error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": {k: _plain(v) for k, v in self.details.items()},
        }


def _plain(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return str(value)


class ConfigurationError(HotWalletError):
    """Invalid or missing configuration (unknown network, missing master key)."""

    code = "configuration_error"


class ValidationError(HotWalletError):
    """Malformed input such as a bad address, amount or seed phrase."""

    code = "validation_error"


class WalletNotFoundError(ValidationError):
    """No wallet is registered for the requested (network, address)."""

    code = "wallet_not_found"

    def __init__(self, network: str, address: str):
        super().__init__(
            f"No wallet for {address} on {network}", network=network, address=address
        )


class DecryptionError(HotWalletError):
    """Ciphertext could not be authenticated with the given master key."""

    code = "decryption_error"


class InsufficientBalanceError(HotWalletError):
    """Amount plus fee exceeds the balance available at send time."""

    code = "insufficient_balance"

    def __init__(self, available: int, required: int, asset: str = "native"):
        super().__init__(
            f"Insufficient {asset} balance: available {available}, required {required}",
            available=available,
            required=required,
            asset=asset,
        )
        self.available = available
        self.required = required
        self.asset = asset


class SimulationError(HotWalletError):
    """The dry-run rejected the transaction; nothing was signed."""

    code = "simulation_failed"

    def __init__(self, detail: str, **details: Any):
        super().__init__(f"Simulation failed: {detail}", detail=detail, **details)
        self.detail = detail


class TransactionError(HotWalletError):
    """Broadcast or confirmation failure of a signed transaction."""

    code = "transaction_error"

    def __init__(self, message: str, context: Optional[dict] = None):
        super().__init__(message, context=context or {})
        self.context = context or {}


class NotOwnerError(HotWalletError):
    """An NFT transfer was attempted by an address that does not own the asset."""

    code = "not_owner"

    def __init__(self, contract_address: str, token_id: int, owner_claimed: str):
        super().__init__(
            f"{owner_claimed} does not own token {token_id} of {contract_address}",
            contract_address=contract_address,
            token_id=token_id,
            address=owner_claimed,
        )
        self.contract_address = contract_address
        self.token_id = token_id


class ThrottledError(HotWalletError):
    """The rate limiter could not grant a token before the timeout."""

    code = "throttled"
    retryable = True

    def __init__(self, service: str, retry_after: float):
        super().__init__(
            f"Rate limit exceeded for {service}, retry after {retry_after:.2f}s",
            service=service,
            retry_after=retry_after,
        )
        self.service = service
        self.retry_after = retry_after


class CircuitOpenError(HotWalletError):
    """The circuit breaker for a service is open; the call was not attempted."""

    code = "circuit_open"
    retryable = True

    def __init__(self, service: str, retry_after: float):
        super().__init__(
            f"Circuit breaker open for {service}, retry after {retry_after:.1f}s",
            service=service,
            retry_after=retry_after,
        )
        self.service = service
        self.retry_after = retry_after


class NetworkUnavailableError(HotWalletError):
    """Every provider endpoint for a network failed."""

    code = "network_unavailable"
    retryable = True

    def __init__(self, network: str, reason: str = ""):
        message = f"Network {network} unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, network=network)
        self.network = network


class LockTimeoutError(HotWalletError):
    """A wallet lock could not be acquired within the timeout period."""

    code = "lock_timeout"
    retryable = True
