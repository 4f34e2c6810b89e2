"""Provider interfaces and shared JSON-RPC transport.

A provider is a transport client bound to exactly one endpoint URL. The
registry owns rotation between providers; providers never retry.
"""

import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

import httpx

from hotwallet.types import SignedTransaction, UnsignedTransaction, Utxo

logger = logging.getLogger(__name__)

# JSON-RPC error codes that indicate an unhealthy endpoint rather than a
# rejected request
_ENDPOINT_ERROR_CODES = {-32603, -32005, -32004, -32002, 429}


class ProviderError(Exception):
    """Transport-level failure: timeout, HTTP error, unhealthy endpoint."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class ProviderRejection(ProviderError):
    """The endpoint answered but rejected the request (revert, bad params)."""

    def __init__(self, detail: str, url: Optional[str] = None, code: Optional[int] = None):
        super().__init__(detail, url)
        self.detail = detail
        self.code = code


class JsonRpcClient:
    """JSON-RPC 2.0 over HTTP POST."""

    def __init__(self, url: str, timeout: float = 30.0):
        self.url = url
        self.timeout = timeout
        self._ids = itertools.count(1)

    async def request(self, method: str, params: Optional[list] = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or [],
            "id": next(self._ids),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise ProviderError(f"{method} failed: {e}", self.url)

        if response.status_code != 200:
            raise ProviderError(f"{method} returned HTTP {response.status_code}", self.url)

        try:
            data = response.json()
        except ValueError:
            raise ProviderError(f"{method} returned invalid JSON", self.url)

        error = data.get("error")
        if error:
            code = error.get("code")
            message = error.get("message", str(error))
            if error.get("data") and isinstance(error["data"], str):
                message = f"{message}: {error['data']}"
            if code in _ENDPOINT_ERROR_CODES:
                raise ProviderError(f"{method} error {code}: {message}", self.url)
            raise ProviderRejection(message, self.url, code)

        return data.get("result")


class RestClient:
    """Plain HTTP GET/POST client for REST-style APIs."""

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def get(self, path: str, params: Optional[dict] = None, as_json: bool = True) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, params=params)
        except httpx.HTTPError as e:
            raise ProviderError(f"GET {path} failed: {e}", self.base_url)

        if response.status_code == 404:
            return None
        if response.status_code >= 500 or response.status_code == 429:
            raise ProviderError(f"GET {path} returned HTTP {response.status_code}", self.base_url)
        if response.status_code != 200:
            raise ProviderRejection(response.text or f"HTTP {response.status_code}", self.base_url)

        if not as_json:
            return response.text
        try:
            return response.json()
        except ValueError:
            raise ProviderError(f"GET {path} returned invalid JSON", self.base_url)

    async def post_text(self, path: str, body: str) -> str:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, content=body)
        except httpx.HTTPError as e:
            raise ProviderError(f"POST {path} failed: {e}", self.base_url)

        if response.status_code >= 500 or response.status_code == 429:
            raise ProviderError(f"POST {path} returned HTTP {response.status_code}", self.base_url)
        if response.status_code != 200:
            raise ProviderRejection(response.text or f"HTTP {response.status_code}", self.base_url)
        return response.text.strip()


class EVMProvider(ABC):
    """Contract expected of an EVM JSON-RPC endpoint."""

    url: str
    explorer: Optional["ExplorerProvider"] = None

    @abstractmethod
    async def get_balance(self, address: str, block: str = "latest") -> int:
        pass

    @abstractmethod
    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        pass

    @abstractmethod
    async def call(self, tx: dict, block: str = "latest") -> str:
        """Execute a read-only call; returns hex result data."""
        pass

    @abstractmethod
    async def estimate_gas(self, tx: dict) -> int:
        pass

    @abstractmethod
    async def gas_price(self) -> int:
        pass

    @abstractmethod
    async def fee_history(self, block_count: int, percentiles: list[int]) -> dict:
        """Return ``{"base_fee": int, "rewards": [[int, ...], ...]}``.

        ``base_fee`` is the pending block's base fee; ``rewards`` holds one
        list per block with one entry per requested percentile.
        """
        pass

    @abstractmethod
    async def send_raw_transaction(self, signed: SignedTransaction) -> str:
        pass

    @abstractmethod
    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        """Normalised receipt dict or None while pending.

        Keys: ``block_number``, ``gas_used``, ``status`` (1/0),
        ``effective_gas_price``.
        """
        pass

    @abstractmethod
    async def block_number(self) -> int:
        pass

    async def pending_transactions(self, address: str) -> list[dict]:
        """Pending transactions from ``address`` visible to the node, if supported."""
        return []

    def subscribe(self, address: str) -> AsyncIterator[Any]:
        """Push channel yielding one item per change signal (new block)."""
        raise NotImplementedError("Push channel not available")

    @property
    def supports_push(self) -> bool:
        return False


class ExplorerProvider(ABC):
    """Etherscan-compatible account history API."""

    @abstractmethod
    async def account_history(
        self,
        address: str,
        action: str,
        start_block: int,
        end_block: int,
        page: int,
        offset: int,
    ) -> list[dict]:
        """One page of ``txlist``/``tokentx``/``tokennfttx``/``token1155tx`` rows, newest first."""
        pass


class UTXOProvider(ABC):
    """Contract expected of an Esplora-style UTXO endpoint."""

    url: str

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        """Confirmed plus mempool balance in satoshi."""
        pass

    @abstractmethod
    async def get_utxos(self, address: str) -> list[Utxo]:
        pass

    @abstractmethod
    async def fee_estimates(self) -> dict[int, float]:
        """Block target -> sat/vB."""
        pass

    @abstractmethod
    async def broadcast(self, signed: SignedTransaction) -> str:
        pass

    @abstractmethod
    async def get_transaction(self, txid: str) -> Optional[dict]:
        """Esplora transaction JSON (``status``, ``fee``, ``weight``, ``vin``, ``vout``)."""
        pass

    @abstractmethod
    async def tip_height(self) -> int:
        pass

    @abstractmethod
    async def address_transactions(self, address: str, last_seen_txid: Optional[str] = None) -> list[dict]:
        """Confirmed transactions newest first, 25 per page after ``last_seen_txid``."""
        pass

    @abstractmethod
    async def mempool_transactions(self, address: str) -> list[dict]:
        pass

    def subscribe(self, address: str) -> AsyncIterator[Any]:
        raise NotImplementedError("Push channel not available")

    @property
    def supports_push(self) -> bool:
        return False


class SolanaProvider(ABC):
    """Contract expected of a Solana JSON-RPC endpoint."""

    url: str

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        pass

    @abstractmethod
    async def get_token_balance(self, owner: str, mint: str) -> int:
        pass

    @abstractmethod
    async def get_token_decimals(self, mint: str) -> int:
        pass

    @abstractmethod
    async def account_exists(self, address: str) -> bool:
        pass

    @abstractmethod
    async def get_latest_blockhash(self) -> str:
        pass

    @abstractmethod
    async def simulate_transaction(self, unsigned: UnsignedTransaction) -> dict:
        """Return ``{"err": ..., "logs": [...], "units_consumed": int}``."""
        pass

    @abstractmethod
    async def send_transaction(self, signed: SignedTransaction) -> str:
        pass

    @abstractmethod
    async def get_signature_statuses(self, signatures: list[str]) -> list[Optional[dict]]:
        pass

    @abstractmethod
    async def get_slot(self) -> int:
        pass

    @abstractmethod
    async def get_recent_prioritization_fees(self) -> list[int]:
        pass

    @abstractmethod
    async def get_signatures_for_address(
        self, address: str, before: Optional[str] = None, limit: int = 100
    ) -> list[dict]:
        pass

    @abstractmethod
    async def get_transaction(self, signature: str) -> Optional[dict]:
        """``jsonParsed`` transaction with ``meta``."""
        pass

    def subscribe(self, address: str) -> AsyncIterator[Any]:
        raise NotImplementedError("Push channel not available")

    @property
    def supports_push(self) -> bool:
        return False
