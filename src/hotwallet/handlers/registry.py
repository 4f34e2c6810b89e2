"""Chain handler registry with endpoint rotation.

Each network has an ordered pool of provider endpoints, one handler per
endpoint. Calls go to the active endpoint through the rate limiter and the
network's circuit breaker. An endpoint-health failure rotates the pool to
the next enabled endpoint and the call is retried exactly once; broadcasts
are never retried.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from hotwallet.config import Settings, get_settings
from hotwallet.contracts.transactions import FeeQuote, SimulationResult, TransactionReceipt
from hotwallet.errors import (
    ConfigurationError,
    NetworkUnavailableError,
    SimulationError,
    TransactionError,
    ValidationError,
)
from hotwallet.handlers.base import ChainHandler
from hotwallet.networks import NETWORKS, Network, NetworkConfig, NetworkFamily, get_network
from hotwallet.providers.base import ProviderError, ProviderRejection
from hotwallet.providers.factory import create_provider
from hotwallet.types import FeeMarket, SignedTransaction, TransactionDraft, UnsignedTransaction
from hotwallet.utils.circuit import CircuitBreakerMap
from hotwallet.utils.ratelimit import RateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Operations whose provider rejection means the transaction would fail
_TRANSACTION_OPERATIONS = {"estimate_gas", "estimate_fee", "build_unsigned_transaction"}


def is_endpoint_failure(exc: BaseException) -> bool:
    """Only endpoint-health problems count against the circuit breaker."""
    return isinstance(exc, ProviderError) and not isinstance(exc, ProviderRejection)


def _handler_class(family: NetworkFamily) -> type:
    if family == NetworkFamily.EVM:
        from hotwallet.handlers.evm import EVMHandler

        return EVMHandler
    if family == NetworkFamily.UTXO:
        from hotwallet.handlers.utxo import UTXOHandler

        return UTXOHandler
    from hotwallet.handlers.solana import SolanaHandler

    return SolanaHandler


@dataclass
class ProviderEndpoint:
    """One configured provider URL and its health counters."""

    url: str
    handler: ChainHandler = field(repr=False)
    consecutive_failures: int = 0
    total_failures: int = 0
    last_rotated_at: Optional[float] = None
    enabled: bool = True
    cooldown_until: Optional[float] = None

    def available(self, now: float) -> bool:
        """Enabled and not sitting out a failure cooldown."""
        return self.enabled and (self.cooldown_until is None or now >= self.cooldown_until)


class EndpointPool:
    """Ordered endpoints of one network with an active cursor.

    An endpoint that fails ``max_failures`` times in a row sits out
    rotation for ``cooldown`` seconds. After that it is eligible again; one
    more failure sends it straight back, a success clears it.
    """

    def __init__(
        self,
        network: Network,
        endpoints: list[ProviderEndpoint],
        max_failures: int = 3,
        cooldown: float = 60.0,
    ):
        if not endpoints:
            raise ConfigurationError(f"No provider endpoints configured for {network.value}", network=network.value)
        self.network = network
        self.endpoints = endpoints
        self.max_failures = max_failures
        self.cooldown = cooldown
        self.active_index = 0
        self._lock = asyncio.Lock()

    @property
    def active(self) -> ProviderEndpoint:
        return self.endpoints[self.active_index]

    def _next_index(self, now: float) -> Optional[int]:
        count = len(self.endpoints)
        candidates = [(self.active_index + step) % count for step in range(1, count + 1)]
        for index in candidates:
            if self.endpoints[index].available(now):
                return index
        # Every endpoint is cooling down: keep traffic moving on an enabled one
        for index in candidates:
            if self.endpoints[index].enabled:
                return index
        return None

    async def mark_failure(self, endpoint: ProviderEndpoint) -> ProviderEndpoint:
        """Count a failure and rotate away from ``endpoint`` if it is still active.

        Concurrent failures of the same endpoint rotate the pool only once.
        """
        async with self._lock:
            now = time.time()
            endpoint.consecutive_failures += 1
            endpoint.total_failures += 1
            if endpoint.consecutive_failures >= self.max_failures and endpoint.available(now):
                endpoint.cooldown_until = now + self.cooldown
                logger.warning(
                    f"{self.network.value} provider {endpoint.url} unhealthy after "
                    f"{endpoint.consecutive_failures} consecutive failures, cooling down {self.cooldown}s"
                )
            if self.active is not endpoint:
                return self.active

            index = self._next_index(now)
            if index is not None and index != self.active_index:
                self.active_index = index
                self.active.last_rotated_at = now
                logger.warning(
                    f"Rotated {self.network.value} provider from {endpoint.url} to {self.active.url}"
                )
            return self.active

    def mark_success(self, endpoint: ProviderEndpoint) -> None:
        if endpoint.cooldown_until is not None:
            logger.info(f"{self.network.value} provider {endpoint.url} recovered")
        endpoint.consecutive_failures = 0
        endpoint.cooldown_until = None

    def healthy(self, endpoint: ProviderEndpoint) -> bool:
        return endpoint.enabled and endpoint.consecutive_failures < self.max_failures

    async def set_enabled(self, url: str, enabled: bool) -> None:
        async with self._lock:
            matches = [e for e in self.endpoints if e.url == url]
            if not matches:
                raise ValidationError(f"Unknown endpoint {url} for {self.network.value}", url=url)
            if not enabled and all(not e.enabled or e.url == url for e in self.endpoints):
                raise ValidationError(f"Cannot disable the last enabled endpoint of {self.network.value}")
            for endpoint in matches:
                endpoint.enabled = enabled
                if enabled:
                    endpoint.consecutive_failures = 0
                    endpoint.cooldown_until = None
            if not self.active.enabled:
                for index, endpoint in enumerate(self.endpoints):
                    if endpoint.enabled:
                        self.active_index = index
                        endpoint.last_rotated_at = time.time()
                        break


class ChainHandlerRegistry:
    """Routes chain operations to healthy provider endpoints."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        provider_factory: Optional[Callable[..., Any]] = None,
        rate_limiter: Optional[RateLimiter] = None,
        breakers: Optional[CircuitBreakerMap] = None,
        networks: Optional[list[Network]] = None,
    ):
        self.settings = settings or get_settings()
        self.provider_factory = provider_factory or create_provider
        self.rate_limiter = rate_limiter or RateLimiter(
            capacity=self.settings.rate_limit_capacity,
            refill_rate=self.settings.rate_limit_refill_per_second,
            default_timeout=self.settings.rate_limit_timeout,
        )
        self.breakers = breakers or CircuitBreakerMap(
            failure_threshold=self.settings.circuit_failure_threshold,
            reset_timeout=self.settings.circuit_reset_timeout,
            failure_window=self.settings.circuit_failure_window,
            is_failure=is_endpoint_failure,
        )
        self._pools: dict[Network, EndpointPool] = {}
        for network in networks or list(Network):
            config = get_network(network)
            self._pools[config.network] = self._build_pool(config)

    def _build_pool(self, config: NetworkConfig) -> EndpointPool:
        overrides = self.settings.endpoints_for(config.network)
        handler_cls = _handler_class(config.family)
        endpoints = [
            ProviderEndpoint(
                url=url,
                handler=handler_cls(
                    config,
                    self.provider_factory(config, url, overrides, self.settings.request_timeout),
                    overrides,
                ),
            )
            for url in overrides.rpc_urls
        ]
        return EndpointPool(
            config.network,
            endpoints,
            max_failures=self.settings.endpoint_max_failures,
            cooldown=self.settings.endpoint_cooldown,
        )

    # ---- lookup ----

    def pool(self, network) -> EndpointPool:
        config = get_network(network)
        pool = self._pools.get(config.network)
        if pool is None:
            raise ConfigurationError(f"Network {config.network.value} is not enabled", network=config.network.value)
        return pool

    def handler(self, network) -> ChainHandler:
        """Handler bound to the currently active endpoint."""
        return self.pool(network).active.handler

    def config(self, network) -> NetworkConfig:
        return NETWORKS[self.pool(network).network]

    @property
    def networks(self) -> list[Network]:
        return list(self._pools)

    # ---- execution ----

    async def run(
        self,
        network,
        operation: str,
        fn: Callable[[ChainHandler], Awaitable[T]],
        retry: bool = True,
    ) -> T:
        """Run ``fn(handler)`` against the active endpoint.

        Args:
            network: Network identifier
            operation: Operation name for logs and errors
            fn: Coroutine factory receiving the handler
            retry: Retry once on the next endpoint after a provider failure

        Raises:
            NetworkUnavailableError: If the endpoint (and its retry) failed
            CircuitOpenError: If the network's breaker is open
            ThrottledError: If the rate limiter timed out
        """
        pool = self.pool(network)
        service = f"{pool.network.value}-handler"
        breaker = self.breakers.get(service)
        attempts = 2 if retry else 1
        last_error: Optional[ProviderError] = None

        for attempt in range(attempts):
            await self.rate_limiter.wait_for_availability(service)
            endpoint = pool.active
            try:
                result = await breaker.call(lambda: fn(endpoint.handler))
            except ProviderRejection as e:
                pool.mark_success(endpoint)
                raise self._rejection_error(pool.network, operation, e)
            except ProviderError as e:
                last_error = e
                logger.warning(
                    f"{operation} failed on {pool.network.value} endpoint {endpoint.url} "
                    f"(attempt {attempt + 1}/{attempts}): {e}"
                )
                await pool.mark_failure(endpoint)
                continue
            pool.mark_success(endpoint)
            return result

        raise NetworkUnavailableError(pool.network.value, f"{operation} failed: {last_error}")

    @staticmethod
    def _rejection_error(network: Network, operation: str, exc: ProviderRejection) -> Exception:
        if operation in _TRANSACTION_OPERATIONS:
            return SimulationError(exc.detail, network=network.value, operation=operation)
        return ValidationError(
            f"{operation} rejected by {network.value} provider: {exc.detail}",
            network=network.value,
            operation=operation,
        )

    # ---- reads ----

    async def get_balance(self, network, address: str, token: Optional[str] = None) -> int:
        return await self.run(network, "get_balance", lambda h: h.get_balance(address, token))

    async def token_decimals(self, network, asset: str) -> int:
        return await self.run(network, "token_decimals", lambda h: h.token_decimals(asset))

    async def get_fee_market(self, network) -> FeeMarket:
        return await self.run(network, "get_fee_market", lambda h: h.get_fee_market())

    async def get_nonce(self, network, address: str) -> Optional[int]:
        return await self.run(network, "get_nonce", lambda h: h.get_nonce(address))

    async def get_height(self, network) -> int:
        return await self.run(network, "get_height", lambda h: h.get_height())

    async def get_receipt(self, network, tx_hash: str) -> Optional[TransactionReceipt]:
        return await self.run(network, "get_receipt", lambda h: h.get_receipt(tx_hash))

    async def get_pending(self, network, address: str) -> list[dict]:
        return await self.run(network, "get_pending", lambda h: h.get_pending(address))

    async def call(self, network, to: str, data: str) -> str:
        """Read-only contract call (EVM networks only)."""
        if self.config(network).family != NetworkFamily.EVM:
            raise ValidationError(f"Contract calls are not supported on {self.pool(network).network.value}")
        return await self.run(network, "call", lambda h: h.call(to, data))

    # ---- history fetchers ----

    async def explorer_history(
        self, network, address: str, action: str, start_block: int, end_block: int, page: int, offset: int
    ) -> list[dict]:
        return await self.run(
            network,
            "explorer_history",
            lambda h: h.explorer_history(address, action, start_block, end_block, page, offset),
        )

    async def address_transactions(self, network, address: str, last_seen_txid: Optional[str] = None) -> list[dict]:
        return await self.run(
            network, "address_transactions", lambda h: h.address_transactions(address, last_seen_txid)
        )

    async def mempool_transactions(self, network, address: str) -> list[dict]:
        return await self.run(network, "mempool_transactions", lambda h: h.mempool_transactions(address))

    async def signatures(self, network, address: str, before: Optional[str] = None, limit: int = 100) -> list[dict]:
        return await self.run(network, "signatures", lambda h: h.signatures(address, before, limit))

    async def transaction_detail(self, network, signature: str) -> Optional[dict]:
        return await self.run(network, "transaction_detail", lambda h: h.transaction_detail(signature))

    # ---- transaction lifecycle ----

    async def build_unsigned_transaction(
        self, network, draft: TransactionDraft, fee: Optional[FeeQuote] = None
    ) -> UnsignedTransaction:
        return await self.run(
            network, "build_unsigned_transaction", lambda h: h.build_unsigned_transaction(draft, fee)
        )

    def supports_atomic_batch(self, network, draft: TransactionDraft) -> bool:
        return self.handler(network).supports_atomic_batch(draft)

    async def estimate_gas(self, network, unsigned: UnsignedTransaction) -> int:
        return await self.run(network, "estimate_gas", lambda h: h.estimate_gas(unsigned))

    async def estimate_fee(self, network, unsigned: UnsignedTransaction) -> tuple[int, FeeMarket]:
        """Gas (or size) estimate and the current fee market in one call."""

        async def fetch(handler: ChainHandler) -> tuple[int, FeeMarket]:
            return await handler.estimate_gas(unsigned), await handler.get_fee_market()

        return await self.run(network, "estimate_fee", fetch)

    async def simulate(self, network, unsigned: UnsignedTransaction) -> SimulationResult:
        return await self.run(network, "simulate", lambda h: h.simulate(unsigned))

    def sign(self, network, unsigned: UnsignedTransaction, private_key: bytearray) -> SignedTransaction:
        """Sign locally; no network access."""
        return self.handler(network).sign(unsigned, private_key)

    async def broadcast(self, network, signed: SignedTransaction) -> str:
        """Submit a signed transaction exactly once.

        Raises:
            TransactionError: If the provider rejected or failed the submission
        """
        pool = self.pool(network)
        service = f"{pool.network.value}-handler"
        breaker = self.breakers.get(service)
        await self.rate_limiter.wait_for_availability(service)
        endpoint = pool.active
        context = {"network": pool.network.value, "hash": signed.hash, "endpoint": endpoint.url}

        try:
            tx_hash = await breaker.call(lambda: endpoint.handler.broadcast(signed))
        except ProviderRejection as e:
            pool.mark_success(endpoint)
            logger.error(f"Broadcast of {signed.hash} rejected on {pool.network.value}: {e.detail}")
            raise TransactionError(f"Broadcast rejected: {e.detail}", context=context)
        except ProviderError as e:
            await pool.mark_failure(endpoint)
            logger.error(f"Broadcast of {signed.hash} failed on {endpoint.url}: {e}")
            raise TransactionError(f"Broadcast failed, outcome unknown: {e}", context=context)

        pool.mark_success(endpoint)
        logger.info(f"Broadcast {tx_hash} on {pool.network.value} via {endpoint.url}")
        return tx_hash

    # ---- observation ----

    def supports_push(self, network) -> bool:
        return self.handler(network).supports_push

    def subscribe(self, network, address: str) -> AsyncIterator[Any]:
        return self.handler(network).subscribe(address)

    # ---- operators ----

    async def set_endpoint_enabled(self, network, url: str, enabled: bool) -> None:
        await self.pool(network).set_enabled(url, enabled)

    async def check_endpoints(self, network) -> dict:
        """Call every unhealthy endpoint and re-admit the ones that answer.

        Health checks bypass the rate limiter and the breaker; they exist to find
        out whether an endpoint the pool stopped trusting is back.
        """
        pool = self.pool(network)
        for endpoint in pool.endpoints:
            if not endpoint.enabled or pool.healthy(endpoint):
                continue
            try:
                await endpoint.handler.get_height()
            except ProviderError as e:
                logger.info(f"Health check of {pool.network.value} provider {endpoint.url} failed: {e}")
                await pool.mark_failure(endpoint)
                continue
            pool.mark_success(endpoint)
        return self.endpoint_status(network)

    def endpoint_status(self, network) -> dict:
        """Health snapshot of a network's endpoint pool."""
        pool = self.pool(network)
        breaker = self.breakers.get(f"{pool.network.value}-handler")
        return {
            "network": pool.network.value,
            "breaker": breaker.state.value,
            "endpoints": [
                {
                    "url": endpoint.url,
                    "active": index == pool.active_index,
                    "enabled": endpoint.enabled,
                    "healthy": pool.healthy(endpoint),
                    "cooldown_until": endpoint.cooldown_until,
                    "consecutive_failures": endpoint.consecutive_failures,
                    "total_failures": endpoint.total_failures,
                    "last_rotated_at": endpoint.last_rotated_at,
                }
                for index, endpoint in enumerate(pool.endpoints)
            ],
        }
