"""Address monitoring.

Each watched address runs in its own asyncio task. The task follows the
handler's push channel when the endpoint offers one and polls otherwise.
When the channel drops it reconnects with exponential backoff and jitter;
after ``monitor_max_reconnect_attempts`` failures the subscription ends
in state LOST with a final MonitoringLostEvent.
"""

import asyncio
import logging
import random
import uuid
from typing import Optional

from hotwallet.config import Settings, get_settings
from hotwallet.contracts.history import HistoryOptions
from hotwallet.contracts.monitoring import (
    BalanceChangeEvent,
    MonitoringEvent,
    MonitoringLostEvent,
    MonitoringState,
    TokenBalanceChangeEvent,
    TransferEvent,
)
from hotwallet.errors import (
    CircuitOpenError,
    HotWalletError,
    NetworkUnavailableError,
    ThrottledError,
    ValidationError,
)
from hotwallet.handlers.registry import ChainHandlerRegistry
from hotwallet.networks import Network, NetworkFamily
from hotwallet.providers.base import ProviderError
from hotwallet.units import format_units

logger = logging.getLogger(__name__)

_TRANSIENT = (ProviderError, NetworkUnavailableError, CircuitOpenError, ThrottledError)
_END = object()


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential delay for reconnect ``attempt`` (1-based), with equal jitter."""
    delay = min(cap, base * 2 ** (attempt - 1))
    return delay / 2 + random.uniform(0, delay / 2)


class Subscription:
    """Event channel of one monitored address.

    Iterate with ``async for``; iteration ends after ``stop()`` or once
    monitoring is lost.
    """

    def __init__(
        self,
        network: Network,
        address: str,
        track_balance: bool = True,
        tokens: tuple[str, ...] = (),
        track_transfers: bool = False,
    ):
        self.id = uuid.uuid4().hex
        self.network = network
        self.address = address
        self.track_balance = track_balance
        self.tokens = tokens
        self.track_transfers = track_transfers
        self.state = MonitoringState.STARTING
        self.reconnect_attempts = 0
        self.balance: Optional[int] = None
        self.token_balances: dict[str, int] = {}
        self.token_decimals: dict[str, int] = {}
        self.last_block: Optional[int] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> MonitoringEvent:
        item = await self._queue.get()
        if item is _END:
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        return item

    async def next_event(self, timeout: Optional[float] = None) -> Optional[MonitoringEvent]:
        """Next event, or None once the subscription has ended."""
        try:
            return await asyncio.wait_for(self.__anext__(), timeout)
        except StopAsyncIteration:
            return None

    def emit(self, event: MonitoringEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self, state: MonitoringState) -> None:
        if self._closed:
            return
        self.state = state
        self._closed = True
        self._queue.put_nowait(_END)

    @property
    def active(self) -> bool:
        return not self._closed

    async def stop(self) -> None:
        """Stop monitoring. Safe to call more than once."""
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if not self._closed:
            self.close(MonitoringState.STOPPED)
            logger.info(f"Stopped monitoring {self.address} on {self.network.value}")


class MonitoringService:
    """Runs address subscriptions."""

    def __init__(self, registry: ChainHandlerRegistry, settings: Optional[Settings] = None, history=None):
        self.registry = registry
        self.settings = settings or get_settings()
        self.history = history
        self._subscriptions: dict[str, Subscription] = {}

    async def monitor_address(
        self,
        network,
        address: str,
        track_balance: bool = True,
        tokens: tuple[str, ...] = (),
        track_transfers: bool = False,
    ) -> Subscription:
        """Start watching ``address``.

        Args:
            network: Network identifier
            address: Address to watch
            track_balance: Emit BalanceChangeEvent on native balance changes
            tokens: Token symbols or addresses to emit TokenBalanceChangeEvent for
            track_transfers: Emit TransferEvent for token and NFT transfers (needs history)

        Raises:
            ValidationError: If the address or a token is invalid
        """
        config = self.registry.config(network)
        handler = self.registry.handler(network)
        if not handler.validate_address(address):
            raise ValidationError(f"Invalid address: {address}", address=address)
        if track_transfers and self.history is None:
            raise ValidationError("Transfer tracking needs a history service")
        assets = tuple(handler.resolve_token(token) for token in tokens)

        subscription = Subscription(config.network, address, track_balance, assets, track_transfers)
        self._subscriptions[subscription.id] = subscription
        subscription._task = asyncio.create_task(self._run(subscription))
        logger.info(f"Monitoring {address} on {config.network.value} ({subscription.id})")
        return subscription

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(subscription_id)

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    async def stop_monitoring(self, subscription_id: str) -> bool:
        """Stop one subscription. Returns False if it was already gone."""
        subscription = self._subscriptions.pop(subscription_id, None)
        if subscription is None:
            return False
        await subscription.stop()
        return True

    async def stop_all(self) -> None:
        for subscription_id in list(self._subscriptions):
            await self.stop_monitoring(subscription_id)

    # ======================
    # Watch loop
    # ======================

    async def _run(self, sub: Subscription) -> None:
        last_error: Optional[Exception] = None
        while True:
            try:
                if self.registry.supports_push(sub.network):
                    await self._watch_push(sub)
                else:
                    await self._watch_poll(sub)
            except asyncio.CancelledError:
                raise
            except _TRANSIENT as e:
                last_error = e
            except HotWalletError as e:
                logger.error(f"Monitoring {sub.address} on {sub.network.value} failed: {e.message}")
                self._lose(sub, sub.reconnect_attempts, e.message)
                return

            sub.reconnect_attempts += 1
            if sub.reconnect_attempts > self.settings.monitor_max_reconnect_attempts:
                self._lose(sub, sub.reconnect_attempts - 1, str(last_error))
                return

            sub.state = MonitoringState.RECONNECTING
            delay = backoff_delay(
                sub.reconnect_attempts, self.settings.monitor_backoff_base, self.settings.monitor_backoff_max
            )
            logger.warning(
                f"Monitoring channel for {sub.address} on {sub.network.value} dropped ({last_error}), "
                f"reconnect {sub.reconnect_attempts}/{self.settings.monitor_max_reconnect_attempts} in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    def _lose(self, sub: Subscription, attempts: int, reason: str) -> None:
        sub.emit(
            MonitoringLostEvent(
                network=sub.network,
                address=sub.address,
                subscription_id=sub.id,
                attempts=attempts,
                reason=reason,
            )
        )
        sub.close(MonitoringState.LOST)
        self._subscriptions.pop(sub.id, None)
        logger.error(f"Monitoring lost for {sub.address} on {sub.network.value} after {attempts} attempts")

    def _healthy(self, sub: Subscription, proven: bool = True) -> None:
        sub.state = MonitoringState.ACTIVE
        if proven:
            sub.reconnect_attempts = 0

    async def _watch_poll(self, sub: Subscription) -> None:
        while True:
            await self._check(sub)
            self._healthy(sub)
            await asyncio.sleep(self.settings.monitor_poll_interval)

    async def _watch_push(self, sub: Subscription) -> None:
        await self._check(sub)
        pool = self.registry.pool(sub.network)
        endpoint = pool.active
        channel = self.registry.subscribe(sub.network, sub.address)
        try:
            # The channel counts as reconnected only once it delivers
            self._healthy(sub, proven=False)
            async for _ in channel:
                await self._check(sub)
                self._healthy(sub)
        except NotImplementedError:
            # Endpoint advertises push without a websocket URL
            await self._watch_poll(sub)
        except ProviderError:
            await pool.mark_failure(endpoint)
            raise
        finally:
            await channel.aclose()
        raise ProviderError("Push channel closed", endpoint.url)

    # ======================
    # State checks
    # ======================

    async def _check(self, sub: Subscription) -> None:
        if sub.track_balance:
            await self._check_balance(sub)
        for asset in sub.tokens:
            await self._check_token(sub, asset)
        if sub.track_transfers:
            await self._check_transfers(sub)

    async def _check_balance(self, sub: Subscription) -> None:
        config = self.registry.config(sub.network)
        new = await self.registry.get_balance(sub.network, sub.address)
        previous, sub.balance = sub.balance, new
        if previous is None or previous == new:
            return
        sub.emit(
            BalanceChangeEvent(
                network=sub.network,
                address=sub.address,
                subscription_id=sub.id,
                asset=config.symbol,
                previous=format_units(previous, config.decimals),
                new=format_units(new, config.decimals),
                previous_raw=previous,
                new_raw=new,
            )
        )

    async def _check_token(self, sub: Subscription, asset: str) -> None:
        if asset not in sub.token_decimals:
            sub.token_decimals[asset] = await self.registry.token_decimals(sub.network, asset)
        decimals = sub.token_decimals[asset]
        new = await self.registry.get_balance(sub.network, sub.address, asset)
        previous = sub.token_balances.get(asset)
        sub.token_balances[asset] = new
        if previous is None or previous == new:
            return
        sub.emit(
            TokenBalanceChangeEvent(
                network=sub.network,
                address=sub.address,
                subscription_id=sub.id,
                token=asset,
                previous=format_units(previous, decimals),
                new=format_units(new, decimals),
                previous_raw=previous,
                new_raw=new,
            )
        )

    async def _check_transfers(self, sub: Subscription) -> None:
        config = self.registry.config(sub.network)
        if sub.last_block is None:
            sub.last_block = await self.registry.get_height(sub.network)
            return

        # Follow the cursor so a burst larger than one page is emitted whole
        records = []
        to_block = None
        while True:
            options = HistoryOptions(
                include_token_transfers=True,
                include_nft_transfers=config.family == NetworkFamily.EVM,
                from_block=sub.last_block + 1,
                to_block=to_block,
            )
            page = await self.history.get_history(sub.network, sub.address, options)
            records.extend(page.records)
            if page.next_to_block is None:
                break
            to_block = page.next_to_block

        for record in reversed(records):
            if record.asset == config.symbol and record.token_id is None:
                continue
            sub.emit(
                TransferEvent(
                    network=sub.network,
                    address=sub.address,
                    subscription_id=sub.id,
                    hash=record.hash,
                    direction=record.direction.value,
                    asset=record.asset,
                    amount=record.amount,
                    token_id=record.token_id,
                )
            )
        blocks = [r.block_number for r in records if r.block_number is not None]
        if blocks:
            sub.last_block = max(sub.last_block, max(blocks))
