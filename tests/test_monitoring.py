"""Tests for address monitoring."""

import asyncio

import pytest
import pytest_asyncio

from hotwallet.contracts.monitoring import (
    BalanceChangeEvent,
    MonitoringLostEvent,
    MonitoringState,
    TokenBalanceChangeEvent,
    TransferEvent,
)
from hotwallet.contracts.transactions import TransactionRequest
from hotwallet.errors import ValidationError
from hotwallet.networks import Network
from hotwallet.providers.simulated import get_simulated_provider
from hotwallet.services.history import HistoryService
from hotwallet.services.monitoring import MonitoringService, backoff_delay

from conftest import ETH

HOLDER = "0x000000000000000000000000000000000000dEaD"
USDT = "0xdAC17F958D2ee523a2206206994597C13D831ec7"


async def wait_until(condition, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def monitor_settings(settings):
    return settings.model_copy(
        update={
            "monitor_poll_interval": 0.01,
            "monitor_backoff_base": 0.001,
            "monitor_backoff_max": 0.01,
            "monitor_max_reconnect_attempts": 2,
        }
    )


@pytest_asyncio.fixture
async def monitor(registry, monitor_settings):
    service = MonitoringService(registry, monitor_settings, history=HistoryService(registry))
    yield service
    await service.stop_all()


class TestPushMonitoring:
    """Tests for push-driven monitoring."""

    @pytest.mark.asyncio
    async def test_balance_change(self, monitor: MonitoringService, eth_chain):
        """Test that a balance change produces one event with both values."""
        sub = await monitor.monitor_address("ETH", HOLDER)
        await wait_until(lambda: eth_chain.hub.subscriber_count > 0)

        eth_chain.set_balance(HOLDER, 2 * ETH)
        event = await sub.next_event(timeout=2.0)

        assert isinstance(event, BalanceChangeEvent)
        assert (event.previous_raw, event.new_raw) == (0, 2 * ETH)
        assert (event.previous, event.new) == ("0.0", "2.0")
        assert event.subscription_id == sub.id
        assert sub.state == MonitoringState.ACTIVE

    @pytest.mark.asyncio
    async def test_no_event_without_change(self, monitor: MonitoringService, eth_chain):
        """Test that a notification without a balance change emits nothing."""
        sub = await monitor.monitor_address("ETH", HOLDER)
        await wait_until(lambda: eth_chain.hub.subscriber_count > 0)

        eth_chain.hub.notify(HOLDER)

        with pytest.raises(asyncio.TimeoutError):
            await sub.next_event(timeout=0.1)

    @pytest.mark.asyncio
    async def test_token_balance_change(self, monitor: MonitoringService, eth_chain):
        """Test token balance events for a watched token."""
        eth_chain.deploy_erc20(USDT, decimals=6, symbol="USDT")
        sub = await monitor.monitor_address("ETH", HOLDER, track_balance=False, tokens=("USDT",))
        await wait_until(lambda: eth_chain.hub.subscriber_count > 0)

        eth_chain.mint_erc20(USDT, HOLDER, 3_000_000)
        event = await sub.next_event(timeout=2.0)

        assert isinstance(event, TokenBalanceChangeEvent)
        assert event.token == USDT
        assert event.new == "3.0"

    @pytest.mark.asyncio
    async def test_transfer_events(self, monitor: MonitoringService, pipeline, eth_wallet, eth_chain):
        """Test that token transfers into the watched address are reported."""
        eth_chain.deploy_erc20(USDT, decimals=6, symbol="USDT")
        eth_chain.mint_erc20(USDT, eth_wallet, 10_000_000)
        sub = await monitor.monitor_address("ETH", HOLDER, track_balance=False, track_transfers=True)
        await wait_until(lambda: eth_chain.hub.subscriber_count > 0 and sub.last_block is not None)

        result = await pipeline.execute(
            TransactionRequest(network=Network.ETH, from_address=eth_wallet, to_address=HOLDER, amount="4", token="USDT")
        )
        event = await sub.next_event(timeout=2.0)

        assert isinstance(event, TransferEvent)
        assert (event.hash, event.direction, event.asset, event.amount) == (result.hash, "incoming", "USDT", "4.0")

    @pytest.mark.asyncio
    async def test_transfer_burst_spanning_pages(self, monitor: MonitoringService, eth_chain):
        """Test that every transfer is reported when one check finds more than a history page."""
        eth_chain.deploy_erc20(USDT, decimals=6, symbol="USDT")
        sub = await monitor.monitor_address("ETH", HOLDER, track_balance=False, track_transfers=True)
        await wait_until(lambda: eth_chain.hub.subscriber_count > 0 and sub.last_block is not None)
        start = sub.last_block

        for block in range(start + 1, start + 151):
            eth_chain.rows.append(
                {
                    "action": "tokentx",
                    "hash": f"0x{block:064x}",
                    "from": "0x0000000000000000000000000000000000000001",
                    "to": HOLDER.lower(),
                    "value": "1000000",
                    "contractAddress": USDT.lower(),
                    "tokenSymbol": "USDT",
                    "tokenDecimal": "6",
                    "blockNumber": str(block),
                    "timeStamp": "1700000000",
                    "isError": "0",
                    "txreceipt_status": "1",
                }
            )
        eth_chain.hub.notify(HOLDER)

        events = [await sub.next_event(timeout=2.0) for _ in range(150)]

        assert [e.hash for e in events] == [f"0x{block:064x}" for block in range(start + 1, start + 151)]
        assert sub.last_block == start + 150

    @pytest.mark.asyncio
    async def test_reconnects_after_drop(self, monitor: MonitoringService, registry, eth_chain):
        """Test that a dropped channel is re-established on the next endpoint."""
        sub = await monitor.monitor_address("ETH", HOLDER)
        await wait_until(lambda: eth_chain.hub.subscriber_count > 0)

        eth_chain.hub.drop_all()
        await wait_until(
            lambda: registry.pool("ETH").active.url == "sim://eth/b" and eth_chain.hub.subscriber_count > 0
        )
        assert sub.reconnect_attempts == 1

        eth_chain.set_balance(HOLDER, ETH)
        event = await sub.next_event(timeout=2.0)

        assert isinstance(event, BalanceChangeEvent)
        assert sub.reconnect_attempts == 0
        assert sub.state == MonitoringState.ACTIVE

    @pytest.mark.asyncio
    async def test_lost_after_max_attempts(self, monitor: MonitoringService, eth_chain):
        """Test that exhausting reconnects ends in LOST with a final event."""
        eth_chain.hub.refuse_subscriptions = True

        sub = await monitor.monitor_address("ETH", HOLDER)
        events = [event async for event in sub]

        assert len(events) == 1
        assert isinstance(events[0], MonitoringLostEvent)
        assert events[0].attempts == 2
        assert "refused" in events[0].reason
        assert sub.state == MonitoringState.LOST
        assert monitor.get_subscription(sub.id) is None


class TestPollMonitoring:
    """Tests for polling when push is unavailable."""

    @pytest.mark.asyncio
    async def test_polling_detects_change(self, monitor: MonitoringService, btc_chain):
        """Test that polling picks up a balance change."""
        for url in ("sim://btc/a", "sim://btc/b"):
            get_simulated_provider(url).push_enabled = False
        address = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
        sub = await monitor.monitor_address("BTC", address)
        await wait_until(lambda: sub.balance is not None)

        btc_chain.fund(address, 25_000)
        event = await sub.next_event(timeout=2.0)

        assert isinstance(event, BalanceChangeEvent)
        assert event.new == "0.00025"
        assert btc_chain.hub.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_polling_fails_over(self, monitor: MonitoringService, registry, sol_chain):
        """Test that polling keeps reporting when the active endpoint goes down."""
        from solders.pubkey import Pubkey

        for url in ("sim://sol/a", "sim://sol/b"):
            get_simulated_provider(url).push_enabled = False
        address = str(Pubkey.new_unique())
        sub = await monitor.monitor_address("SOL", address)
        await wait_until(lambda: sub.balance is not None)

        primary = get_simulated_provider("sim://sol/a")
        primary.failing = True
        sol_chain.set_balance(address, 10**9)
        event = await sub.next_event(timeout=2.0)
        primary.failing = False

        assert isinstance(event, BalanceChangeEvent)
        assert sub.active


class TestLifecycle:
    """Tests for starting and stopping subscriptions."""

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, monitor: MonitoringService, eth_chain):
        """Test that stopping twice is harmless and iteration ends."""
        sub = await monitor.monitor_address("ETH", HOLDER)

        assert await monitor.stop_monitoring(sub.id) is True
        assert await monitor.stop_monitoring(sub.id) is False
        await sub.stop()

        assert sub.state == MonitoringState.STOPPED
        assert await sub.next_event(timeout=1.0) is None

    @pytest.mark.asyncio
    async def test_invalid_address(self, monitor: MonitoringService):
        """Test that a malformed address is rejected up front."""
        with pytest.raises(ValidationError):
            await monitor.monitor_address("ETH", "0xnope")

    @pytest.mark.asyncio
    async def test_transfers_need_history(self, registry, monitor_settings):
        """Test that transfer tracking requires a history service."""
        service = MonitoringService(registry, monitor_settings)

        with pytest.raises(ValidationError):
            await service.monitor_address("ETH", HOLDER, track_transfers=True)

    @pytest.mark.asyncio
    async def test_tokens_refused_on_bitcoin(self, monitor: MonitoringService):
        """Test that token watches are refused where tokens do not exist."""
        with pytest.raises(ValidationError):
            await monitor.monitor_address("BTC", "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4", tokens=("USDT",))

    @pytest.mark.asyncio
    async def test_subscriptions_listed(self, monitor: MonitoringService, eth_chain):
        """Test subscription lookup."""
        sub = await monitor.monitor_address("ETH", HOLDER)

        assert monitor.get_subscription(sub.id) is sub
        assert monitor.subscriptions == [sub]


class TestBackoff:
    """Tests for reconnect delays."""

    @pytest.mark.parametrize("attempt,ceiling", [(1, 1.0), (2, 2.0), (3, 4.0), (4, 8.0), (10, 8.0)])
    def test_delay_bounds(self, attempt, ceiling):
        """Test that delays double up to the cap with equal jitter."""
        for _ in range(50):
            delay = backoff_delay(attempt, base=1.0, cap=8.0)
            assert ceiling / 2 <= delay <= ceiling
