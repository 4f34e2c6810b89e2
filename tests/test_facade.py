"""End-to-end tests through the HotWallet entry point."""

import pytest
import pytest_asyncio

from hotwallet.contracts.history import Direction
from hotwallet.contracts.transactions import Priority, TransactionRequest, TransactionState
from hotwallet.errors import SimulationError, WalletNotFoundError
from hotwallet.facade import HotWallet
from hotwallet.ledger.database import get_db
from hotwallet.ledger.repository import TransactionRepository, WalletRepository
from hotwallet.networks import Network
from hotwallet.providers.simulated import get_simulated_chain, get_simulated_provider

from conftest import ETH, TEST_MNEMONIC

RECIPIENT = "0x000000000000000000000000000000000000dEaD"
USDT = "0xdAC17F958D2ee523a2206206994597C13D831ec7"


@pytest_asyncio.fixture
async def hot_wallet(settings):
    async with HotWallet(settings) as wallet:
        yield wallet


@pytest_asyncio.fixture
async def funded(hot_wallet: HotWallet) -> str:
    info = await hot_wallet.import_wallet(TEST_MNEMONIC, "ETH")
    get_simulated_chain(Network.ETH).set_balance(info.address, 10 * ETH)
    return info.address


class TestWallets:
    """Tests for wallet custody through the facade."""

    @pytest.mark.asyncio
    async def test_generate_and_list(self, hot_wallet: HotWallet):
        """Test that a generated wallet is listed without key material."""
        generated = await hot_wallet.generate_wallet("SOL")

        assert len(generated.mnemonic.split()) == 12
        listed = hot_wallet.list_wallets("SOL")
        assert [w.address for w in listed] == [generated.wallet.address]
        assert "private" not in str(listed[0].model_dump())

    @pytest.mark.asyncio
    async def test_remove_wallet(self, hot_wallet: HotWallet, funded: str):
        """Test wallet removal."""
        assert await hot_wallet.remove_wallet("ETH", funded) is True
        assert hot_wallet.list_wallets("ETH") == []


class TestTransfers:
    """Tests for the send path through the facade."""

    @pytest.mark.asyncio
    async def test_quote_simulate_send(self, hot_wallet: HotWallet, funded: str):
        """Test the full flow from quote to confirmed receipt."""
        request = TransactionRequest(network=Network.ETH, from_address=funded, to_address=RECIPIENT, amount="1.5")

        quotes = await hot_wallet.get_fee_quote(request)
        assert set(quotes) == set(Priority)
        assert quotes[Priority.LOW].estimated_cost <= quotes[Priority.HIGH].estimated_cost

        simulated = await hot_wallet.simulate_transaction(request)
        assert simulated.state == TransactionState.SIMULATED
        assert simulated.simulation.success is True

        result = await hot_wallet.send_transaction(request, wait=True, timeout=2.0)
        assert result.state == TransactionState.CONFIRMED

        balance = await hot_wallet.get_balance("ETH", RECIPIENT)
        assert balance.balance == "1.5"

        receipt = await hot_wallet.get_receipt("ETH", result.hash)
        assert receipt.hash == result.hash

        page = await hot_wallet.get_history("ETH", funded)
        assert [(r.hash, r.direction) for r in page.records] == [(result.hash, Direction.OUTGOING)]

    @pytest.mark.asyncio
    async def test_prepare_and_rejection(self, hot_wallet: HotWallet, funded: str):
        """Test that prepare stops at QUOTED and an unaffordable token send is refused."""
        native = TransactionRequest(network=Network.ETH, from_address=funded, to_address=RECIPIENT, amount="1")
        result = await hot_wallet.prepare_transaction(native)
        assert result.state == TransactionState.QUOTED
        assert result.hash is None

        get_simulated_chain(Network.ETH).deploy_erc20(USDT, decimals=6, symbol="USDT")
        token = TransactionRequest(
            network=Network.ETH, from_address=funded, to_address=RECIPIENT, amount="5", token="USDT"
        )
        with pytest.raises(SimulationError):
            await hot_wallet.send_transaction(token)

    @pytest.mark.asyncio
    async def test_token_send(self, hot_wallet: HotWallet, funded: str):
        """Test the token transfer shortcut."""
        chain = get_simulated_chain(Network.ETH)
        chain.deploy_erc20(USDT, decimals=6, symbol="USDT")
        chain.mint_erc20(USDT, funded, 10_000_000)

        result = await hot_wallet.send_token_transaction("ETH", funded, RECIPIENT, "USDT", "2", wait=True)

        assert result.state == TransactionState.CONFIRMED
        balance = await hot_wallet.get_token_balance("ETH", RECIPIENT, "USDT")
        assert balance.balance == "2.0"

    @pytest.mark.asyncio
    async def test_batch(self, hot_wallet: HotWallet, funded: str):
        """Test a batch of native sends."""
        requests = [
            TransactionRequest(network=Network.ETH, from_address=funded, to_address=RECIPIENT, amount="0.1")
            for _ in range(3)
        ]

        outcomes = await hot_wallet.send_batch(requests)

        assert [o.success for o in outcomes] == [True, True, True]
        assert len({o.hash for o in outcomes}) == 3

    @pytest.mark.asyncio
    async def test_unknown_sender(self, hot_wallet: HotWallet):
        """Test that only custodied wallets can send."""
        request = TransactionRequest(network=Network.ETH, from_address=RECIPIENT, to_address=RECIPIENT, amount="1")

        with pytest.raises(WalletNotFoundError):
            await hot_wallet.send_transaction(request)


class TestOperators:
    """Tests for endpoint administration."""

    @pytest.mark.asyncio
    async def test_disable_endpoint_rotates(self, hot_wallet: HotWallet, funded: str):
        """Test that disabling the active endpoint moves traffic to the next one."""
        await hot_wallet.set_endpoint_enabled("ETH", "sim://eth/a", False)

        status = hot_wallet.endpoint_status("ETH")
        assert [(e["url"], e["active"], e["enabled"]) for e in status["endpoints"]] == [
            ("sim://eth/a", False, False),
            ("sim://eth/b", True, True),
        ]

        balance = await hot_wallet.get_balance("ETH", funded)
        assert balance.raw == 10 * ETH
        assert get_simulated_provider("sim://eth/a").calls == 0

    @pytest.mark.asyncio
    async def test_close_stops_monitoring(self, settings):
        """Test that closing the wallet ends live subscriptions."""
        wallet = HotWallet(settings)
        await wallet.start()
        sub = await wallet.monitor_address("ETH", RECIPIENT)

        await wallet.close()

        assert sub.active is False
        assert wallet.monitoring.subscriptions == []


class TestPersistence:
    """Tests for the facade with persistence enabled."""

    @pytest.mark.asyncio
    async def test_wallets_and_transactions_recorded(self, settings):
        """Test that imported wallets and sends reach the ledger."""
        persistent = settings.model_copy(update={"persist_wallets": True})
        async with HotWallet(persistent) as wallet:
            info = await wallet.import_wallet(TEST_MNEMONIC, "ETH")
            get_simulated_chain(Network.ETH).set_balance(info.address, ETH)
            result = await wallet.send_transaction(
                TransactionRequest(network=Network.ETH, from_address=info.address, to_address=RECIPIENT, amount="0.1"),
                wait=True,
                timeout=2.0,
            )

            async with get_db() as session:
                records = await WalletRepository(session).list_all("ETH")
                tx = await TransactionRepository(session).get("ETH", result.hash)

        assert [r.address for r in records] == [info.address]
        assert records[0].encrypted_private_key != ""
        assert tx.state == "confirmed"
        assert tx.amount == "0.1"
