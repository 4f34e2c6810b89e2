"""Tests for the balance service."""

import pytest
from solders.pubkey import Pubkey

from hotwallet.errors import ValidationError
from hotwallet.providers.simulated import get_simulated_provider
from hotwallet.services.balance import BalanceService

from conftest import ETH

HOLDER = "0x000000000000000000000000000000000000beef"
USDT = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
BTC_ADDRESS = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"


@pytest.fixture
def balances(registry) -> BalanceService:
    return BalanceService(registry)


class TestNativeBalance:
    """Tests for native coin balances."""

    @pytest.mark.asyncio
    async def test_eth_balance(self, balances: BalanceService, eth_chain):
        """Test that balances come back as exact decimal strings."""
        eth_chain.set_balance(HOLDER, 3 * ETH + 1)

        result = await balances.get_native_balance("ETH", HOLDER)

        assert result.available is True
        assert result.asset == "ETH"
        assert result.raw == 3 * ETH + 1
        assert result.balance == "3.000000000000000001"
        assert result.decimals == 18

    @pytest.mark.asyncio
    async def test_empty_wallet_reads_zero(self, balances: BalanceService, eth_chain):
        """Test that an unfunded address is zero, not unavailable."""
        result = await balances.get_native_balance("ETH", HOLDER)

        assert result.available is True
        assert result.balance == "0.0"

    @pytest.mark.asyncio
    async def test_btc_balance(self, balances: BalanceService, btc_chain):
        """Test that BTC balances sum the address's unspent outputs."""
        btc_chain.fund(BTC_ADDRESS, 150_000)
        btc_chain.fund(BTC_ADDRESS, 50_000, confirmed=False)

        result = await balances.get_native_balance("BTC", BTC_ADDRESS)

        assert result.raw == 200_000
        assert result.balance == "0.002"

    @pytest.mark.asyncio
    async def test_sol_balance(self, balances: BalanceService, sol_chain):
        """Test lamport balances."""
        owner = str(Pubkey.new_unique())
        sol_chain.set_balance(owner, 2_500_000_000)

        result = await balances.get_native_balance("SOL", owner)

        assert result.balance == "2.5"

    @pytest.mark.asyncio
    async def test_invalid_address(self, balances: BalanceService):
        """Test that a malformed address is a validation error."""
        with pytest.raises(ValidationError):
            await balances.get_native_balance("ETH", "0xnothex")
        with pytest.raises(ValidationError):
            await balances.get_native_balance("BTC", HOLDER)


class TestTokenBalance:
    """Tests for fungible token balances."""

    @pytest.mark.asyncio
    async def test_erc20_by_symbol(self, balances: BalanceService, eth_chain):
        """Test a known token resolved by symbol."""
        eth_chain.deploy_erc20(USDT, decimals=6, symbol="USDT")
        eth_chain.mint_erc20(USDT, HOLDER, 1_234_500)

        result = await balances.get_token_balance("ETH", HOLDER, "usdt")

        assert result.raw == 1_234_500
        assert result.balance == "1.2345"
        assert result.decimals == 6

    @pytest.mark.asyncio
    async def test_erc20_by_address_reads_decimals(self, balances: BalanceService, eth_chain):
        """Test that an unlisted token's decimals are read from the contract."""
        contract = "0x00000000000000000000000000000000000C0FFE"
        eth_chain.deploy_erc20(contract, decimals=8, symbol="CAF")
        eth_chain.mint_erc20(contract, HOLDER, 10**8)

        result = await balances.get_token_balance("ETH", HOLDER, contract)

        assert result.decimals == 8
        assert result.balance == "1.0"

    @pytest.mark.asyncio
    async def test_unknown_symbol(self, balances: BalanceService):
        """Test that an unknown symbol is rejected."""
        with pytest.raises(ValidationError):
            await balances.get_token_balance("ETH", HOLDER, "NOPE")

    @pytest.mark.asyncio
    async def test_tokens_not_on_bitcoin(self, balances: BalanceService):
        """Test that token lookups are refused on BTC."""
        with pytest.raises(ValidationError):
            await balances.get_token_balance("BTC", BTC_ADDRESS, "USDT")

    @pytest.mark.asyncio
    async def test_spl_balance(self, balances: BalanceService, sol_chain):
        """Test SPL token balances."""
        owner = str(Pubkey.new_unique())
        mint = str(Pubkey.new_unique())
        sol_chain.create_mint(mint, 9)
        sol_chain.mint_to(mint, owner, 1_500_000_000)

        result = await balances.get_token_balance("SOL", owner, mint)

        assert result.balance == "1.5"
        assert result.decimals == 9


class TestUnavailable:
    """Tests for balances during provider outages."""

    @pytest.mark.asyncio
    async def test_outage_is_not_zero(self, balances: BalanceService, eth_chain):
        """Test that an outage reports unavailable instead of zero."""
        eth_chain.set_balance(HOLDER, ETH)
        get_simulated_provider("sim://eth/a").failing = True
        get_simulated_provider("sim://eth/b").failing = True

        result = await balances.get_native_balance("ETH", HOLDER)

        assert result.available is False
        assert result.balance is None
        assert result.raw is None
        assert result.error["code"] == "network_unavailable"

    @pytest.mark.asyncio
    async def test_failover_is_transparent(self, balances: BalanceService, eth_chain):
        """Test that one failed endpoint does not affect the result."""
        eth_chain.set_balance(HOLDER, ETH)
        get_simulated_provider("sim://eth/a").failing = True

        result = await balances.get_native_balance("ETH", HOLDER)

        assert result.available is True
        assert result.raw == ETH

    @pytest.mark.asyncio
    async def test_get_balances(self, balances: BalanceService, eth_chain):
        """Test the combined native and token read."""
        eth_chain.set_balance(HOLDER, ETH)
        eth_chain.deploy_erc20(USDT, decimals=6, symbol="USDT")
        eth_chain.mint_erc20(USDT, HOLDER, 5_000_000)

        results = await balances.get_balances("ETH", HOLDER, ["USDT"])

        assert [(r.asset, r.balance) for r in results] == [("ETH", "1.0"), ("USDT", "5.0")]
