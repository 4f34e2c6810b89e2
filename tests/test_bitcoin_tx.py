"""Tests for SegWit spends: output scripts, sizing and signing."""

import pytest
from bitcoinlib.transactions import Transaction

from hotwallet.errors import NetworkUnavailableError, ValidationError
from hotwallet.handlers.utxo import PaymentOutput, UtxoSpend, rate_for_target
from hotwallet.networks import Network, get_network
from hotwallet.types import TransactionDraft, Transfer, UnsignedTransaction, Utxo
from hotwallet.wallet.derivation import derive_key

from conftest import TEST_MNEMONIC

OWN = "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
RECIPIENT = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
FUNDING_TXID = "aa" * 32


@pytest.fixture
def handler(registry):
    return registry.handler(Network.BTC)


@pytest.fixture
def private_key() -> bytearray:
    config = get_network("BTC")
    derived = derive_key(TEST_MNEMONIC, config, config.default_path)
    assert derived.address == OWN
    return derived.private_key


def make_unsigned(handler, input_address: str = OWN) -> UnsignedTransaction:
    spend = UtxoSpend(
        inputs=[Utxo(FUNDING_TXID, 1, 100_000, input_address)],
        outputs=[
            PaymentOutput(RECIPIENT, 60_000, handler.lock_script(RECIPIENT)),
            PaymentOutput(OWN, 39_000, handler.lock_script(OWN)),
        ],
        change_index=1,
    )
    draft = TransactionDraft(Network.BTC, OWN, [Transfer(to=RECIPIENT, amount=60_000)])
    return UnsignedTransaction(draft=draft, payload=spend)


class TestScripts:
    """Tests for output scripts."""

    def test_p2wpkh_script(self, handler):
        """Test the witness v0 key hash script."""
        assert handler.lock_script(RECIPIENT).hex() == "0014751e76e8199196d454941c45d1b3a323f1433bd6"

    def test_p2pkh_script(self, handler):
        """Test that legacy addresses can be paid."""
        script = handler.lock_script("1PMycacnJaSqwwJqjawXBErnLsZ7RkXUAs")

        assert script.hex() == "76a914f54a5851e9372b87810a8e60cdd2e7cfd80b6e3188ac"

    @pytest.mark.parametrize(
        "address",
        [
            "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t5",
            "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx",
            "1PMycacnJaSqwwJqjawXBErnLsZ7RkXUAt",
            "not-an-address",
        ],
    )
    def test_invalid_address(self, handler, address):
        """Test that malformed or foreign-network addresses are rejected."""
        with pytest.raises(ValidationError):
            handler.lock_script(address)
        assert handler.validate_address(address) is False


class TestSpend:
    """Tests for unsigned spends."""

    def test_fee_is_input_minus_outputs(self, handler):
        """Test the implicit fee."""
        assert make_unsigned(handler).payload.fee == 1_000

    def test_vsize(self, handler):
        """Test the virtual size of a one-input two-output spend."""
        assert make_unsigned(handler).payload.vsize == 141

    @pytest.mark.asyncio
    async def test_build_skips_reserved_outpoints(self, handler, btc_chain):
        """Test that coin selection never picks an outpoint held by a pending send."""
        large = btc_chain.fund(OWN, 500_000)
        small = btc_chain.fund(OWN, 200_000)
        draft = TransactionDraft(
            Network.BTC, OWN, [Transfer(to=RECIPIENT, amount=50_000)], reserved_outpoints={(large, 0)}
        )

        unsigned = await handler.build_unsigned_transaction(draft)

        assert unsigned.payload.outpoints == {(small, 0)}

    @pytest.mark.asyncio
    async def test_simulation_rejects_reserved_input(self, handler, btc_chain):
        """Test that a spend built before a reservation no longer simulates."""
        txid = btc_chain.fund(OWN, 500_000)
        draft = TransactionDraft(Network.BTC, OWN, [Transfer(to=RECIPIENT, amount=50_000)])
        unsigned = await handler.build_unsigned_transaction(draft)

        draft.reserved_outpoints = {(txid, 0)}
        result = await handler.simulate(unsigned)

        assert result.success is False
        assert "pending send" in result.error_detail


class TestFeeMarket:
    """Tests for fee rates from confirmation-target estimates."""

    def test_closest_target_at_or_below(self):
        """Test that a tier uses the nearest target it can afford to wait for."""
        estimates = {1: 30.0, 3: 20.5, 144: 2.0}

        assert rate_for_target(estimates, 6) == 21
        assert rate_for_target(estimates, 1) == 30

    @pytest.mark.asyncio
    async def test_empty_estimates(self, handler, btc_chain):
        """Test that a node with no estimates reports the network as unavailable."""
        btc_chain.fee_rates = {}

        with pytest.raises(NetworkUnavailableError):
            await handler.get_fee_market()


class TestSigning:
    """Tests for witness signing."""

    def test_signing_is_deterministic(self, handler, private_key):
        """Test that RFC 6979 nonces make signing reproducible."""
        first = handler.sign(make_unsigned(handler), private_key)
        second = handler.sign(make_unsigned(handler), private_key)

        assert (first.hash, first.raw) == (second.hash, second.raw)

    def test_signed_transaction_parses(self, handler, private_key):
        """Test that the raw bytes decode back to the same txid and outputs."""
        signed = handler.sign(make_unsigned(handler), private_key)

        assert signed.raw[:4] == bytes.fromhex("02000000")
        assert signed.raw[4:6] == b"\x00\x01"

        parsed = Transaction.parse_hex(signed.raw.hex(), network="bitcoin")
        assert parsed.txid == signed.hash
        assert [(o.address, o.value) for o in parsed.outputs] == [(RECIPIENT, 60_000), (OWN, 39_000)]

    def test_foreign_input_refused(self, handler, private_key):
        """Test that a key cannot sign inputs it does not control."""
        with pytest.raises(ValidationError):
            handler.sign(make_unsigned(handler, input_address=RECIPIENT), private_key)
