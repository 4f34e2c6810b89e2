"""Tests for wallet generation, import and key custody."""

import pytest

from hotwallet.crypto import generate_master_key
from hotwallet.errors import DecryptionError, ValidationError, WalletNotFoundError
from hotwallet.ledger.repository import WalletRepository
from hotwallet.networks import Network
from hotwallet.wallet.derivation import generate_mnemonic, validate_mnemonic
from hotwallet.wallet.manager import WalletManager

from conftest import TEST_MNEMONIC

ETH_ADDRESS = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"
BTC_ADDRESS = "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"


class TestMnemonics:
    """Tests for BIP39 phrase handling."""

    def test_generate_mnemonic(self):
        """Test that generated phrases have 12 valid words."""
        phrase = generate_mnemonic()

        assert len(phrase.split()) == 12
        assert validate_mnemonic(phrase) == phrase

    def test_validate_normalises_whitespace(self):
        """Test that extra whitespace and case are normalised."""
        messy = "  " + TEST_MNEMONIC.upper().replace(" ", "   ") + "\n"

        assert validate_mnemonic(messy) == TEST_MNEMONIC

    def test_invalid_checksum(self):
        """Test that a phrase with a bad checksum is rejected."""
        with pytest.raises(ValidationError):
            validate_mnemonic("abandon " * 11 + "abandon")

    def test_empty_phrase(self):
        """Test that an empty phrase is rejected."""
        with pytest.raises(ValidationError):
            validate_mnemonic("   ")


class TestWalletImport:
    """Tests for importing wallets from a seed phrase."""

    @pytest.mark.asyncio
    async def test_import_eth_known_vector(self, wallets: WalletManager):
        """Test the standard BIP44 Ethereum address for the test mnemonic."""
        info = await wallets.import_from_phrase(TEST_MNEMONIC, "ETH")

        assert info.address == ETH_ADDRESS
        assert info.derivation_path == "m/44'/60'/0'/0/0"
        assert info.network == Network.ETH

    @pytest.mark.asyncio
    async def test_import_btc_known_vector(self, wallets: WalletManager):
        """Test the standard BIP84 native SegWit address for the test mnemonic."""
        info = await wallets.import_from_phrase(TEST_MNEMONIC, Network.BTC)

        assert info.address == BTC_ADDRESS
        assert info.derivation_path == "m/84'/0'/0'/0/0"

    @pytest.mark.asyncio
    async def test_import_is_deterministic(self, settings):
        """Test that the same phrase and path always derive the same address."""
        first = WalletManager(settings.master_key)
        second = WalletManager(generate_master_key())

        for network in (Network.MATIC, Network.SOL):
            a = await first.import_from_phrase(TEST_MNEMONIC, network)
            b = await second.import_from_phrase(TEST_MNEMONIC, network)
            assert a.address == b.address

    @pytest.mark.asyncio
    async def test_evm_networks_share_address(self, wallets: WalletManager):
        """Test that ETH, MATIC and BNB derive the same address on the default path."""
        addresses = {
            (await wallets.import_from_phrase(TEST_MNEMONIC, network)).address
            for network in (Network.ETH, Network.MATIC, Network.BNB)
        }

        assert addresses == {ETH_ADDRESS}

    @pytest.mark.asyncio
    async def test_custom_path(self, wallets: WalletManager):
        """Test that a custom path derives a different address."""
        default = await wallets.import_from_phrase(TEST_MNEMONIC, "ETH")
        custom = await wallets.import_from_phrase(TEST_MNEMONIC, "ETH", "m/44'/60'/0'/0/1")

        assert custom.address != default.address
        assert custom.derivation_path == "m/44'/60'/0'/0/1"
        assert len(wallets.list_wallets("ETH")) == 2

    @pytest.mark.asyncio
    async def test_solana_requires_hardened_path(self, wallets: WalletManager):
        """Test that ed25519 derivation rejects non-hardened segments."""
        with pytest.raises(ValidationError):
            await wallets.import_from_phrase(TEST_MNEMONIC, "SOL", "m/44'/501'/0'/0")

    @pytest.mark.asyncio
    async def test_malformed_path(self, wallets: WalletManager):
        """Test that a malformed path is rejected before derivation."""
        with pytest.raises(ValidationError):
            await wallets.import_from_phrase(TEST_MNEMONIC, "ETH", "44'/60'/0'")

        assert wallets.list_wallets() == []

    @pytest.mark.asyncio
    async def test_invalid_phrase_stores_nothing(self, wallets: WalletManager):
        """Test that an invalid phrase leaves no wallet behind."""
        with pytest.raises(ValidationError):
            await wallets.import_from_phrase("not a real seed phrase at all", "ETH")

        assert wallets.list_wallets() == []

    @pytest.mark.asyncio
    async def test_generate_returns_mnemonic_once(self, wallets: WalletManager):
        """Test that generation returns a phrase that re-imports to the same address."""
        generated = await wallets.generate("BTC")
        other = WalletManager(generate_master_key())

        reimported = await other.import_from_phrase(generated.mnemonic, "BTC")

        assert reimported.address == generated.wallet.address
        assert "mnemonic" not in generated.wallet.model_dump()


class TestWalletLookup:
    """Tests for wallet lookup and removal."""

    @pytest.mark.asyncio
    async def test_lookup_is_case_insensitive_for_evm(self, wallets: WalletManager):
        """Test that EVM lookups ignore address case."""
        await wallets.import_from_phrase(TEST_MNEMONIC, "ETH")

        assert wallets.has_wallet("ETH", ETH_ADDRESS.lower())
        assert wallets.get_wallet("eth", ETH_ADDRESS.lower()).address == ETH_ADDRESS

    @pytest.mark.asyncio
    async def test_unknown_wallet(self, wallets: WalletManager):
        """Test that an unknown wallet raises WalletNotFoundError."""
        with pytest.raises(WalletNotFoundError):
            wallets.get_wallet("ETH", ETH_ADDRESS)

    @pytest.mark.asyncio
    async def test_remove_wallet(self, wallets: WalletManager):
        """Test wallet removal."""
        await wallets.import_from_phrase(TEST_MNEMONIC, "ETH")

        assert await wallets.remove_wallet("ETH", ETH_ADDRESS) is True
        assert await wallets.remove_wallet("ETH", ETH_ADDRESS) is False
        assert not wallets.has_wallet("ETH", ETH_ADDRESS)

    @pytest.mark.asyncio
    async def test_info_has_no_key_material(self, wallets: WalletManager):
        """Test that the public wallet view carries no secret fields."""
        info = await wallets.import_from_phrase(TEST_MNEMONIC, "ETH")

        assert set(info.model_dump()) == {"network", "address", "derivation_path"}
        assert "encrypted_private_key" not in repr(wallets.get_wallet("ETH", ETH_ADDRESS))


class TestSigningKey:
    """Tests for lending out decrypted keys."""

    @pytest.mark.asyncio
    async def test_key_wiped_after_use(self, wallets: WalletManager):
        """Test that the buffer handed to the callback is zeroed afterwards."""
        await wallets.import_from_phrase(TEST_MNEMONIC, "ETH")
        seen = []

        def capture(key):
            seen.append(key)
            return len(key)

        assert await wallets.with_signing_key("ETH", ETH_ADDRESS, capture) == 32
        assert seen[0] == bytearray(32)

    @pytest.mark.asyncio
    async def test_key_wiped_on_exception(self, wallets: WalletManager):
        """Test that the key is zeroed when the callback raises."""
        await wallets.import_from_phrase(TEST_MNEMONIC, "ETH")
        seen = []

        def explode(key):
            seen.append(key)
            raise RuntimeError("signing failed")

        with pytest.raises(RuntimeError):
            await wallets.with_signing_key("ETH", ETH_ADDRESS, explode)

        assert seen[0] == bytearray(32)

    @pytest.mark.asyncio
    async def test_context_manager_wipes(self, wallets: WalletManager):
        """Test the async context manager form."""
        await wallets.import_from_phrase(TEST_MNEMONIC, "ETH")

        async with wallets.signing_key("ETH", ETH_ADDRESS) as key:
            held = key
            assert any(held)

        assert held == bytearray(32)

    @pytest.mark.asyncio
    async def test_rotate_master_key(self, wallets: WalletManager):
        """Test that rotation keeps every wallet usable under the new key."""
        await wallets.import_from_phrase(TEST_MNEMONIC, "ETH")
        await wallets.import_from_phrase(TEST_MNEMONIC, "BTC")
        before = wallets.get_wallet("ETH", ETH_ADDRESS).encrypted_private_key

        count = await wallets.rotate_master_key(generate_master_key())

        assert count == 2
        assert wallets.get_wallet("ETH", ETH_ADDRESS).encrypted_private_key != before
        assert await wallets.with_signing_key("ETH", ETH_ADDRESS, len) == 32

    @pytest.mark.asyncio
    async def test_rotate_rejects_invalid_key(self, wallets: WalletManager):
        """Test that an invalid new key leaves the wallets untouched."""
        await wallets.import_from_phrase(TEST_MNEMONIC, "ETH")
        before = wallets.get_wallet("ETH", ETH_ADDRESS).encrypted_private_key

        with pytest.raises(DecryptionError):
            await wallets.rotate_master_key("invalid")

        assert wallets.get_wallet("ETH", ETH_ADDRESS).encrypted_private_key == before


class TestWalletPersistence:
    """Tests for storing encrypted wallets in the database."""

    @pytest.mark.asyncio
    async def test_persist_and_load(self, settings, session_factory):
        """Test that persisted wallets are restored by a new manager."""
        manager = WalletManager(settings.master_key, persist=True, session_factory=session_factory)
        await manager.import_from_phrase(TEST_MNEMONIC, "ETH")
        await manager.import_from_phrase(TEST_MNEMONIC, "BTC")

        restored = WalletManager(settings.master_key, persist=True, session_factory=session_factory)
        assert await restored.load() == 2
        assert restored.get_wallet("BTC", BTC_ADDRESS).derivation_path == "m/84'/0'/0'/0/0"

    @pytest.mark.asyncio
    async def test_only_ciphertext_stored(self, settings, session_factory):
        """Test that the stored record holds a Fernet token, never raw key bytes."""
        manager = WalletManager(settings.master_key, persist=True, session_factory=session_factory)
        await manager.import_from_phrase(TEST_MNEMONIC, "ETH")
        raw_key = await manager.with_signing_key("ETH", ETH_ADDRESS, lambda key: bytes(key).hex())

        async with session_factory() as session:
            record = await WalletRepository(session).get("ETH", ETH_ADDRESS)

        assert record is not None
        assert raw_key not in record.encrypted_private_key
        assert record.encrypted_private_key.startswith("gAAAA")

    @pytest.mark.asyncio
    async def test_load_with_wrong_key_fails(self, settings, session_factory):
        """Test that a wrong master key fails at load time."""
        manager = WalletManager(settings.master_key, persist=True, session_factory=session_factory)
        await manager.import_from_phrase(TEST_MNEMONIC, "ETH")

        wrong = WalletManager(generate_master_key(), persist=True, session_factory=session_factory)
        with pytest.raises(DecryptionError):
            await wrong.load()

    @pytest.mark.asyncio
    async def test_rotation_is_persisted(self, settings, session_factory):
        """Test that rotated ciphertext replaces the stored record."""
        manager = WalletManager(settings.master_key, persist=True, session_factory=session_factory)
        await manager.import_from_phrase(TEST_MNEMONIC, "ETH")
        new_key = generate_master_key()

        await manager.rotate_master_key(new_key)

        restored = WalletManager(new_key, persist=True, session_factory=session_factory)
        assert await restored.load() == 1

    @pytest.mark.asyncio
    async def test_remove_deletes_record(self, settings, session_factory):
        """Test that removing a wallet deletes its stored record."""
        manager = WalletManager(settings.master_key, persist=True, session_factory=session_factory)
        await manager.import_from_phrase(TEST_MNEMONIC, "ETH")

        await manager.remove_wallet("ETH", ETH_ADDRESS)

        restored = WalletManager(settings.master_key, persist=True, session_factory=session_factory)
        assert await restored.load() == 0
