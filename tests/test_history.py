"""Tests for transaction history."""

from typing import Optional

import pytest
from solders.pubkey import Pubkey

from hotwallet.contracts.history import Direction, HistoryOptions, HistoryRecord
from hotwallet.contracts.transactions import TransactionRequest
from hotwallet.errors import ConfigurationError, ValidationError
from hotwallet.networks import Network
from hotwallet.providers.simulated import get_simulated_provider
from hotwallet.services.history import HistoryService, dedupe_and_sort, paginate

from conftest import TEST_MNEMONIC

RECIPIENT = "0x000000000000000000000000000000000000dEaD"
USDT = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
BTC_RECIPIENT = "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"


def record(hash_: str, block: int, asset: str = "ETH", direction: Direction = Direction.INCOMING) -> HistoryRecord:
    return HistoryRecord(
        network=Network.ETH, hash=hash_, direction=direction, asset=asset, amount="1.0", block_number=block
    )


def explorer_row(block: int, action: str = "txlist", hash_: Optional[str] = None) -> dict:
    row = {
        "action": action,
        "hash": hash_ or f"0x{block:064x}",
        "from": "0x0000000000000000000000000000000000000001",
        "to": RECIPIENT.lower(),
        "value": "1",
        "blockNumber": str(block),
        "timeStamp": "1700000000",
        "isError": "0",
        "txreceipt_status": "1",
    }
    if action == "tokentx":
        row.update(contractAddress=USDT.lower(), tokenSymbol="USDT", tokenDecimal="6")
    return row


@pytest.fixture
def history(registry, pipeline) -> HistoryService:
    return HistoryService(registry, pipeline)


class TestPaging:
    """Tests for dedupe and block-aligned pagination."""

    def test_dedupe_and_sort(self):
        """Test that duplicates collapse and the newest block comes first."""
        records = [record("a", 5), record("b", 9), record("a", 5), record("a", 5, asset="USDT")]

        result = dedupe_and_sort(records)

        assert [(r.hash, r.asset) for r in result] == [("b", "ETH"), ("a", "ETH"), ("a", "USDT")]

    def test_pending_sorts_first(self):
        """Test that records without a block are treated as newest."""
        pending = HistoryRecord(
            network=Network.ETH, hash="p", direction=Direction.OUTGOING, asset="ETH", amount="1.0", status="pending"
        )

        assert dedupe_and_sort([record("a", 5), pending])[0].hash == "p"

    def test_short_list_is_one_page(self):
        """Test that a list within the limit has no next page."""
        records = [record("a", 3), record("b", 2)]

        assert paginate(records, 5) == (records, None)

    def test_clean_block_boundary(self):
        """Test a page ending exactly at a block boundary."""
        records = [record("a", 9), record("b", 8), record("c", 7)]

        page, next_to_block = paginate(records, 2)

        assert [r.hash for r in page] == ["a", "b"]
        assert next_to_block == 7

    def test_block_never_split(self):
        """Test that a block straddling the limit moves to the next page."""
        records = [record("a", 9), record("b", 8), record("c", 8), record("d", 7)]

        page, next_to_block = paginate(records, 2)

        assert [r.hash for r in page] == ["a"]
        assert next_to_block == 8

    def test_oversized_block_returned_whole(self):
        """Test that a block larger than the limit is returned in full."""
        records = [record("a", 8), record("b", 8), record("c", 8), record("d", 7)]

        page, next_to_block = paginate(records, 2)

        assert [r.hash for r in page] == ["a", "b", "c"]
        assert next_to_block == 7

    def test_next_page_bounded_by_from_block(self):
        """Test that no next page is offered below ``from_block``."""
        records = [record("a", 9), record("b", 8)]

        _, next_to_block = paginate(records, 1, from_block=9)

        assert next_to_block is None


class TestEvmHistory:
    """Tests for EVM history from the explorer API."""

    @pytest.mark.asyncio
    async def test_native_transfers(self, history: HistoryService, pipeline, eth_wallet):
        """Test that sends show as outgoing for the sender and incoming for the recipient."""
        for amount in ("1", "2"):
            await pipeline.execute(
                TransactionRequest(network=Network.ETH, from_address=eth_wallet, to_address=RECIPIENT, amount=amount)
            )

        sent = await history.get_history("ETH", eth_wallet)
        received = await history.get_history("ETH", RECIPIENT)

        assert [(r.direction, r.amount) for r in sent.records] == [
            (Direction.OUTGOING, "2.0"),
            (Direction.OUTGOING, "1.0"),
        ]
        assert {r.direction for r in received.records} == {Direction.INCOMING}
        assert sent.records[0].block_number > sent.records[1].block_number

    @pytest.mark.asyncio
    async def test_token_transfers(self, history: HistoryService, pipeline, eth_wallet, eth_chain):
        """Test token rows and the include flag."""
        eth_chain.deploy_erc20(USDT, decimals=6, symbol="USDT")
        eth_chain.mint_erc20(USDT, eth_wallet, 10_000_000)
        await pipeline.execute(
            TransactionRequest(
                network=Network.ETH, from_address=eth_wallet, to_address=RECIPIENT, amount="2.5", token="USDT"
            )
        )

        with_tokens = await history.get_history("ETH", RECIPIENT)
        without = await history.get_history("ETH", RECIPIENT, HistoryOptions(include_token_transfers=False))

        assert [(r.asset, r.amount) for r in with_tokens.records] == [("USDT", "2.5")]
        assert without.records == []

    @pytest.mark.asyncio
    async def test_zero_value_call_rows_dropped(self, history: HistoryService, pipeline, eth_wallet, eth_chain):
        """Test that the zero-value contract call beside a token transfer is not listed."""
        eth_chain.deploy_erc20(USDT, decimals=6, symbol="USDT")
        eth_chain.mint_erc20(USDT, eth_wallet, 10_000_000)
        result = await pipeline.execute(
            TransactionRequest(
                network=Network.ETH, from_address=eth_wallet, to_address=RECIPIENT, amount="1", token="USDT"
            )
        )
        token_row = next(r for r in eth_chain.rows if r["hash"] == result.hash)
        eth_chain.rows.append(
            dict(token_row, action="txlist", to=USDT.lower(), value="0")
        )

        page = await history.get_history("ETH", eth_wallet)

        assert [r.asset for r in page.records] == ["USDT"]

    @pytest.mark.asyncio
    async def test_nft_transfers_opt_in(self, history: HistoryService, pipeline, eth_wallet, eth_chain):
        """Test that NFT rows appear only when requested."""
        from hotwallet.services.nft import NFTService

        collection = "0x0000000000000000000000000000000000000721"
        eth_chain.deploy_erc721(collection)
        eth_chain.mint_erc721(collection, 4, eth_wallet)
        await NFTService(pipeline.registry, pipeline).transfer("ETH", eth_wallet, RECIPIENT, collection, 4)

        default = await history.get_history("ETH", RECIPIENT)
        with_nfts = await history.get_history("ETH", RECIPIENT, HistoryOptions(include_nft_transfers=True))

        assert default.records == []
        assert [(r.token_id, r.amount) for r in with_nfts.records] == [(4, "1")]

    @pytest.mark.asyncio
    async def test_failed_transaction_status(self, history: HistoryService, eth_chain):
        """Test that reverted transactions are marked failed."""
        eth_chain.rows.append(
            {
                "action": "txlist",
                "hash": "0xfeed",
                "from": RECIPIENT.lower(),
                "to": "0x0000000000000000000000000000000000000001",
                "value": "5",
                "blockNumber": "3",
                "timeStamp": "1700000000",
                "isError": "1",
                "txreceipt_status": "0",
            }
        )

        page = await history.get_history("ETH", RECIPIENT)

        assert page.records[0].status == "failed"
        assert page.records[0].timestamp == 1700000000

    @pytest.mark.asyncio
    async def test_block_range(self, history: HistoryService, pipeline, eth_wallet):
        """Test block range filtering and validation."""
        results = []
        for _ in range(3):
            results.append(
                await pipeline.execute(
                    TransactionRequest(network=Network.ETH, from_address=eth_wallet, to_address=RECIPIENT, amount="1")
                )
            )
        middle = results[1].receipt.block_number

        page = await history.get_history("ETH", eth_wallet, HistoryOptions(from_block=middle, to_block=middle))

        assert [r.hash for r in page.records] == [results[1].hash]
        with pytest.raises(ValidationError):
            await history.get_history("ETH", eth_wallet, HistoryOptions(from_block=9, to_block=1))

    @pytest.mark.asyncio
    async def test_paged_walk(self, history: HistoryService, pipeline, eth_wallet):
        """Test walking pages with ``next_to_block``."""
        for _ in range(3):
            await pipeline.execute(
                TransactionRequest(network=Network.ETH, from_address=eth_wallet, to_address=RECIPIENT, amount="1")
            )

        first = await history.get_history("ETH", eth_wallet, HistoryOptions(limit=2))
        second = await history.get_history("ETH", eth_wallet, HistoryOptions(limit=2, to_block=first.next_to_block))

        assert len(first.records) == 2
        assert len(second.records) == 1
        assert second.next_to_block is None
        assert {r.hash for r in first.records}.isdisjoint({r.hash for r in second.records})

    @pytest.mark.asyncio
    async def test_busy_address_newest_first(self, history: HistoryService, eth_chain):
        """Test that a long explorer history starts at the newest block and can be walked back."""
        eth_chain.rows.extend(explorer_row(block) for block in range(1, 2101))

        first = await history.get_history("ETH", RECIPIENT)
        second = await history.get_history("ETH", RECIPIENT, HistoryOptions(to_block=first.next_to_block))

        assert [r.block_number for r in first.records] == list(range(2100, 2000, -1))
        assert first.next_to_block == 2000
        assert second.records[0].block_number == 2000
        assert second.next_to_block == 1900

    @pytest.mark.asyncio
    async def test_cursor_covers_truncated_action(self, history: HistoryService, eth_chain):
        """Test that records below the oldest block of a cut-off action are left for the next page."""
        eth_chain.rows.extend(explorer_row(block) for block in range(1, 251))
        eth_chain.rows.append(explorer_row(5, action="tokentx", hash_="0xold-token"))

        page = await history.get_history("ETH", RECIPIENT, HistoryOptions(limit=150, include_token_transfers=True))

        assert page.records[0].block_number == 250
        assert "0xold-token" not in {r.hash for r in page.records}
        assert page.next_to_block is not None and page.next_to_block >= 5

    @pytest.mark.asyncio
    async def test_missing_explorer(self, history: HistoryService):
        """Test that EVM history without an explorer API is a configuration error."""
        for url in ("sim://eth/a", "sim://eth/b"):
            get_simulated_provider(url).explorer = None

        with pytest.raises(ConfigurationError):
            await history.get_history("ETH", RECIPIENT)

    @pytest.mark.asyncio
    async def test_invalid_address(self, history: HistoryService):
        """Test that a malformed address is rejected."""
        with pytest.raises(ValidationError):
            await history.get_history("ETH", "not-an-address")


class TestBitcoinHistory:
    """Tests for Esplora-backed history."""

    @pytest.mark.asyncio
    async def test_incoming_and_outgoing(self, history: HistoryService, pipeline, wallets, btc_chain):
        """Test funding and a send from the wallet's point of view."""
        info = await wallets.import_from_phrase(TEST_MNEMONIC, "BTC")
        funding = btc_chain.fund(info.address, 500_000)
        result = await pipeline.execute(
            TransactionRequest(network=Network.BTC, from_address=info.address, to_address=BTC_RECIPIENT, amount="0.001")
        )

        page = await history.get_history("BTC", info.address)

        assert [(r.hash, r.direction, r.amount) for r in page.records] == [
            (result.hash, Direction.OUTGOING, "0.001"),
            (funding, Direction.INCOMING, "0.005"),
        ]
        assert page.records[0].to_address == BTC_RECIPIENT

    @pytest.mark.asyncio
    async def test_walks_esplora_pages(self, history: HistoryService, btc_chain):
        """Test that more than one Esplora page is collected."""
        for _ in range(30):
            btc_chain.fund(BTC_RECIPIENT, 10_000)

        page = await history.get_history("BTC", BTC_RECIPIENT)

        assert len(page.records) == 30
        assert page.next_to_block is None

    @pytest.mark.asyncio
    async def test_limit(self, history: HistoryService, btc_chain):
        """Test that the limit cuts at a block boundary."""
        for _ in range(12):
            btc_chain.fund(BTC_RECIPIENT, 10_000)

        page = await history.get_history("BTC", BTC_RECIPIENT, HistoryOptions(limit=5))

        assert len(page.records) == 5
        assert page.next_to_block == page.records[-1].block_number - 1

    @pytest.mark.asyncio
    async def test_mempool_excluded_from_history(self, history: HistoryService, btc_chain):
        """Test that unconfirmed transactions are not history but are pending."""
        btc_chain.fund(BTC_RECIPIENT, 10_000)
        unconfirmed = btc_chain.fund(BTC_RECIPIENT, 20_000, confirmed=False)

        page = await history.get_history("BTC", BTC_RECIPIENT)
        pending = await history.get_pending("BTC", BTC_RECIPIENT)

        assert unconfirmed not in {r.hash for r in page.records}
        assert [p["hash"] for p in pending] == [unconfirmed]


class TestSolanaHistory:
    """Tests for signature-based Solana history."""

    @pytest.mark.asyncio
    async def test_native_transfer(self, history: HistoryService, pipeline, wallets, sol_chain):
        """Test a native SOL transfer seen by both parties."""
        info = await wallets.import_from_phrase(TEST_MNEMONIC, "SOL")
        sol_chain.set_balance(info.address, 10**9)
        recipient = str(Pubkey.new_unique())
        await pipeline.execute(
            TransactionRequest(network=Network.SOL, from_address=info.address, to_address=recipient, amount="0.25")
        )

        sent = await history.get_history("SOL", info.address)
        received = await history.get_history("SOL", recipient)

        assert [(r.direction, r.amount, r.asset) for r in sent.records] == [(Direction.OUTGOING, "0.25", "SOL")]
        assert received.records[0].direction == Direction.INCOMING

    @pytest.mark.asyncio
    async def test_token_transfer(self, history: HistoryService, pipeline, wallets, sol_chain):
        """Test that SPL transfers resolve the destination owner."""
        info = await wallets.import_from_phrase(TEST_MNEMONIC, "SOL")
        sol_chain.set_balance(info.address, 10**9)
        mint = str(Pubkey.new_unique())
        sol_chain.create_mint(mint, 6)
        sol_chain.mint_to(mint, info.address, 5_000_000)
        recipient = str(Pubkey.new_unique())
        await pipeline.execute(
            TransactionRequest(
                network=Network.SOL, from_address=info.address, to_address=recipient, amount="1.5", token=mint
            )
        )

        page = await history.get_history("SOL", recipient)

        assert [(r.asset, r.amount, r.to_address) for r in page.records] == [(mint, "1.5", recipient)]


class TestPending:
    """Tests for pending transactions."""

    @pytest.mark.asyncio
    async def test_provider_and_pipeline_merged(self, history: HistoryService, pipeline, eth_wallet, eth_chain):
        """Test that a submitted job appears once, from the provider."""
        eth_chain.auto_mine = False
        result = await pipeline.execute(
            TransactionRequest(network=Network.ETH, from_address=eth_wallet, to_address=RECIPIENT, amount="1"),
            wait=False,
        )

        pending = await history.get_pending("ETH", eth_wallet)

        assert [(p["hash"], p["source"]) for p in pending] == [(result.hash, "provider")]

    @pytest.mark.asyncio
    async def test_pipeline_only(self, history: HistoryService, pipeline, wallets, sol_chain):
        """Test that a job the provider does not list is still reported."""
        info = await wallets.import_from_phrase(TEST_MNEMONIC, "SOL")
        sol_chain.set_balance(info.address, 10**9)
        job = await pipeline.draft_from_request(
            TransactionRequest(
                network=Network.SOL, from_address=info.address, to_address=str(Pubkey.new_unique()), amount="0.1"
            )
        )
        await pipeline.run_job(job, wait=False)

        pending = await history.get_pending("SOL", info.address)

        assert [(p["hash"], p["source"], p["amount"]) for p in pending] == [(job.tx_hash, "pipeline", "0.1")]
