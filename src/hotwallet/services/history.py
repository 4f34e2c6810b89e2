"""Transaction history service.

History is normalised into :class:`HistoryRecord` entries, newest first.
Pages never split a block: ``next_to_block`` is the ``to_block`` to pass
for the next (older) page.
"""

import logging
from typing import Optional

from hotwallet.contracts.history import Direction, HistoryOptions, HistoryPage, HistoryRecord
from hotwallet.errors import ValidationError
from hotwallet.handlers.registry import ChainHandlerRegistry
from hotwallet.networks import NetworkConfig, NetworkFamily
from hotwallet.units import format_units

logger = logging.getLogger(__name__)

EXPLORER_PAGE_SIZE = 100
MAX_EXPLORER_PAGES = 20
MAX_CURSOR_PAGES = 40
ESPLORA_PAGE_SIZE = 25
SOL_SIGNATURE_BATCH = 100
LATEST_BLOCK = 99999999


def _same(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    if a.startswith("0x"):
        return a.lower() == b.lower()
    return a == b


def _direction(address: str, sender: Optional[str], recipient: Optional[str]) -> Direction:
    outgoing = _same(address, sender)
    incoming = _same(address, recipient)
    if outgoing and incoming:
        return Direction.SELF
    if outgoing:
        return Direction.OUTGOING
    return Direction.INCOMING


def _block_key(record: HistoryRecord) -> int:
    return record.block_number if record.block_number is not None else LATEST_BLOCK


def dedupe_and_sort(records: list[HistoryRecord]) -> list[HistoryRecord]:
    """Drop duplicates by (hash, asset, token id, direction) and sort newest first."""
    seen = set()
    unique = []
    for record in records:
        key = (record.hash, record.asset, record.token_id, record.direction)
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return sorted(unique, key=_block_key, reverse=True)


def paginate(
    records: list[HistoryRecord], limit: int, from_block: Optional[int] = None
) -> tuple[list[HistoryRecord], Optional[int]]:
    """Cut a sorted record list into one page without splitting a block.

    Returns:
        (page records, next_to_block)
    """
    if len(records) <= limit:
        return records, None

    boundary = _block_key(records[limit - 1])
    if _block_key(records[limit]) != boundary:
        page = records[:limit]
        next_to_block = boundary - 1
    else:
        page = [r for r in records[:limit] if _block_key(r) != boundary]
        if page:
            next_to_block = boundary
        else:
            # One block holds more than a page of records
            page = [r for r in records if _block_key(r) == boundary]
            next_to_block = boundary - 1

    if next_to_block < (from_block or 0):
        next_to_block = None
    return page, next_to_block


class HistoryService:
    """Builds history pages from explorer, Esplora and Solana RPC data."""

    def __init__(self, registry: ChainHandlerRegistry, pipeline=None):
        self.registry = registry
        self.pipeline = pipeline

    async def get_history(
        self, network, address: str, options: Optional[HistoryOptions] = None
    ) -> HistoryPage:
        """Get one page of history for ``address``.

        Raises:
            ValidationError: If the address or block range is invalid
            ConfigurationError: If an EVM network has no explorer configured
        """
        config = self.registry.config(network)
        options = options or HistoryOptions()
        if not self.registry.handler(network).validate_address(address):
            raise ValidationError(f"Invalid address: {address}", address=address)
        if (
            options.from_block is not None
            and options.to_block is not None
            and options.from_block > options.to_block
        ):
            raise ValidationError("from_block must not exceed to_block")

        resume_to_block = None
        if config.family == NetworkFamily.EVM:
            records, resume_to_block = await self._evm_history(config, address, options)
        elif config.family == NetworkFamily.UTXO:
            records = await self._utxo_history(config, address, options)
        else:
            records = await self._solana_history(config, address, options)

        records, next_to_block = paginate(dedupe_and_sort(records), options.limit, options.from_block)
        if next_to_block is None:
            next_to_block = resume_to_block
        logger.debug(f"History for {address} on {config.network.value}: {len(records)} records")
        return HistoryPage(network=config.network, address=address, records=records, next_to_block=next_to_block)

    # ======================
    # EVM (explorer API)
    # ======================

    async def _evm_history(
        self, config: NetworkConfig, address: str, options: HistoryOptions
    ) -> tuple[list[HistoryRecord], Optional[int]]:
        """Explorer rows newest first.

        Each action is paged until it runs out or holds more than a page of
        records. When any action stops early, records at or below the
        oldest block it reached are dropped and that block is returned as
        the cursor to resume from.

        Returns:
            (records, resume_to_block)
        """
        actions = ["txlist"]
        if options.include_token_transfers:
            actions.append("tokentx")
        if options.include_nft_transfers:
            actions.extend(["tokennfttx", "token1155tx"])

        start = options.from_block or 0
        end = options.to_block if options.to_block is not None else LATEST_BLOCK
        records = []
        floor: Optional[int] = None
        for action in actions:
            fetched = []
            for page in range(1, MAX_EXPLORER_PAGES + 1):
                rows = await self.registry.explorer_history(
                    config.network, address, action, start, end, page, EXPLORER_PAGE_SIZE
                )
                fetched.extend(self._parse_explorer_row(config, address, action, row) for row in rows)
                if len(rows) < EXPLORER_PAGE_SIZE:
                    break
                if len(fetched) > options.limit or page == MAX_EXPLORER_PAGES:
                    oldest = min(_block_key(r) for r in fetched)
                    floor = oldest if floor is None else max(floor, oldest)
                    break
            records.extend(fetched)

        # Contract calls show up as zero-value entries next to their token records
        token_hashes = {r.hash for r in records if r.asset != config.symbol or r.token_id is not None}
        records = [
            r
            for r in records
            if not (r.asset == config.symbol and r.amount in ("0", "0.0") and r.hash in token_hashes)
        ]
        if floor is None:
            return records, None

        # The oldest block read may be cut off mid-page
        complete = [r for r in records if _block_key(r) > floor]
        if complete:
            return complete, floor
        logger.warning(f"Block {floor} holds more explorer rows for {address} than can be paged")
        return [r for r in records if _block_key(r) == floor], (floor - 1 if floor > start else None)

    @staticmethod
    def _parse_explorer_row(config: NetworkConfig, address: str, action: str, row: dict) -> HistoryRecord:
        sender, recipient = row.get("from"), row.get("to")
        token_id = None
        if action == "txlist":
            asset = config.symbol
            amount = format_units(int(row.get("value") or 0), config.decimals)
        elif action == "tokentx":
            asset = row.get("tokenSymbol") or row.get("contractAddress")
            amount = format_units(int(row.get("value") or 0), int(row.get("tokenDecimal") or 0))
        elif action == "tokennfttx":
            asset = row.get("contractAddress")
            token_id = int(row["tokenID"])
            amount = "1"
        else:
            asset = row.get("contractAddress")
            token_id = int(row["tokenID"])
            amount = str(int(row.get("tokenValue") or 0))

        failed = row.get("isError") == "1" or row.get("txreceipt_status") == "0"
        return HistoryRecord(
            network=config.network,
            hash=row["hash"],
            direction=_direction(address, sender, recipient),
            from_address=sender,
            to_address=recipient,
            asset=asset,
            amount=amount,
            token_id=token_id,
            block_number=int(row["blockNumber"]) if row.get("blockNumber") else None,
            timestamp=int(row["timeStamp"]) if row.get("timeStamp") else None,
            status="failed" if failed else "confirmed",
        )

    # ======================
    # BTC (Esplora)
    # ======================

    async def _utxo_history(
        self, config: NetworkConfig, address: str, options: HistoryOptions
    ) -> list[HistoryRecord]:
        records: list[HistoryRecord] = []
        last_seen = None
        for _ in range(MAX_CURSOR_PAGES):
            txs = await self.registry.address_transactions(config.network, address, last_seen)
            if not txs:
                break

            exhausted = False
            for tx in txs:
                height = tx.get("status", {}).get("block_height")
                if options.to_block is not None and height is not None and height > options.to_block:
                    continue
                if options.from_block is not None and height is not None and height < options.from_block:
                    exhausted = True
                    break
                records.append(self._parse_esplora_tx(config, address, tx))

            last_seen = txs[-1]["txid"]
            if exhausted or len(txs) < ESPLORA_PAGE_SIZE or self._page_complete(records, options.limit):
                break
        return records

    @staticmethod
    def _parse_esplora_tx(config: NetworkConfig, address: str, tx: dict) -> HistoryRecord:
        spent = sum(
            v["prevout"]["value"]
            for v in tx.get("vin", [])
            if v.get("prevout", {}).get("scriptpubkey_address") == address
        )
        received = sum(v["value"] for v in tx.get("vout", []) if v.get("scriptpubkey_address") == address)
        others = [v for v in tx.get("vout", []) if v.get("scriptpubkey_address") != address]

        if spent == 0:
            direction, amount = Direction.INCOMING, received
            sender = next(
                (v["prevout"].get("scriptpubkey_address") for v in tx.get("vin", []) if v.get("prevout")), None
            )
            recipient = address
        elif not others:
            direction, amount = Direction.SELF, received
            sender = recipient = address
        else:
            direction, amount = Direction.OUTGOING, sum(v["value"] for v in others)
            sender = address
            recipient = others[0].get("scriptpubkey_address")

        status = tx.get("status", {})
        return HistoryRecord(
            network=config.network,
            hash=tx["txid"],
            direction=direction,
            from_address=sender,
            to_address=recipient,
            asset=config.symbol,
            amount=format_units(amount, config.decimals),
            block_number=status.get("block_height"),
            timestamp=status.get("block_time"),
            status="confirmed" if status.get("confirmed") else "pending",
        )

    # ======================
    # SOL (signatures + parsed transactions)
    # ======================

    async def _solana_history(
        self, config: NetworkConfig, address: str, options: HistoryOptions
    ) -> list[HistoryRecord]:
        records: list[HistoryRecord] = []
        before = None
        for _ in range(MAX_CURSOR_PAGES):
            signatures = await self.registry.signatures(config.network, address, before, SOL_SIGNATURE_BATCH)
            if not signatures:
                break

            exhausted = False
            for entry in signatures:
                slot = entry.get("slot")
                if options.to_block is not None and slot is not None and slot > options.to_block:
                    continue
                if options.from_block is not None and slot is not None and slot < options.from_block:
                    exhausted = True
                    break
                detail = await self.registry.transaction_detail(config.network, entry["signature"])
                if detail is None:
                    continue
                records.extend(self._parse_solana_tx(config, address, entry, detail, options))

            before = signatures[-1]["signature"]
            if exhausted or len(signatures) < SOL_SIGNATURE_BATCH or self._page_complete(records, options.limit):
                break
        return records

    @staticmethod
    def _parse_solana_tx(
        config: NetworkConfig, address: str, entry: dict, detail: dict, options: HistoryOptions
    ) -> list[HistoryRecord]:
        meta = detail.get("meta") or {}
        message = detail.get("transaction", {}).get("message", {})
        keys = [k["pubkey"] if isinstance(k, dict) else k for k in message.get("accountKeys", [])]
        owners = {}
        decimals = {}
        for balance in meta.get("postTokenBalances") or []:
            index = balance.get("accountIndex")
            if index is not None and index < len(keys):
                owners[keys[index]] = balance.get("owner")
                decimals[keys[index]] = balance.get("uiTokenAmount", {}).get("decimals")

        instructions = list(message.get("instructions", []))
        for inner in meta.get("innerInstructions") or []:
            instructions.extend(inner.get("instructions", []))

        failed = bool(entry.get("err") or meta.get("err"))
        base = {
            "network": config.network,
            "hash": entry["signature"],
            "block_number": entry.get("slot") or detail.get("slot"),
            "timestamp": entry.get("block_time") or detail.get("blockTime"),
            "status": "failed" if failed else "confirmed",
        }

        records = []
        for ix in instructions:
            parsed = ix.get("parsed")
            if not isinstance(parsed, dict):
                continue
            info = parsed.get("info", {})
            kind = parsed.get("type")

            if ix.get("program") == "system" and kind == "transfer":
                sender, recipient = info.get("source"), info.get("destination")
                if address not in (sender, recipient):
                    continue
                amount = format_units(int(info.get("lamports", 0)), config.decimals)
                records.append(
                    HistoryRecord(
                        direction=_direction(address, sender, recipient),
                        from_address=sender,
                        to_address=recipient,
                        asset=config.symbol,
                        amount=amount,
                        **base,
                    )
                )
            elif ix.get("program") == "spl-token" and kind in ("transfer", "transferChecked"):
                if not options.include_token_transfers:
                    continue
                sender = info.get("authority") or info.get("multisigAuthority") or owners.get(info.get("source"))
                destination = info.get("destination")
                recipient = owners.get(destination, destination)
                if address not in (sender, recipient):
                    continue
                token_amount = info.get("tokenAmount")
                if token_amount:
                    raw, places = int(token_amount["amount"]), int(token_amount.get("decimals", 0))
                else:
                    raw, places = int(info.get("amount", 0)), int(decimals.get(destination) or 0)
                records.append(
                    HistoryRecord(
                        direction=_direction(address, sender, recipient),
                        from_address=sender,
                        to_address=recipient,
                        asset=info.get("mint") or destination,
                        amount=format_units(raw, places),
                        **base,
                    )
                )
        return records

    @staticmethod
    def _page_complete(records: list[HistoryRecord], limit: int) -> bool:
        """Enough records to fill a page and close its last block."""
        if len(records) <= limit:
            return False
        return _block_key(records[-1]) != _block_key(records[limit - 1])

    # ======================
    # Pending
    # ======================

    async def get_pending(self, network, address: str) -> list[dict]:
        """Provider-side pending transactions merged with pipeline submissions."""
        config = self.registry.config(network)
        pending = [dict(tx, source="provider") for tx in await self.registry.get_pending(config.network, address)]
        known = {tx.get("hash") for tx in pending}

        if self.pipeline is not None:
            for job in self.pipeline.pending(config.network, address):
                if job.tx_hash in known:
                    continue
                pending.append(
                    {
                        "hash": job.tx_hash,
                        "from": job.sender,
                        "to": job.draft.transfers[0].to if job.draft.transfers else None,
                        "asset": job.asset_label,
                        "amount": job.amount_label,
                        "state": job.state.value,
                        "source": "pipeline",
                    }
                )
        return pending
