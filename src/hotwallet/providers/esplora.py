"""Esplora REST provider (Blockstream / mempool.space API)."""

import logging
from typing import Optional

from hotwallet.providers.base import ProviderError, RestClient, UTXOProvider
from hotwallet.types import SignedTransaction, Utxo

logger = logging.getLogger(__name__)


class EsploraProvider(UTXOProvider):
    """Bitcoin data via an Esplora-compatible HTTP API."""

    def __init__(self, url: str, timeout: float = 30.0):
        self.url = url
        self.client = RestClient(url, timeout=timeout)

    async def get_balance(self, address: str) -> int:
        data = await self.client.get(f"/address/{address}")
        if data is None:
            return 0
        chain = data.get("chain_stats", {})
        mempool = data.get("mempool_stats", {})
        confirmed = chain.get("funded_txo_sum", 0) - chain.get("spent_txo_sum", 0)
        pending = mempool.get("funded_txo_sum", 0) - mempool.get("spent_txo_sum", 0)
        return confirmed + pending

    async def get_utxos(self, address: str) -> list[Utxo]:
        data = await self.client.get(f"/address/{address}/utxo") or []
        return [
            Utxo(
                txid=u["txid"],
                vout=u["vout"],
                value=u["value"],
                address=address,
                confirmed=u.get("status", {}).get("confirmed", False),
                block_height=u.get("status", {}).get("block_height"),
            )
            for u in data
        ]

    async def fee_estimates(self) -> dict[int, float]:
        data = await self.client.get("/fee-estimates")
        if not data:
            raise ProviderError("Empty fee estimates", self.url)
        return {int(target): float(rate) for target, rate in data.items()}

    async def broadcast(self, signed: SignedTransaction) -> str:
        return await self.client.post_text("/tx", signed.raw.hex())

    async def get_transaction(self, txid: str) -> Optional[dict]:
        return await self.client.get(f"/tx/{txid}")

    async def tip_height(self) -> int:
        text = await self.client.get("/blocks/tip/height", as_json=False)
        if text is None:
            raise ProviderError("Tip height unavailable", self.url)
        return int(text)

    async def address_transactions(self, address: str, last_seen_txid: Optional[str] = None) -> list[dict]:
        path = f"/address/{address}/txs/chain"
        if last_seen_txid:
            path = f"{path}/{last_seen_txid}"
        return await self.client.get(path) or []

    async def mempool_transactions(self, address: str) -> list[dict]:
        return await self.client.get(f"/address/{address}/txs/mempool") or []
