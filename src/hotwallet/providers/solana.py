"""Solana JSON-RPC provider over httpx, with an aiohttp account subscription."""

import base64
import json
import logging
from typing import Any, AsyncIterator, Optional

import aiohttp

from hotwallet.providers.base import JsonRpcClient, ProviderError, SolanaProvider
from hotwallet.types import SignedTransaction, UnsignedTransaction

logger = logging.getLogger(__name__)


class SolanaRpcProvider(SolanaProvider):
    """Solana cluster reached over JSON-RPC."""

    def __init__(
        self,
        url: str,
        ws_url: Optional[str] = None,
        commitment: str = "confirmed",
        timeout: float = 30.0,
    ):
        self.url = url
        self.ws_url = ws_url
        self.commitment = commitment
        self.rpc = JsonRpcClient(url, timeout=timeout)

    async def get_balance(self, address: str) -> int:
        result = await self.rpc.request("getBalance", [address, {"commitment": self.commitment}])
        return int(result["value"])

    async def get_token_balance(self, owner: str, mint: str) -> int:
        result = await self.rpc.request(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "jsonParsed", "commitment": self.commitment}],
        )
        total = 0
        for account in result.get("value", []):
            info = account["account"]["data"]["parsed"]["info"]
            total += int(info["tokenAmount"]["amount"])
        return total

    async def get_token_decimals(self, mint: str) -> int:
        result = await self.rpc.request("getTokenSupply", [mint])
        return int(result["value"]["decimals"])

    async def account_exists(self, address: str) -> bool:
        result = await self.rpc.request(
            "getAccountInfo", [address, {"encoding": "base64", "commitment": self.commitment}]
        )
        return result.get("value") is not None

    async def get_latest_blockhash(self) -> str:
        result = await self.rpc.request("getLatestBlockhash", [{"commitment": "finalized"}])
        return result["value"]["blockhash"]

    async def simulate_transaction(self, unsigned: UnsignedTransaction) -> dict:
        from solders.transaction import Transaction

        tx = Transaction.new_unsigned(unsigned.payload)
        encoded = base64.b64encode(bytes(tx)).decode()
        result = await self.rpc.request(
            "simulateTransaction",
            [
                encoded,
                {
                    "encoding": "base64",
                    "sigVerify": False,
                    "replaceRecentBlockhash": True,
                    "commitment": self.commitment,
                },
            ],
        )
        value = result.get("value", {})
        return {
            "err": value.get("err"),
            "logs": value.get("logs") or [],
            "units_consumed": value.get("unitsConsumed") or 0,
        }

    async def send_transaction(self, signed: SignedTransaction) -> str:
        encoded = base64.b64encode(signed.raw).decode()
        return await self.rpc.request(
            "sendTransaction",
            [
                encoded,
                {
                    "encoding": "base64",
                    # simulation already ran against the exact transaction
                    "skipPreflight": True,
                    "maxRetries": 0,
                },
            ],
        )

    async def get_signature_statuses(self, signatures: list[str]) -> list[Optional[dict]]:
        result = await self.rpc.request(
            "getSignatureStatuses", [signatures, {"searchTransactionHistory": True}]
        )
        statuses = []
        for status in result.get("value", []):
            if status is None:
                statuses.append(None)
                continue
            statuses.append(
                {
                    "slot": status.get("slot"),
                    "confirmations": status.get("confirmations"),
                    "confirmation_status": status.get("confirmationStatus"),
                    "err": status.get("err"),
                }
            )
        return statuses

    async def get_slot(self) -> int:
        return int(await self.rpc.request("getSlot", [{"commitment": self.commitment}]))

    async def get_recent_prioritization_fees(self) -> list[int]:
        result = await self.rpc.request("getRecentPrioritizationFees", [])
        return [int(r["prioritizationFee"]) for r in result or []]

    async def get_signatures_for_address(
        self, address: str, before: Optional[str] = None, limit: int = 100
    ) -> list[dict]:
        options: dict[str, Any] = {"limit": limit, "commitment": self.commitment}
        if before:
            options["before"] = before
        result = await self.rpc.request("getSignaturesForAddress", [address, options])
        return [
            {
                "signature": r["signature"],
                "slot": r.get("slot"),
                "err": r.get("err"),
                "block_time": r.get("blockTime"),
                "confirmation_status": r.get("confirmationStatus"),
            }
            for r in result or []
        ]

    async def get_transaction(self, signature: str) -> Optional[dict]:
        return await self.rpc.request(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": self.commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    @property
    def supports_push(self) -> bool:
        return bool(self.ws_url)

    async def subscribe(self, address: str) -> AsyncIterator[Any]:
        """Yield the lamport balance on every account notification."""
        if not self.ws_url:
            raise NotImplementedError("No websocket endpoint configured")

        try:
            async with aiohttp.ClientSession() as session:
                async with session.ws_connect(self.ws_url, heartbeat=30) as ws:
                    await ws.send_json(
                        {
                            "jsonrpc": "2.0",
                            "id": 1,
                            "method": "accountSubscribe",
                            "params": [address, {"encoding": "jsonParsed", "commitment": self.commitment}],
                        }
                    )
                    async for message in ws:
                        if message.type != aiohttp.WSMsgType.TEXT:
                            break
                        data = json.loads(message.data)
                        if data.get("method") == "accountNotification":
                            value = data["params"]["result"]["value"]
                            yield value.get("lamports")
        except aiohttp.ClientError as e:
            raise ProviderError(f"Websocket error: {e}", self.ws_url)

        raise ProviderError("Websocket closed", self.ws_url)
