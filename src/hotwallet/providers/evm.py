"""EVM JSON-RPC provider over httpx, with an optional websocket push channel."""

import json
import logging
from typing import Any, AsyncIterator, Optional

import aiohttp

from hotwallet.providers.base import (
    EVMProvider,
    ExplorerProvider,
    JsonRpcClient,
    ProviderError,
    RestClient,
)
from hotwallet.types import SignedTransaction

logger = logging.getLogger(__name__)


def _to_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    return int(value, 16) if isinstance(value, str) else int(value)


def _hex(value: int) -> str:
    return hex(value)


def _rpc_tx(tx: dict) -> dict:
    """Convert an eth_account-style dict to JSON-RPC call params."""
    mapping = {
        "from": "from",
        "to": "to",
        "data": "data",
        "value": "value",
        "gas": "gas",
        "gasPrice": "gasPrice",
        "maxFeePerGas": "maxFeePerGas",
        "maxPriorityFeePerGas": "maxPriorityFeePerGas",
        "nonce": "nonce",
    }
    params = {}
    for key, rpc_key in mapping.items():
        if key not in tx or tx[key] is None:
            continue
        value = tx[key]
        params[rpc_key] = _hex(value) if isinstance(value, int) else value
    return params


class EVMRpcProvider(EVMProvider):
    """Ethereum-compatible node reached over JSON-RPC."""

    def __init__(
        self,
        url: str,
        ws_url: Optional[str] = None,
        explorer: Optional[ExplorerProvider] = None,
        timeout: float = 30.0,
    ):
        self.url = url
        self.ws_url = ws_url
        self.explorer = explorer
        self.rpc = JsonRpcClient(url, timeout=timeout)

    async def get_balance(self, address: str, block: str = "latest") -> int:
        return _to_int(await self.rpc.request("eth_getBalance", [address, block]))

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return _to_int(await self.rpc.request("eth_getTransactionCount", [address, block]))

    async def call(self, tx: dict, block: str = "latest") -> str:
        return await self.rpc.request("eth_call", [_rpc_tx(tx), block]) or "0x"

    async def estimate_gas(self, tx: dict) -> int:
        return _to_int(await self.rpc.request("eth_estimateGas", [_rpc_tx(tx)]))

    async def gas_price(self) -> int:
        return _to_int(await self.rpc.request("eth_gasPrice"))

    async def fee_history(self, block_count: int, percentiles: list[int]) -> dict:
        result = await self.rpc.request(
            "eth_feeHistory", [_hex(block_count), "latest", percentiles]
        )
        base_fees = result.get("baseFeePerGas") or ["0x0"]
        return {
            # last entry is the base fee of the next (pending) block
            "base_fee": _to_int(base_fees[-1]),
            "rewards": [[_to_int(r) for r in row] for row in (result.get("reward") or [])],
        }

    async def send_raw_transaction(self, signed: SignedTransaction) -> str:
        return await self.rpc.request("eth_sendRawTransaction", [signed.raw_hex])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        receipt = await self.rpc.request("eth_getTransactionReceipt", [tx_hash])
        if receipt is None:
            return None
        return {
            "block_number": _to_int(receipt.get("blockNumber")),
            "gas_used": _to_int(receipt.get("gasUsed")),
            "status": _to_int(receipt.get("status")),
            "effective_gas_price": _to_int(receipt.get("effectiveGasPrice")),
        }

    async def block_number(self) -> int:
        return _to_int(await self.rpc.request("eth_blockNumber"))

    async def pending_transactions(self, address: str) -> list[dict]:
        """Compare pending and latest nonces; the node does not list the txs themselves."""
        pending = await self.get_transaction_count(address, "pending")
        latest = await self.get_transaction_count(address, "latest")
        return [{"nonce": n, "from": address} for n in range(latest, pending)]

    @property
    def supports_push(self) -> bool:
        return bool(self.ws_url)

    async def subscribe(self, address: str) -> AsyncIterator[Any]:
        """Yield the block number of every new head.

        Raises:
            ProviderError: When the websocket closes or errors
        """
        if not self.ws_url:
            raise NotImplementedError("No websocket endpoint configured")

        try:
            async with aiohttp.ClientSession() as session:
                async with session.ws_connect(self.ws_url, heartbeat=30) as ws:
                    await ws.send_json(
                        {"jsonrpc": "2.0", "id": 1, "method": "eth_subscribe", "params": ["newHeads"]}
                    )
                    async for message in ws:
                        if message.type != aiohttp.WSMsgType.TEXT:
                            break
                        data = json.loads(message.data)
                        head = data.get("params", {}).get("result")
                        if head:
                            yield _to_int(head.get("number"))
        except aiohttp.ClientError as e:
            raise ProviderError(f"Websocket error: {e}", self.ws_url)

        raise ProviderError("Websocket closed", self.ws_url)


class EtherscanExplorer(ExplorerProvider):
    """Etherscan-compatible account API (Etherscan, Polygonscan, BscScan)."""

    def __init__(self, api_url: str, api_key: Optional[str] = None, timeout: float = 30.0):
        self.api_url = api_url
        self.api_key = api_key
        self.client = RestClient(api_url, timeout=timeout)

    async def account_history(
        self,
        address: str,
        action: str,
        start_block: int,
        end_block: int,
        page: int,
        offset: int,
    ) -> list[dict]:
        params = {
            "module": "account",
            "action": action,
            "address": address,
            "startblock": start_block,
            "endblock": end_block,
            "page": page,
            "offset": offset,
            "sort": "desc",
        }
        if self.api_key:
            params["apikey"] = self.api_key

        data = await self.client.get("", params=params)
        if data is None:
            raise ProviderError("Explorer returned 404", self.api_url)

        if data.get("status") == "1":
            return data.get("result", [])

        message = str(data.get("message", ""))
        if "No transactions found" in message or data.get("result") == []:
            return []
        raise ProviderError(f"Explorer error: {message} {data.get('result')}", self.api_url)
