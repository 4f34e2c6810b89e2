"""Simulated in-memory chains for development and tests.

Endpoints with the ``sim://`` scheme resolve to these providers. All
endpoints of one network share a single chain state, while each endpoint
object keeps its own health switches so rotation and circuit breaking can
be exercised. Chains mine instantly unless ``auto_mine`` is turned off.
"""

import asyncio
import hashlib
import itertools
import logging
import time
from typing import Any, AsyncIterator, Optional

from hotwallet import abi
from hotwallet.networks import NETWORKS, Network, NetworkConfig, NetworkFamily
from hotwallet.providers.base import (
    EVMProvider,
    ExplorerProvider,
    ProviderError,
    ProviderRejection,
    SolanaProvider,
    UTXOProvider,
)
from hotwallet.types import SignedTransaction, UnsignedTransaction, Utxo

logger = logging.getLogger(__name__)

GWEI = 10**9
_DROP = object()
_counter = itertools.count(1)


def _key(address: str) -> str:
    return address.lower() if address.startswith("0x") else address


def _fake_hash(prefix: str) -> str:
    return hashlib.sha256(f"{prefix}-{next(_counter)}-{time.time()}".encode()).hexdigest()


def associated_token_account(owner: str, mint: str) -> str:
    from solders.pubkey import Pubkey
    from spl.token.instructions import get_associated_token_address

    return str(get_associated_token_address(Pubkey.from_string(owner), Pubkey.from_string(mint)))


class _PushHub:
    """Per-address notification queues shared by every endpoint of a chain."""

    def __init__(self):
        self.channels: dict[str, list[asyncio.Queue]] = {}
        self.refuse_subscriptions = False

    def open(self, address: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self.channels.setdefault(_key(address), []).append(queue)
        return queue

    def close(self, address: str, queue: asyncio.Queue) -> None:
        queues = self.channels.get(_key(address), [])
        if queue in queues:
            queues.remove(queue)

    def notify(self, *addresses: str) -> None:
        for address in set(_key(a) for a in addresses if a):
            for queue in self.channels.get(address, []):
                queue.put_nowait(address)

    def drop_all(self) -> None:
        """Break every open push channel."""
        for queues in self.channels.values():
            for queue in queues:
                queue.put_nowait(_DROP)

    @property
    def subscriber_count(self) -> int:
        return sum(len(q) for q in self.channels.values())


class _SimulatedEndpoint:
    """Health switches for one simulated endpoint."""

    def __init__(self, url: str, hub: _PushHub):
        self.url = url
        self.hub = hub
        self.failing = False
        self.fail_methods: set[str] = set()
        self.push_enabled = True
        self.calls = 0

    def _guard(self, method: str) -> None:
        self.calls += 1
        if self.failing or method in self.fail_methods:
            raise ProviderError(f"{method} failed: endpoint unavailable", self.url)

    @property
    def supports_push(self) -> bool:
        return self.push_enabled

    async def subscribe(self, address: str) -> AsyncIterator[Any]:
        self._guard("subscribe")
        if self.hub.refuse_subscriptions:
            raise ProviderError("Subscription refused", self.url)
        queue = self.hub.open(address)
        try:
            while True:
                item = await queue.get()
                if item is _DROP:
                    raise ProviderError("Push channel dropped", self.url)
                yield item
        finally:
            self.hub.close(address, queue)


# ======================
# EVM
# ======================


class SimulatedEVMChain:
    """In-memory EVM state with native coin, ERC-20, ERC-721 and ERC-1155."""

    GAS_NATIVE = 21000
    GAS_ERC20 = 52000
    GAS_ERC721 = 85000
    GAS_ERC1155 = 60000
    GAS_ERC1155_EXTRA = 25000
    GAS_READ = 30000

    def __init__(self, config: NetworkConfig):
        self.config = config
        self.hub = _PushHub()
        self.balances: dict[str, int] = {}
        self.nonces: dict[str, int] = {}
        self.erc20: dict[str, dict] = {}
        self.erc721: dict[str, dict] = {}
        self.erc1155: dict[str, dict] = {}
        self.receipts: dict[str, dict] = {}
        self.mempool: list[tuple[str, dict]] = []
        self.rows: list[dict] = []
        self.block = 1
        self.auto_mine = True
        self.base_fee = 20 * GWEI
        self.legacy_gas_price = 5 * GWEI
        self.tips = (1 * GWEI, 2 * GWEI, 3 * GWEI)

    # ---- seeding ----

    def set_balance(self, address: str, wei: int) -> None:
        self.balances[_key(address)] = wei
        self.hub.notify(address)

    def get_balance(self, address: str) -> int:
        return self.balances.get(_key(address), 0)

    def deploy_erc20(self, contract: str, decimals: int = 18, symbol: str = "TKN", name: str = "Token") -> None:
        self.erc20[_key(contract)] = {"decimals": decimals, "symbol": symbol, "name": name, "balances": {}}

    def mint_erc20(self, contract: str, owner: str, amount: int) -> None:
        balances = self.erc20[_key(contract)]["balances"]
        balances[_key(owner)] = balances.get(_key(owner), 0) + amount
        self.hub.notify(owner)

    def deploy_erc721(self, contract: str, name: str = "Collection", symbol: str = "NFT") -> None:
        self.erc721[_key(contract)] = {"name": name, "symbol": symbol, "owners": {}, "uris": {}}

    def mint_erc721(self, contract: str, token_id: int, owner: str, uri: str = "") -> None:
        collection = self.erc721[_key(contract)]
        collection["owners"][token_id] = _key(owner)
        collection["uris"][token_id] = uri
        self.hub.notify(owner)

    def deploy_erc1155(self, contract: str, uri: str = "") -> None:
        self.erc1155[_key(contract)] = {"uri": uri, "balances": {}}

    def mint_erc1155(self, contract: str, token_id: int, owner: str, amount: int) -> None:
        balances = self.erc1155[_key(contract)]["balances"]
        key = (token_id, _key(owner))
        balances[key] = balances.get(key, 0) + amount
        self.hub.notify(owner)

    def mine(self, blocks: int = 1) -> None:
        """Mine queued transactions, then advance ``blocks`` blocks in total."""
        for _ in range(blocks):
            self.block += 1
            queued, self.mempool = self.mempool, []
            for tx_hash, tx in queued:
                self._apply(tx_hash, tx)

    # ---- execution ----

    def _is_contract(self, address: Optional[str]) -> bool:
        if not address:
            return False
        key = _key(address)
        return key in self.erc20 or key in self.erc721 or key in self.erc1155

    def execute(self, tx: dict, commit: bool = False) -> tuple[int, str]:
        """Run a transaction against current state.

        Returns:
            (gas used, hex return data)

        Raises:
            ProviderRejection: If execution reverts
        """
        sender = _key(tx.get("from") or "0x" + "00" * 20)
        to = _key(tx["to"]) if tx.get("to") else None
        value = int(tx.get("value") or 0)
        data = tx.get("data") or "0x"

        if value and self.get_balance(sender) < value:
            raise ProviderRejection("insufficient funds for transfer")

        if not self._is_contract(to):
            gas = self.GAS_NATIVE + 16 * max(0, (len(data) - 2) // 2)
            if commit and value:
                self.balances[sender] = self.get_balance(sender) - value
                self.balances[to] = self.balances.get(to, 0) + value
                self._row("txlist", tx, sender, to, value=value)
            return gas, "0x"

        if value:
            raise ProviderRejection("execution reverted: non-payable function")

        if to in self.erc20:
            return self._erc20(to, sender, data, tx, commit)
        if to in self.erc721:
            return self._erc721(to, sender, data, tx, commit)
        return self._erc1155(to, sender, data, tx, commit)

    def _erc20(self, contract: str, sender: str, data: str, tx: dict, commit: bool) -> tuple[int, str]:
        token = self.erc20[contract]
        signature = abi.match_selector(
            data, [abi.ERC20_BALANCE_OF, abi.ERC20_TRANSFER, abi.ERC20_DECIMALS, abi.ERC20_SYMBOL, abi.ERC20_NAME]
        )
        if signature == abi.ERC20_BALANCE_OF:
            (owner,) = abi.decode_call(signature, data)
            return self.GAS_READ, abi.encode_result(["uint256"], [token["balances"].get(_key(owner), 0)])
        if signature == abi.ERC20_DECIMALS:
            return self.GAS_READ, abi.encode_result(["uint8"], [token["decimals"]])
        if signature == abi.ERC20_SYMBOL:
            return self.GAS_READ, abi.encode_result(["string"], [token["symbol"]])
        if signature == abi.ERC20_NAME:
            return self.GAS_READ, abi.encode_result(["string"], [token["name"]])
        if signature == abi.ERC20_TRANSFER:
            to, amount = abi.decode_call(signature, data)
            if token["balances"].get(sender, 0) < amount:
                raise ProviderRejection("execution reverted: ERC20: transfer amount exceeds balance")
            if commit:
                token["balances"][sender] -= amount
                token["balances"][_key(to)] = token["balances"].get(_key(to), 0) + amount
                self._row("tokentx", tx, sender, _key(to), value=amount, contract=contract, token=token)
            return self.GAS_ERC20, abi.encode_result(["bool"], [True])
        raise ProviderRejection("execution reverted: unknown selector")

    def _erc721(self, contract: str, sender: str, data: str, tx: dict, commit: bool) -> tuple[int, str]:
        collection = self.erc721[contract]
        owners = collection["owners"]
        signature = abi.match_selector(
            data,
            [
                abi.ERC721_OWNER_OF,
                abi.ERC721_TOKEN_URI,
                abi.ERC721_SAFE_TRANSFER_FROM,
                abi.ERC721_TOKEN_OF_OWNER_BY_INDEX,
                abi.ERC20_BALANCE_OF,
                abi.ERC20_NAME,
                abi.ERC20_SYMBOL,
                abi.SUPPORTS_INTERFACE,
            ],
        )
        if signature == abi.ERC721_OWNER_OF:
            (token_id,) = abi.decode_call(signature, data)
            if token_id not in owners:
                raise ProviderRejection("execution reverted: ERC721: invalid token ID")
            return self.GAS_READ, abi.encode_result(["address"], [abi.checksum(owners[token_id])])
        if signature == abi.ERC721_TOKEN_URI:
            (token_id,) = abi.decode_call(signature, data)
            if token_id not in owners:
                raise ProviderRejection("execution reverted: ERC721: invalid token ID")
            return self.GAS_READ, abi.encode_result(["string"], [collection["uris"].get(token_id, "")])
        if signature == abi.ERC20_BALANCE_OF:
            (owner,) = abi.decode_call(signature, data)
            count = sum(1 for o in owners.values() if o == _key(owner))
            return self.GAS_READ, abi.encode_result(["uint256"], [count])
        if signature == abi.ERC721_TOKEN_OF_OWNER_BY_INDEX:
            owner, index = abi.decode_call(signature, data)
            held = sorted(t for t, o in owners.items() if o == _key(owner))
            if index >= len(held):
                raise ProviderRejection("execution reverted: ERC721Enumerable: owner index out of bounds")
            return self.GAS_READ, abi.encode_result(["uint256"], [held[index]])
        if signature == abi.ERC20_NAME:
            return self.GAS_READ, abi.encode_result(["string"], [collection["name"]])
        if signature == abi.ERC20_SYMBOL:
            return self.GAS_READ, abi.encode_result(["string"], [collection["symbol"]])
        if signature == abi.SUPPORTS_INTERFACE:
            (interface_id,) = abi.decode_call(signature, data)
            return self.GAS_READ, abi.encode_result(["bool"], [interface_id == abi.ERC721_INTERFACE_ID])
        if signature == abi.ERC721_SAFE_TRANSFER_FROM:
            from_addr, to, token_id = abi.decode_call(signature, data)
            if owners.get(token_id) != _key(from_addr) or _key(from_addr) != sender:
                raise ProviderRejection("execution reverted: ERC721: caller is not token owner or approved")
            if commit:
                owners[token_id] = _key(to)
                self._row("tokennfttx", tx, sender, _key(to), contract=contract, token=collection, token_id=token_id)
            return self.GAS_ERC721, "0x"
        raise ProviderRejection("execution reverted: unknown selector")

    def _erc1155(self, contract: str, sender: str, data: str, tx: dict, commit: bool) -> tuple[int, str]:
        collection = self.erc1155[contract]
        balances = collection["balances"]
        signature = abi.match_selector(
            data,
            [
                abi.ERC1155_BALANCE_OF,
                abi.ERC1155_URI,
                abi.ERC1155_SAFE_TRANSFER_FROM,
                abi.ERC1155_SAFE_BATCH_TRANSFER_FROM,
                abi.SUPPORTS_INTERFACE,
            ],
        )
        if signature == abi.ERC1155_BALANCE_OF:
            owner, token_id = abi.decode_call(signature, data)
            return self.GAS_READ, abi.encode_result(["uint256"], [balances.get((token_id, _key(owner)), 0)])
        if signature == abi.ERC1155_URI:
            return self.GAS_READ, abi.encode_result(["string"], [collection["uri"]])
        if signature == abi.SUPPORTS_INTERFACE:
            (interface_id,) = abi.decode_call(signature, data)
            return self.GAS_READ, abi.encode_result(["bool"], [interface_id == abi.ERC1155_INTERFACE_ID])

        if signature == abi.ERC1155_SAFE_TRANSFER_FROM:
            from_addr, to, token_id, amount, _ = abi.decode_call(signature, data)
            moves = [(token_id, amount)]
            gas = self.GAS_ERC1155
        elif signature == abi.ERC1155_SAFE_BATCH_TRANSFER_FROM:
            from_addr, to, ids, amounts, _ = abi.decode_call(signature, data)
            if len(ids) != len(amounts):
                raise ProviderRejection("execution reverted: ERC1155: ids and amounts length mismatch")
            moves = list(zip(ids, amounts))
            gas = self.GAS_ERC1155 + self.GAS_ERC1155_EXTRA * (len(moves) - 1)
        else:
            raise ProviderRejection("execution reverted: unknown selector")

        if _key(from_addr) != sender:
            raise ProviderRejection("execution reverted: ERC1155: caller is not token owner or approved")
        needed: dict[int, int] = {}
        for token_id, amount in moves:
            needed[token_id] = needed.get(token_id, 0) + amount
        for token_id, amount in needed.items():
            if balances.get((token_id, sender), 0) < amount:
                raise ProviderRejection("execution reverted: ERC1155: insufficient balance for transfer")
        if commit:
            for token_id, amount in moves:
                balances[(token_id, sender)] -= amount
                balances[(token_id, _key(to))] = balances.get((token_id, _key(to)), 0) + amount
                self._row(
                    "token1155tx", tx, sender, _key(to), value=amount, contract=contract, token_id=token_id
                )
        return gas, "0x"

    def _row(self, action: str, tx: dict, sender: str, to: Optional[str], value: int = 0, contract: Optional[str] = None,
             token: Optional[dict] = None, token_id: Optional[int] = None) -> None:
        row = {
            "action": action,
            "hash": tx.get("hash", ""),
            "from": sender,
            "to": to or "",
            "blockNumber": str(self.block),
            "timeStamp": str(int(time.time())),
            "isError": "0",
            "txreceipt_status": "1",
        }
        if action == "txlist":
            row["value"] = str(value)
        if action == "tokentx":
            row.update(
                value=str(value),
                contractAddress=contract,
                tokenSymbol=token["symbol"],
                tokenDecimal=str(token["decimals"]),
            )
        if action == "tokennfttx":
            row.update(contractAddress=contract, tokenID=str(token_id), tokenSymbol=token["symbol"])
        if action == "token1155tx":
            row.update(contractAddress=contract, tokenID=str(token_id), tokenValue=str(value))
        self.rows.append(row)
        self.hub.notify(sender, to or "")

    def _apply(self, tx_hash: str, tx: dict) -> None:
        """Mine a transaction: execute, charge gas, bump nonce, store receipt."""
        sender = _key(tx["from"])
        tx = dict(tx, hash=tx_hash)
        if self.config.eip1559 and tx.get("maxFeePerGas") is not None:
            price = min(tx["maxFeePerGas"], self.base_fee + tx.get("maxPriorityFeePerGas", 0))
        else:
            price = tx.get("gasPrice", self.legacy_gas_price)

        try:
            gas_used, _ = self.execute(tx, commit=True)
            status = 1
        except ProviderRejection:
            gas_used, status = tx["gas"], 0

        self.balances[sender] = self.get_balance(sender) - gas_used * price
        self.nonces[sender] = self.nonces.get(sender, 0) + 1
        self.receipts[tx_hash] = {
            "block_number": self.block,
            "gas_used": gas_used,
            "status": status,
            "effective_gas_price": price,
        }
        if status == 0:
            self.rows.append(
                {
                    "action": "txlist",
                    "hash": tx_hash,
                    "from": sender,
                    "to": _key(tx.get("to") or ""),
                    "value": str(tx.get("value", 0)),
                    "blockNumber": str(self.block),
                    "timeStamp": str(int(time.time())),
                    "isError": "1",
                    "txreceipt_status": "0",
                }
            )
        self.hub.notify(sender)

    def submit(self, signed: SignedTransaction) -> str:
        tx = dict(signed.unsigned.payload)
        tx["from"] = signed.unsigned.sender
        sender = _key(tx["from"])

        expected_nonce = self.nonces.get(sender, 0) + sum(
            1 for _, queued in self.mempool if _key(queued["from"]) == sender
        )
        if tx["nonce"] < expected_nonce:
            raise ProviderRejection("nonce too low")
        if tx["nonce"] > expected_nonce:
            raise ProviderRejection("nonce too high")

        max_price = tx.get("maxFeePerGas") or tx.get("gasPrice") or 0
        if tx.get("maxFeePerGas") is not None and tx["maxFeePerGas"] < self.base_fee:
            raise ProviderRejection("max fee per gas less than block base fee")
        if self.get_balance(sender) < int(tx.get("value", 0)) + tx["gas"] * max_price:
            raise ProviderRejection("insufficient funds for gas * price + value")

        if self.auto_mine:
            self.block += 1
            self._apply(signed.hash, tx)
        else:
            self.mempool.append((signed.hash, tx))
        return signed.hash


class SimulatedEVMProvider(_SimulatedEndpoint, EVMProvider, ExplorerProvider):
    """EVM endpoint backed by a shared :class:`SimulatedEVMChain`."""

    def __init__(self, url: str, chain: SimulatedEVMChain):
        super().__init__(url, chain.hub)
        self.chain = chain
        self.explorer = self

    async def get_balance(self, address: str, block: str = "latest") -> int:
        self._guard("get_balance")
        return self.chain.get_balance(address)

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        self._guard("get_transaction_count")
        nonce = self.chain.nonces.get(_key(address), 0)
        if block == "pending":
            nonce += sum(1 for _, tx in self.chain.mempool if _key(tx["from"]) == _key(address))
        return nonce

    async def call(self, tx: dict, block: str = "latest") -> str:
        self._guard("call")
        _, result = self.chain.execute(tx)
        return result

    async def estimate_gas(self, tx: dict) -> int:
        self._guard("estimate_gas")
        gas, _ = self.chain.execute(tx)
        return gas

    async def gas_price(self) -> int:
        self._guard("gas_price")
        if self.chain.config.eip1559:
            return self.chain.base_fee + self.chain.tips[1]
        return self.chain.legacy_gas_price

    async def fee_history(self, block_count: int, percentiles: list[int]) -> dict:
        self._guard("fee_history")
        low, medium, high = self.chain.tips
        row = [low if p <= 25 else medium if p <= 60 else high for p in percentiles]
        return {"base_fee": self.chain.base_fee, "rewards": [list(row) for _ in range(block_count)]}

    async def send_raw_transaction(self, signed: SignedTransaction) -> str:
        self._guard("send_raw_transaction")
        return self.chain.submit(signed)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[dict]:
        self._guard("get_transaction_receipt")
        return self.chain.receipts.get(tx_hash)

    async def block_number(self) -> int:
        self._guard("block_number")
        return self.chain.block

    async def pending_transactions(self, address: str) -> list[dict]:
        self._guard("pending_transactions")
        return [
            {"hash": tx_hash, "from": tx["from"], "to": tx.get("to"), "value": tx.get("value", 0), "nonce": tx["nonce"]}
            for tx_hash, tx in self.chain.mempool
            if _key(tx["from"]) == _key(address)
        ]

    async def account_history(
        self,
        address: str,
        action: str,
        start_block: int,
        end_block: int,
        page: int,
        offset: int,
    ) -> list[dict]:
        self._guard("account_history")
        key = _key(address)
        rows = [
            {k: v for k, v in r.items() if k != "action"}
            for r in self.chain.rows
            if r["action"] == action
            and key in (r["from"], r["to"])
            and start_block <= int(r["blockNumber"]) <= end_block
        ]
        rows.sort(key=lambda r: int(r["blockNumber"]), reverse=True)
        start = (page - 1) * offset
        return rows[start : start + offset]


# ======================
# UTXO
# ======================


class SimulatedBitcoinChain:
    """In-memory UTXO set with Esplora-shaped transaction records."""

    def __init__(self, config: NetworkConfig):
        self.config = config
        self.hub = _PushHub()
        self.utxos: dict[tuple[str, int], Utxo] = {}
        self.transactions: dict[str, dict] = {}
        self.order: list[str] = []
        self.height = 800000
        self.auto_mine = True
        self.fee_rates = {1: 30.0, 2: 25.0, 3: 20.0, 6: 10.0, 144: 2.0}

    def fund(self, address: str, value: int, confirmed: bool = True) -> str:
        """Create a funding transaction paying ``value`` sat to ``address``."""
        txid = _fake_hash("fund")
        self.height += 1
        self.utxos[(txid, 0)] = Utxo(txid, 0, value, address, confirmed, self.height if confirmed else None)
        self._record(txid, [], [(address, value)], fee=0, weight=400, confirmed=confirmed)
        self.hub.notify(address)
        return txid

    def balance(self, address: str) -> int:
        return sum(u.value for u in self.utxos.values() if u.address == address)

    def mine(self, blocks: int = 1) -> None:
        self.height += blocks
        for tx in self.transactions.values():
            if not tx["status"]["confirmed"]:
                tx["status"] = {"confirmed": True, "block_height": self.height - blocks + 1}

    def _record(self, txid: str, inputs: list[Utxo], outputs: list[tuple[str, int]], fee: int, weight: int,
                confirmed: bool) -> None:
        self.transactions[txid] = {
            "txid": txid,
            "fee": fee,
            "weight": weight,
            "status": {"confirmed": confirmed, "block_height": self.height if confirmed else None},
            "vin": [
                {"txid": u.txid, "vout": u.vout, "prevout": {"scriptpubkey_address": u.address, "value": u.value}}
                for u in inputs
            ],
            "vout": [{"scriptpubkey_address": a, "value": v} for a, v in outputs],
        }
        self.order.append(txid)

    def submit(self, signed: SignedTransaction) -> str:
        tx = signed.unsigned.payload
        spent = []
        for tx_in in tx.inputs:
            utxo = self.utxos.get((tx_in.txid, tx_in.vout))
            if utxo is None:
                raise ProviderRejection("bad-txns-inputs-missingorspent")
            spent.append(utxo)
        total_in = sum(u.value for u in spent)
        total_out = sum(o.value for o in tx.outputs)
        if total_out > total_in:
            raise ProviderRejection("bad-txns-in-belowout")

        for utxo in spent:
            del self.utxos[(utxo.txid, utxo.vout)]
        if self.auto_mine:
            self.height += 1
        for index, out in enumerate(tx.outputs):
            self.utxos[(signed.hash, index)] = Utxo(
                signed.hash, index, out.value, out.address, self.auto_mine, self.height if self.auto_mine else None
            )
        self._record(
            signed.hash,
            spent,
            [(o.address, o.value) for o in tx.outputs],
            fee=total_in - total_out,
            weight=tx.vsize * 4,
            confirmed=self.auto_mine,
        )
        self.hub.notify(*[u.address for u in spent], *[o.address for o in tx.outputs])
        return signed.hash


class SimulatedEsploraProvider(_SimulatedEndpoint, UTXOProvider):
    """Esplora endpoint backed by a shared :class:`SimulatedBitcoinChain`."""

    def __init__(self, url: str, chain: SimulatedBitcoinChain):
        super().__init__(url, chain.hub)
        self.chain = chain

    async def get_balance(self, address: str) -> int:
        self._guard("get_balance")
        return self.chain.balance(address)

    async def get_utxos(self, address: str) -> list[Utxo]:
        self._guard("get_utxos")
        return [u for u in self.chain.utxos.values() if u.address == address]

    async def fee_estimates(self) -> dict[int, float]:
        self._guard("fee_estimates")
        return dict(self.chain.fee_rates)

    async def broadcast(self, signed: SignedTransaction) -> str:
        self._guard("broadcast")
        return self.chain.submit(signed)

    async def get_transaction(self, txid: str) -> Optional[dict]:
        self._guard("get_transaction")
        return self.chain.transactions.get(txid)

    async def tip_height(self) -> int:
        self._guard("tip_height")
        return self.chain.height

    def _touching(self, address: str, confirmed: bool) -> list[dict]:
        result = []
        for txid in reversed(self.chain.order):
            tx = self.chain.transactions[txid]
            if tx["status"]["confirmed"] != confirmed:
                continue
            addresses = [v["prevout"]["scriptpubkey_address"] for v in tx["vin"]]
            addresses += [v["scriptpubkey_address"] for v in tx["vout"]]
            if address in addresses:
                result.append(tx)
        return result

    async def address_transactions(self, address: str, last_seen_txid: Optional[str] = None) -> list[dict]:
        self._guard("address_transactions")
        txs = self._touching(address, confirmed=True)
        if last_seen_txid:
            ids = [t["txid"] for t in txs]
            txs = txs[ids.index(last_seen_txid) + 1 :] if last_seen_txid in ids else []
        return txs[:25]

    async def mempool_transactions(self, address: str) -> list[dict]:
        self._guard("mempool_transactions")
        return self._touching(address, confirmed=False)


# ======================
# Solana
# ======================


class SimulatedSolanaChain:
    """In-memory lamport and SPL token balances."""

    SIGNATURE_FEE = 5000
    FINALIZED_DEPTH = 32

    def __init__(self, config: NetworkConfig):
        self.config = config
        self.hub = _PushHub()
        self.balances: dict[str, int] = {}
        self.tokens: dict[str, dict[str, int]] = {}
        self.decimals: dict[str, int] = {}
        self.token_accounts: set[str] = set()
        self.statuses: dict[str, dict] = {}
        self.transactions: dict[str, dict] = {}
        self.signatures: list[tuple[str, set[str]]] = []
        self.slot = 250000000
        self.priority_fees = [0, 100, 1000, 5000, 20000]

    def set_balance(self, address: str, lamports: int) -> None:
        self.balances[address] = lamports
        self.hub.notify(address)

    def create_mint(self, mint: str, decimals: int) -> None:
        self.decimals[mint] = decimals
        self.tokens.setdefault(mint, {})

    def mint_to(self, mint: str, owner: str, amount: int) -> None:
        holders = self.tokens.setdefault(mint, {})
        holders[owner] = holders.get(owner, 0) + amount
        self.token_accounts.add(associated_token_account(owner, mint))
        self.hub.notify(owner)

    def advance(self, slots: int = 1) -> None:
        self.slot += slots

    def _check(self, unsigned: UnsignedTransaction) -> Optional[Any]:
        sender = unsigned.sender
        fee = unsigned.fee.estimated_cost if unsigned.fee else self.SIGNATURE_FEE
        if self.balances.get(sender, 0) < unsigned.native_amount() + fee:
            return {"InstructionError": [0, {"Custom": 1}]} if unsigned.native_amount() else "InsufficientFundsForFee"
        for mint, amount in unsigned.token_amounts().items():
            if self.tokens.get(mint, {}).get(sender, 0) < amount:
                return {"InstructionError": [0, {"Custom": 1}]}
        return None

    def units_for(self, unsigned: UnsignedTransaction) -> int:
        return sum(150 if t.is_native else 6200 for t in unsigned.transfers)

    def submit(self, signed: SignedTransaction) -> str:
        unsigned = signed.unsigned
        err = self._check(unsigned)
        if err is not None:
            raise ProviderRejection(f"Transaction simulation failed: {err}")

        sender = unsigned.sender
        fee = unsigned.fee.estimated_cost if unsigned.fee else self.SIGNATURE_FEE
        self.slot += 1
        self.balances[sender] -= fee
        instructions = []
        touched = {sender}
        post_token_balances = []
        keys = [sender]
        for transfer in unsigned.transfers:
            touched.add(transfer.to)
            if transfer.is_native:
                self.balances[sender] -= transfer.amount
                self.balances[transfer.to] = self.balances.get(transfer.to, 0) + transfer.amount
                instructions.append(
                    {
                        "program": "system",
                        "parsed": {
                            "type": "transfer",
                            "info": {"source": sender, "destination": transfer.to, "lamports": transfer.amount},
                        },
                    }
                )
            else:
                holders = self.tokens.setdefault(transfer.asset, {})
                holders[sender] -= transfer.amount
                holders[transfer.to] = holders.get(transfer.to, 0) + transfer.amount
                destination = associated_token_account(transfer.to, transfer.asset)
                self.token_accounts.add(destination)
                keys.append(destination)
                post_token_balances.append(
                    {"accountIndex": len(keys) - 1, "mint": transfer.asset, "owner": transfer.to}
                )
                instructions.append(
                    {
                        "program": "spl-token",
                        "parsed": {
                            "type": "transferChecked",
                            "info": {
                                "authority": sender,
                                "destination": destination,
                                "mint": transfer.asset,
                                "tokenAmount": {
                                    "amount": str(transfer.amount),
                                    "decimals": self.decimals.get(transfer.asset, 0),
                                },
                            },
                        },
                    }
                )

        self.statuses[signed.hash] = {"slot": self.slot, "err": None}
        self.transactions[signed.hash] = {
            "slot": self.slot,
            "blockTime": int(time.time()),
            "meta": {"err": None, "fee": fee, "postTokenBalances": post_token_balances},
            "transaction": {
                "signatures": [signed.hash],
                "message": {"accountKeys": [{"pubkey": k} for k in keys], "instructions": instructions},
            },
        }
        self.signatures.append((signed.hash, touched))
        self.hub.notify(*touched)
        return signed.hash


class SimulatedSolanaProvider(_SimulatedEndpoint, SolanaProvider):
    """Solana endpoint backed by a shared :class:`SimulatedSolanaChain`."""

    def __init__(self, url: str, chain: SimulatedSolanaChain):
        super().__init__(url, chain.hub)
        self.chain = chain

    async def get_balance(self, address: str) -> int:
        self._guard("get_balance")
        return self.chain.balances.get(address, 0)

    async def get_token_balance(self, owner: str, mint: str) -> int:
        self._guard("get_token_balance")
        return self.chain.tokens.get(mint, {}).get(owner, 0)

    async def get_token_decimals(self, mint: str) -> int:
        self._guard("get_token_decimals")
        if mint not in self.chain.decimals:
            raise ProviderRejection(f"Invalid param: could not find mint {mint}")
        return self.chain.decimals[mint]

    async def account_exists(self, address: str) -> bool:
        self._guard("account_exists")
        return address in self.chain.balances or address in self.chain.token_accounts

    async def get_latest_blockhash(self) -> str:
        self._guard("get_latest_blockhash")
        from solders.hash import Hash

        digest = hashlib.sha256(str(self.chain.slot).encode()).digest()
        return str(Hash(digest))

    async def simulate_transaction(self, unsigned: UnsignedTransaction) -> dict:
        self._guard("simulate_transaction")
        err = self.chain._check(unsigned)
        logs = ["Program 11111111111111111111111111111111 invoke [1]"]
        if err is not None:
            logs.append("Program 11111111111111111111111111111111 failed: insufficient funds")
        return {"err": err, "logs": logs, "units_consumed": self.chain.units_for(unsigned)}

    async def send_transaction(self, signed: SignedTransaction) -> str:
        self._guard("send_transaction")
        return self.chain.submit(signed)

    async def get_signature_statuses(self, signatures: list[str]) -> list[Optional[dict]]:
        self._guard("get_signature_statuses")
        statuses = []
        for signature in signatures:
            status = self.chain.statuses.get(signature)
            if status is None:
                statuses.append(None)
                continue
            depth = self.chain.slot - status["slot"]
            finalized = depth >= self.chain.FINALIZED_DEPTH
            statuses.append(
                {
                    "slot": status["slot"],
                    "confirmations": None if finalized else depth,
                    "confirmation_status": "finalized" if finalized else "confirmed",
                    "err": status["err"],
                }
            )
        return statuses

    async def get_slot(self) -> int:
        self._guard("get_slot")
        return self.chain.slot

    async def get_recent_prioritization_fees(self) -> list[int]:
        self._guard("get_recent_prioritization_fees")
        return list(self.chain.priority_fees)

    async def get_signatures_for_address(
        self, address: str, before: Optional[str] = None, limit: int = 100
    ) -> list[dict]:
        self._guard("get_signatures_for_address")
        matching = [sig for sig, touched in reversed(self.chain.signatures) if address in touched]
        if before:
            matching = matching[matching.index(before) + 1 :] if before in matching else []
        return [
            {
                "signature": sig,
                "slot": self.chain.statuses[sig]["slot"],
                "err": None,
                "block_time": self.chain.transactions[sig]["blockTime"],
                "confirmation_status": "confirmed",
            }
            for sig in matching[:limit]
        ]

    async def get_transaction(self, signature: str) -> Optional[dict]:
        self._guard("get_transaction")
        return self.chain.transactions.get(signature)


# ======================
# Registry of simulated networks
# ======================

_chains: dict[Network, Any] = {}
_providers: dict[str, Any] = {}


def get_simulated_chain(network: Network):
    """Get (or create) the shared simulated chain for a network."""
    if network not in _chains:
        config = NETWORKS[network]
        if config.family == NetworkFamily.EVM:
            _chains[network] = SimulatedEVMChain(config)
        elif config.family == NetworkFamily.UTXO:
            _chains[network] = SimulatedBitcoinChain(config)
        else:
            _chains[network] = SimulatedSolanaChain(config)
    return _chains[network]


def create_simulated_provider(config: NetworkConfig, url: str):
    """Get (or create) the simulated endpoint for ``url``."""
    if url in _providers:
        return _providers[url]
    chain = get_simulated_chain(config.network)
    if config.family == NetworkFamily.EVM:
        provider = SimulatedEVMProvider(url, chain)
    elif config.family == NetworkFamily.UTXO:
        provider = SimulatedEsploraProvider(url, chain)
    else:
        provider = SimulatedSolanaProvider(url, chain)
    _providers[url] = provider
    return provider


def get_simulated_provider(url: str):
    return _providers[url]


def reset_simulated_chains() -> None:
    """Drop all simulated state (useful for testing)."""
    _chains.clear()
    _providers.clear()
