"""NFT service for ERC-721 and ERC-1155 collections on EVM networks.

Ownership is always read from chain before a transfer is built; a
non-owner gets NotOwnerError and nothing reaches the pipeline.
"""

import base64
import json
import logging
import time
from typing import Any, Optional

import httpx
from eth_abi.exceptions import DecodingError

from hotwallet import abi
from hotwallet.config import Settings, get_settings
from hotwallet.contracts.nft import NFTAsset, NFTCollection, NFTStandard, NFTTransferItem
from hotwallet.contracts.transactions import BatchItemOutcome, Priority, TransactionResult, TransactionState
from hotwallet.errors import HotWalletError, NotOwnerError, ValidationError
from hotwallet.handlers.registry import ChainHandlerRegistry
from hotwallet.networks import Network, NetworkConfig, NetworkFamily
from hotwallet.pipeline import PipelineJob, TransactionPipeline
from hotwallet.types import TransactionDraft, Transfer

logger = logging.getLogger(__name__)

METADATA_TIMEOUT = 10.0


def erc1155_uri(template: str, token_id: int) -> str:
    """Substitute ``{id}`` with the 64-char lowercase hex id (ERC-1155 metadata rule)."""
    return template.replace("{id}", f"{token_id:064x}")


def resolve_uri(uri: str, gateway: str) -> str:
    """Rewrite ``ipfs://`` URIs onto an HTTP gateway."""
    if uri.startswith("ipfs://"):
        path = uri[len("ipfs://"):]
        if path.startswith("ipfs/"):
            path = path[len("ipfs/"):]
        return gateway.rstrip("/") + "/" + path
    return uri


class NFTService:
    """Reads, enumerates and transfers NFTs."""

    def __init__(
        self,
        registry: ChainHandlerRegistry,
        pipeline: TransactionPipeline,
        settings: Optional[Settings] = None,
    ):
        self.registry = registry
        self.pipeline = pipeline
        self.settings = settings or get_settings()
        self._collections: dict[tuple[Network, str], NFTCollection] = {}
        self._metadata_cache: dict[tuple[Network, str, int], tuple[float, dict]] = {}
        self._ownership_cache: dict[tuple[Network, str, int, str], tuple[float, int]] = {}

    # ======================
    # Helpers
    # ======================

    def _evm_config(self, network) -> NetworkConfig:
        config = self.registry.config(network)
        if config.family != NetworkFamily.EVM:
            raise ValidationError(f"NFTs are only supported on EVM networks, not {config.network.value}")
        return config

    def _address(self, network, address: str) -> str:
        return self.registry.handler(network).normalize_address(address)

    async def _read(self, network, contract: str, signature: str, args: tuple, types: list[str]) -> tuple:
        result = await self.registry.call(network, contract, abi.encode_call(signature, *args))
        try:
            return abi.decode_result(types, result)
        except DecodingError as e:
            raise ValidationError(
                f"Unexpected response from {contract} for {signature}", contract_address=contract
            ) from e

    async def _optional_string(self, network, contract: str, signature: str) -> Optional[str]:
        try:
            (value,) = await self._read(network, contract, signature, (), ["string"])
        except ValidationError:
            return None
        return value

    async def detect_standard(self, network, contract: str) -> NFTStandard:
        """Registered standard, else ERC-165 ``supportsInterface`` probing.

        Raises:
            ValidationError: If the contract is neither ERC-721 nor ERC-1155
        """
        config = self._evm_config(network)
        contract = self._address(network, contract)
        registered = self._collections.get((config.network, contract.lower()))
        if registered is not None:
            return registered.standard

        for standard, interface_id in (
            (NFTStandard.ERC721, abi.ERC721_INTERFACE_ID),
            (NFTStandard.ERC1155, abi.ERC1155_INTERFACE_ID),
        ):
            try:
                (supported,) = await self._read(network, contract, abi.SUPPORTS_INTERFACE, (interface_id,), ["bool"])
            except ValidationError:
                continue
            if supported:
                return standard
        raise ValidationError(f"{contract} is not an ERC-721 or ERC-1155 contract", contract_address=contract)

    # ======================
    # Collections
    # ======================

    async def register_collection(
        self,
        network,
        contract: str,
        standard: Optional[NFTStandard] = None,
        token_ids: Optional[list[int]] = None,
    ) -> NFTCollection:
        """Make a collection known for enumeration.

        ERC-1155 has no on-chain enumeration, so its token ids must be
        registered here. Registering again merges token ids.
        """
        config = self._evm_config(network)
        contract = self._address(network, contract)
        key = (config.network, contract.lower())
        existing = self._collections.get(key)
        if existing is not None:
            merged = sorted(set(existing.token_ids) | set(token_ids or []))
            existing.token_ids = merged
            return existing

        standard = standard or await self.detect_standard(network, contract)
        name = symbol = None
        if standard == NFTStandard.ERC721:
            name = await self._optional_string(network, contract, abi.ERC20_NAME)
            symbol = await self._optional_string(network, contract, abi.ERC20_SYMBOL)

        collection = NFTCollection(
            contract_address=contract,
            standard=standard,
            name=name,
            symbol=symbol,
            token_ids=sorted(set(token_ids or [])),
        )
        self._collections[key] = collection
        logger.info(f"Registered {standard.value} collection {contract} on {config.network.value}")
        return collection

    def list_collections(self, network) -> list[NFTCollection]:
        config = self._evm_config(network)
        return [c for (n, _), c in self._collections.items() if n == config.network]

    # ======================
    # Metadata
    # ======================

    async def get_metadata(self, network, contract: str, token_id: int) -> dict[str, Any]:
        """Token URI plus the JSON document it points at.

        The document is cached for ``metadata_cache_ttl`` seconds. A
        document that cannot be fetched leaves ``metadata`` as None.
        """
        config = self._evm_config(network)
        contract = self._address(network, contract)
        key = (config.network, contract.lower(), token_id)
        cached = self._metadata_cache.get(key)
        if cached is not None and cached[0] > time.monotonic():
            return cached[1]

        standard = await self.detect_standard(network, contract)
        name = symbol = None
        if standard == NFTStandard.ERC721:
            (uri,) = await self._read(network, contract, abi.ERC721_TOKEN_URI, (token_id,), ["string"])
            name = await self._optional_string(network, contract, abi.ERC20_NAME)
            symbol = await self._optional_string(network, contract, abi.ERC20_SYMBOL)
        else:
            (template,) = await self._read(network, contract, abi.ERC1155_URI, (token_id,), ["string"])
            uri = erc1155_uri(template, token_id)

        result = {
            "contract_address": contract,
            "token_id": token_id,
            "standard": standard.value,
            "name": name,
            "symbol": symbol,
            "token_uri": uri,
            "metadata": await self._fetch_document(uri) if uri else None,
        }
        self._metadata_cache[key] = (time.monotonic() + self.settings.metadata_cache_ttl, result)
        return result

    async def _fetch_document(self, uri: str) -> Optional[dict]:
        if uri.startswith("data:application/json"):
            header, _, payload = uri.partition(",")
            raw = base64.b64decode(payload) if header.endswith(";base64") else payload.encode()
            return json.loads(raw)

        url = resolve_uri(uri, self.settings.ipfs_gateway)
        if not url.startswith(("http://", "https://")):
            logger.warning(f"Unsupported metadata URI scheme: {uri}")
            return None

        try:
            async with httpx.AsyncClient(timeout=METADATA_TIMEOUT, follow_redirects=True) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to fetch NFT metadata from {url}: {e}")
            return None

    # ======================
    # Ownership
    # ======================

    async def _held_quantity(self, network, owner: str, contract: str, token_id: int, standard: NFTStandard) -> int:
        if standard == NFTStandard.ERC721:
            try:
                (holder,) = await self._read(network, contract, abi.ERC721_OWNER_OF, (token_id,), ["address"])
            except ValidationError:
                return 0
            return 1 if holder.lower() == owner.lower() else 0

        (balance,) = await self._read(
            network, contract, abi.ERC1155_BALANCE_OF, (owner, token_id), ["uint256"]
        )
        return balance

    async def owns_asset(
        self,
        network,
        owner: str,
        contract: str,
        token_id: int,
        quantity: int = 1,
        max_age: Optional[float] = None,
    ) -> bool:
        """Whether ``owner`` holds at least ``quantity`` of the token.

        Reads the chain unless ``max_age`` is given and a read younger than
        that is cached.
        """
        config = self._evm_config(network)
        owner = self._address(network, owner)
        contract = self._address(network, contract)
        key = (config.network, contract.lower(), token_id, owner.lower())

        cached = self._ownership_cache.get(key)
        if max_age is not None and cached is not None and time.monotonic() - cached[0] <= max_age:
            return cached[1] >= quantity

        standard = await self.detect_standard(network, contract)
        held = await self._held_quantity(network, owner, contract, token_id, standard)
        self._ownership_cache[key] = (time.monotonic(), held)
        return held >= quantity

    async def list_owned_assets(self, network, address: str, include_metadata: bool = False) -> list[NFTAsset]:
        """NFTs held by ``address`` across registered collections."""
        config = self._evm_config(network)
        owner = self._address(network, address)
        assets = []
        for collection in self.list_collections(config.network):
            contract = collection.contract_address
            if collection.standard == NFTStandard.ERC721:
                token_ids = await self._enumerate_erc721(network, owner, collection)
                found = [(token_id, 1) for token_id in token_ids]
            else:
                found = []
                for token_id in collection.token_ids:
                    held = await self._held_quantity(network, owner, contract, token_id, NFTStandard.ERC1155)
                    if held > 0:
                        found.append((token_id, held))

            for token_id, quantity in found:
                metadata = None
                if include_metadata:
                    metadata = (await self.get_metadata(network, contract, token_id)).get("metadata")
                assets.append(
                    NFTAsset(
                        contract_address=contract,
                        token_id=token_id,
                        standard=collection.standard,
                        quantity=quantity,
                        metadata=metadata,
                    )
                )
        return assets

    async def _enumerate_erc721(self, network, owner: str, collection: NFTCollection) -> list[int]:
        contract = collection.contract_address
        (count,) = await self._read(network, contract, abi.ERC20_BALANCE_OF, (owner,), ["uint256"])
        token_ids = []
        try:
            for index in range(count):
                (token_id,) = await self._read(
                    network, contract, abi.ERC721_TOKEN_OF_OWNER_BY_INDEX, (owner, index), ["uint256"]
                )
                token_ids.append(token_id)
        except ValidationError:
            # Not ERC721Enumerable: fall back to the registered ids
            token_ids = [
                t for t in collection.token_ids
                if await self._held_quantity(network, owner, contract, t, NFTStandard.ERC721)
            ]
        return token_ids

    # ======================
    # Transfers
    # ======================

    async def _require_owner(
        self, network, owner: str, contract: str, token_id: int, quantity: int = 1
    ) -> None:
        if not await self.owns_asset(network, owner, contract, token_id, quantity):
            raise NotOwnerError(contract, token_id, owner)

    def _sender(self, network, from_address: str) -> str:
        return self.pipeline.wallets.get_wallet(network, from_address).address

    def _check_recipient(self, network, to_address: str) -> str:
        if not self.registry.handler(network).validate_address(to_address):
            raise ValidationError(f"Invalid recipient address: {to_address}", address=to_address)
        return self._address(network, to_address)

    async def _run(self, draft: TransactionDraft, priority: Priority, label: str, amount: str, wait: bool) -> PipelineJob:
        job = PipelineJob(draft=draft, priority=priority, asset_label=label, amount_label=amount)
        await self.pipeline.run_job(job, wait=wait)
        return job

    async def transfer(
        self,
        network,
        from_address: str,
        to_address: str,
        contract: str,
        token_id: int,
        priority: Priority = Priority.MEDIUM,
        wait: bool = False,
    ) -> TransactionResult:
        """Transfer an ERC-721 token with ``safeTransferFrom``.

        Raises:
            NotOwnerError: If ``from_address`` does not own the token
        """
        config = self._evm_config(network)
        sender = self._sender(config.network, from_address)
        recipient = self._check_recipient(network, to_address)
        contract = self._address(network, contract)
        if await self.detect_standard(network, contract) != NFTStandard.ERC721:
            raise ValidationError(f"{contract} is not ERC-721; use transfer_multi_unit")
        await self._require_owner(network, sender, contract, token_id)

        draft = TransactionDraft(
            network=config.network,
            sender=sender,
            transfers=[Transfer(to=recipient, amount=1, asset=contract, standard="erc721", token_id=token_id)],
        )
        job = await self._run(draft, priority, contract, "1", wait)
        return job.result()

    async def transfer_multi_unit(
        self,
        network,
        from_address: str,
        to_address: str,
        contract: str,
        token_id: int,
        quantity: int,
        priority: Priority = Priority.MEDIUM,
        wait: bool = False,
    ) -> TransactionResult:
        """Transfer ``quantity`` units of an ERC-1155 token.

        Raises:
            NotOwnerError: If ``from_address`` holds fewer than ``quantity`` units
        """
        config = self._evm_config(network)
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", quantity=quantity)
        sender = self._sender(config.network, from_address)
        recipient = self._check_recipient(network, to_address)
        contract = self._address(network, contract)
        if await self.detect_standard(network, contract) != NFTStandard.ERC1155:
            raise ValidationError(f"{contract} is not ERC-1155; use transfer")
        await self._require_owner(network, sender, contract, token_id, quantity)

        draft = TransactionDraft(
            network=config.network,
            sender=sender,
            transfers=[
                Transfer(to=recipient, amount=quantity, asset=contract, standard="erc1155", token_id=token_id)
            ],
        )
        job = await self._run(draft, priority, contract, str(quantity), wait)
        return job.result()

    async def batch_transfer(
        self,
        network,
        from_address: str,
        items: list[NFTTransferItem],
        priority: Priority = Priority.MEDIUM,
        wait: bool = False,
    ) -> list[BatchItemOutcome]:
        """Transfer several NFTs, reporting an outcome per item.

        ERC-1155 items sharing contract and recipient travel in one
        ``safeBatchTransferFrom``; everything else is sent on its own.
        Items failing the ownership check are rejected before any build.
        """
        config = self._evm_config(network)
        sender = self._sender(config.network, from_address)
        outcomes: dict[int, BatchItemOutcome] = {}
        groups: dict[tuple, list[tuple[int, Transfer]]] = {}

        needed: dict[tuple[str, int], int] = {}
        for item in items:
            key = (item.contract_address.lower(), item.token_id)
            needed[key] = needed.get(key, 0) + item.quantity

        for index, item in enumerate(items):
            try:
                recipient = self._check_recipient(network, item.to_address)
                contract = self._address(network, item.contract_address)
                standard = await self.detect_standard(network, contract)
                if standard == NFTStandard.ERC721 and item.quantity != 1:
                    raise ValidationError("ERC-721 transfers move exactly one token", index=index)
                await self._require_owner(
                    network, sender, contract, item.token_id, needed[(contract.lower(), item.token_id)]
                )
            except HotWalletError as e:
                outcomes[index] = BatchItemOutcome(
                    index=index, success=False, state=TransactionState.FAILED, error=e.to_dict()
                )
                continue

            transfer = Transfer(
                to=recipient,
                amount=item.quantity,
                asset=contract,
                standard=standard.value,
                token_id=item.token_id,
            )
            if standard == NFTStandard.ERC1155:
                group_key = ("batch", contract.lower(), recipient.lower())
            else:
                group_key = ("single", index)
            groups.setdefault(group_key, []).append((index, transfer))

        for members in groups.values():
            transfers = [t for _, t in members]
            draft = TransactionDraft(network=config.network, sender=sender, transfers=transfers)
            label = transfers[0].asset
            amount = str(sum(t.amount for t in transfers))
            job = PipelineJob(draft=draft, priority=priority, asset_label=label, amount_label=amount)
            try:
                await self.pipeline.run_job(job, wait=wait)
            except HotWalletError as e:
                logger.warning(f"NFT transfer of {len(members)} item(s) from {sender} failed: {e.message}")

            success = job.state in (TransactionState.SUBMITTED, TransactionState.CONFIRMED)
            for index, _ in members:
                outcomes[index] = BatchItemOutcome(
                    index=index,
                    success=success,
                    state=job.state,
                    hash=job.tx_hash,
                    error=job.error.to_dict() if job.error and not success else None,
                )

        return [outcomes[i] for i in range(len(items))]
