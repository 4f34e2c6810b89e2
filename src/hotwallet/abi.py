"""Minimal contract-call encoding for ERC-20, ERC-721 and ERC-1155.

Calldata is built from human-readable signatures with eth_abi; results are
decoded from the hex returned by ``eth_call``.
"""

from typing import Any, Optional, Sequence

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, to_checksum_address

# ERC-20
ERC20_BALANCE_OF = "balanceOf(address)"
ERC20_TRANSFER = "transfer(address,uint256)"
ERC20_DECIMALS = "decimals()"
ERC20_SYMBOL = "symbol()"
ERC20_NAME = "name()"

# ERC-721
ERC721_OWNER_OF = "ownerOf(uint256)"
ERC721_TOKEN_URI = "tokenURI(uint256)"
ERC721_SAFE_TRANSFER_FROM = "safeTransferFrom(address,address,uint256)"
ERC721_TOKEN_OF_OWNER_BY_INDEX = "tokenOfOwnerByIndex(address,uint256)"

# ERC-1155
ERC1155_BALANCE_OF = "balanceOf(address,uint256)"
ERC1155_URI = "uri(uint256)"
ERC1155_SAFE_TRANSFER_FROM = "safeTransferFrom(address,address,uint256,uint256,bytes)"
ERC1155_SAFE_BATCH_TRANSFER_FROM = "safeBatchTransferFrom(address,address,uint256[],uint256[],bytes)"

# ERC-165
SUPPORTS_INTERFACE = "supportsInterface(bytes4)"
ERC721_INTERFACE_ID = bytes.fromhex("80ac58cd")
ERC1155_INTERFACE_ID = bytes.fromhex("d9b67a26")


def selector(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


def argument_types(signature: str) -> list[str]:
    inner = signature[signature.index("(") + 1 : signature.rindex(")")]
    return [t for t in inner.split(",") if t]


def encode_call(signature: str, *args: Any) -> str:
    """Encode a function call as 0x-prefixed calldata."""
    types = argument_types(signature)
    return "0x" + (selector(signature) + encode(types, list(args))).hex()


def decode_call(signature: str, data: str) -> tuple:
    """Decode calldata produced for ``signature``; selector must match."""
    raw = bytes.fromhex(data[2:] if data.startswith("0x") else data)
    if raw[:4] != selector(signature):
        raise ValueError(f"Calldata does not match {signature}")
    return decode(argument_types(signature), raw[4:])


def match_selector(data: str, signatures: Sequence[str]) -> Optional[str]:
    """Return the signature whose selector prefixes ``data``, if any."""
    prefix = bytes.fromhex((data[2:] if data.startswith("0x") else data)[:8])
    for signature in signatures:
        if selector(signature) == prefix:
            return signature
    return None


def decode_result(types: Sequence[str], data: str) -> tuple:
    raw = bytes.fromhex(data[2:] if data.startswith("0x") else data)
    return decode(list(types), raw)


def encode_result(types: Sequence[str], values: Sequence[Any]) -> str:
    return "0x" + encode(list(types), list(values)).hex()


def checksum(address: str) -> str:
    return to_checksum_address(address)
