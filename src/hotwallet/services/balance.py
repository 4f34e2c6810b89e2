"""Balance service.

A balance read that cannot reach any provider is reported as unavailable,
never as zero.
"""

import asyncio
import logging
from typing import Optional

from hotwallet.contracts.wallets import BalanceResult
from hotwallet.errors import CircuitOpenError, NetworkUnavailableError, ThrottledError, ValidationError
from hotwallet.handlers.registry import ChainHandlerRegistry
from hotwallet.units import format_units

logger = logging.getLogger(__name__)

_UNAVAILABLE = (NetworkUnavailableError, CircuitOpenError, ThrottledError)


class BalanceService:
    """Reads native and token balances through the handler registry."""

    def __init__(self, registry: ChainHandlerRegistry):
        self.registry = registry

    async def get_native_balance(self, network, address: str) -> BalanceResult:
        """Native coin balance of ``address``.

        Raises:
            ValidationError: If the address is malformed
        """
        config = self.registry.config(network)
        self._check_address(network, address)
        try:
            raw = await self.registry.get_balance(config.network, address)
        except _UNAVAILABLE as e:
            logger.warning(f"Balance of {address} on {config.network.value} unavailable: {e}")
            return BalanceResult(
                network=config.network, address=address, asset=config.symbol, available=False, error=e.to_dict()
            )

        return BalanceResult(
            network=config.network,
            address=address,
            asset=config.symbol,
            balance=format_units(raw, config.decimals),
            raw=raw,
            decimals=config.decimals,
        )

    async def get_token_balance(self, network, address: str, token: str) -> BalanceResult:
        """Balance of a fungible token given by symbol or contract/mint address.

        Raises:
            ValidationError: If the address or token is invalid for the network
        """
        config = self.registry.config(network)
        self._check_address(network, address)
        asset = self.registry.handler(network).resolve_token(token)
        try:
            decimals = await self.registry.token_decimals(config.network, asset)
            raw = await self.registry.get_balance(config.network, address, asset)
        except _UNAVAILABLE as e:
            logger.warning(f"{token} balance of {address} on {config.network.value} unavailable: {e}")
            return BalanceResult(
                network=config.network, address=address, asset=token, available=False, error=e.to_dict()
            )

        return BalanceResult(
            network=config.network,
            address=address,
            asset=token,
            balance=format_units(raw, decimals),
            raw=raw,
            decimals=decimals,
        )

    async def get_balances(
        self, network, address: str, tokens: Optional[list[str]] = None
    ) -> list[BalanceResult]:
        """Native balance followed by each requested token, read concurrently."""
        reads = [self.get_native_balance(network, address)]
        reads.extend(self.get_token_balance(network, address, token) for token in tokens or [])
        return list(await asyncio.gather(*reads))

    def _check_address(self, network, address: str) -> None:
        if not self.registry.handler(network).validate_address(address):
            raise ValidationError(f"Invalid address: {address}", address=address)
