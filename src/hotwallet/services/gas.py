"""Gas service: gas limits, fee prices per priority tier and fee quotes.

Pricing never blocks the pipeline: when the fee market cannot be read
(both endpoint attempts failed, breaker open, or throttled) the configured
fallback price is used and the quote is flagged ``is_fallback``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from hotwallet.config import Settings, get_settings
from hotwallet.contracts.transactions import FeeQuote, Priority
from hotwallet.errors import CircuitOpenError, NetworkUnavailableError, ThrottledError
from hotwallet.handlers.registry import ChainHandlerRegistry
from hotwallet.networks import NetworkConfig, NetworkFamily
from hotwallet.types import FeeMarket, UnsignedTransaction

logger = logging.getLogger(__name__)

GWEI = 10**9
MICRO_LAMPORTS = 10**6

# Gas limit headroom on EVM estimates (percent)
EVM_GAS_BUFFER_PERCENT = 10

# Legacy gas price multipliers as (numerator, denominator)
LEGACY_MULTIPLIERS = {
    Priority.LOW: (9, 10),
    Priority.MEDIUM: (1, 1),
    Priority.HIGH: (6, 5),
}

FALLBACK_PRIORITY_FEE = 2 * GWEI
SOL_SIGNATURE_FEE = 5000


@dataclass
class FeePrice:
    """Per-unit fee price for one tier."""

    priority: Priority
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    fixed_fee: int = 0
    is_fallback: bool = False

    @property
    def unit_price(self) -> int:
        if self.max_fee_per_gas is not None:
            return self.max_fee_per_gas
        return self.gas_price or 0


def select_fee_price(config: NetworkConfig, market: FeeMarket, priority: Priority) -> FeePrice:
    """Pick the tier's price from a fee-market snapshot."""
    if config.family == NetworkFamily.EVM:
        if config.eip1559 and market.base_fee is not None:
            tip = market.rewards.get(priority, 0)
            return FeePrice(
                priority=priority,
                max_fee_per_gas=2 * market.base_fee + tip,
                max_priority_fee_per_gas=tip,
            )
        numerator, denominator = LEGACY_MULTIPLIERS[priority]
        return FeePrice(priority=priority, gas_price=market.gas_price * numerator // denominator)

    price = market.rewards.get(priority, market.gas_price or 0)
    return FeePrice(priority=priority, gas_price=price, fixed_fee=market.fixed_fee)


def calculate_cost(config: NetworkConfig, gas_limit: int, price: FeePrice) -> int:
    """Worst-case fee in native base units."""
    if config.family == NetworkFamily.SOLANA:
        variable = -(-gas_limit * price.unit_price // MICRO_LAMPORTS)
    else:
        variable = gas_limit * price.unit_price
    return price.fixed_fee + variable


class GasService:
    """Fee estimation on top of the handler registry."""

    def __init__(self, registry: ChainHandlerRegistry, settings: Optional[Settings] = None):
        self.registry = registry
        self.settings = settings or get_settings()

    def fallback_price(self, config: NetworkConfig, priority: Priority) -> FeePrice:
        """Configured fallback price for a network."""
        price = self.settings.fallback_fee_price(config.network) or config.fallback_fee_price
        if config.family == NetworkFamily.EVM:
            if config.eip1559:
                return FeePrice(
                    priority=priority,
                    max_fee_per_gas=price,
                    max_priority_fee_per_gas=min(price, FALLBACK_PRIORITY_FEE),
                    is_fallback=True,
                )
            return FeePrice(priority=priority, gas_price=price, is_fallback=True)
        if config.family == NetworkFamily.SOLANA:
            return FeePrice(priority=priority, gas_price=price, fixed_fee=SOL_SIGNATURE_FEE, is_fallback=True)
        return FeePrice(priority=priority, gas_price=price, is_fallback=True)

    async def _market(self, config: NetworkConfig) -> Optional[FeeMarket]:
        try:
            return await self.registry.get_fee_market(config.network)
        except (NetworkUnavailableError, CircuitOpenError, ThrottledError) as e:
            logger.warning(f"Fee market unavailable for {config.network.value}, using fallback price: {e}")
            return None

    async def get_fee_price(self, network, priority: Priority = Priority.MEDIUM) -> FeePrice:
        config = self.registry.config(network)
        market = await self._market(config)
        if market is None:
            return self.fallback_price(config, priority)
        return select_fee_price(config, market, priority)

    async def estimate_gas(self, network, unsigned: UnsignedTransaction) -> int:
        """Gas limit (with EVM headroom), virtual size or compute units."""
        config = self.registry.config(network)
        gas = await self.registry.estimate_gas(network, unsigned)
        if config.family == NetworkFamily.EVM:
            gas = -(-gas * (100 + EVM_GAS_BUFFER_PERCENT) // 100)
        return gas

    def _build_quote(self, config: NetworkConfig, gas_limit: int, price: FeePrice) -> FeeQuote:
        return FeeQuote(
            network=config.network,
            priority=price.priority,
            gas_limit=gas_limit,
            gas_price=price.gas_price,
            max_fee_per_gas=price.max_fee_per_gas,
            max_priority_fee_per_gas=price.max_priority_fee_per_gas,
            fixed_fee=price.fixed_fee,
            estimated_cost=calculate_cost(config, gas_limit, price),
            is_fallback=price.is_fallback,
        )

    async def quote(
        self, network, unsigned: UnsignedTransaction, priority: Priority = Priority.MEDIUM
    ) -> FeeQuote:
        """Fee quote for a built (skeleton) transaction."""
        config = self.registry.config(network)
        gas_limit = await self.estimate_gas(network, unsigned)
        price = await self.get_fee_price(network, priority)
        quote = self._build_quote(config, gas_limit, price)
        logger.debug(
            f"Quoted {config.network.value} {priority.value}: gas={gas_limit} cost={quote.estimated_cost}"
            f"{' (fallback)' if quote.is_fallback else ''}"
        )
        return quote

    async def recommendations(self, network, unsigned: UnsignedTransaction) -> dict[Priority, FeeQuote]:
        """Quotes for every priority tier from one gas estimate and one market read."""
        config = self.registry.config(network)
        gas_limit = await self.estimate_gas(network, unsigned)
        market = await self._market(config)
        quotes = {}
        for priority in Priority:
            if market is None:
                price = self.fallback_price(config, priority)
            else:
                price = select_fee_price(config, market, priority)
            quotes[priority] = self._build_quote(config, gas_limit, price)
        return quotes

    async def fee_prices(self, network) -> dict[Priority, FeePrice]:
        """Current price per tier, without a transaction."""
        config = self.registry.config(network)
        market = await self._market(config)
        return {
            p: self.fallback_price(config, p) if market is None else select_fee_price(config, market, p)
            for p in Priority
        }
