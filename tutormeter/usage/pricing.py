"""
TutorMeter - Pricing Resolver

Resolves per-token prices for a realtime model and turns token counts into
a cost breakdown. Prices are USD per 1 million tokens.

Resolution order:
1. Latest active pricing row in the store with effective_from <= now
2. The PricingTable entry for the model
3. The PricingTable fallback model, when one is configured
4. PricingConfigurationError

Costs are Decimal, rounded half-up to 6 fractional digits per part; the
total is the sum of the rounded parts.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..core.errors import InvalidUsageError, PricingConfigurationError
from ..db.store import MeteringStore, guarded
from ..observability.logging import get_logger
from .ledger import utc_now

logger = get_logger(__name__)

MILLION = Decimal(1_000_000)
COST_QUANTUM = Decimal("0.000001")

Price = Union[Decimal, str, int, float]


# USD per 1M tokens (input, output)
DEFAULT_PRICES: Dict[str, Tuple[str, str]] = {
    "gpt-4o-mini-realtime-preview": ("0.15", "0.60"),
    "gpt-4o-realtime-preview": ("5.00", "20.00"),
    "gpt-realtime": ("4.00", "16.00"),
    "gpt-realtime-mini": ("0.60", "2.40"),
}


def to_decimal(value: Price) -> Decimal:
    """Decimal from a price; floats go through str() to avoid binary noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class PricingSource(str, Enum):
    """Where a resolved price came from."""
    DATABASE = "database"
    DEFAULT = "default"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ModelPricing:
    """Resolved price of one model."""
    model: str
    input_per_1m: Decimal
    output_per_1m: Decimal
    source: PricingSource
    priced_as: Optional[str] = None  # set when a fallback model's price is used
    effective_from: Optional[datetime] = None

    def to_snapshot(self) -> Dict[str, Any]:
        """JSON-safe form stored alongside session metrics."""
        snapshot = {
            "model": self.model,
            "input_per_1m": str(self.input_per_1m),
            "output_per_1m": str(self.output_per_1m),
            "source": self.source.value,
        }
        if self.priced_as:
            snapshot["priced_as"] = self.priced_as
        if self.effective_from:
            snapshot["effective_from"] = self.effective_from.isoformat()
        return snapshot


@dataclass(frozen=True)
class CostBreakdown:
    """Cost of a token report in USD."""
    input: Decimal
    output: Decimal
    total: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            "input": str(self.input),
            "output": str(self.output),
            "total": str(self.total),
        }


def _part_cost(tokens: int, per_1m: Decimal) -> Decimal:
    return (Decimal(tokens) * per_1m / MILLION).quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


def calculate_cost(input_tokens: int, output_tokens: int, pricing: ModelPricing) -> CostBreakdown:
    """
    Cost of a token report.

    Example:
        1000 input + 500 output tokens at 0.15 / 0.60 per 1M
        -> input 0.000150, output 0.000300, total 0.000450
    """
    if input_tokens < 0 or output_tokens < 0:
        raise InvalidUsageError("Token counts must be non-negative", param="tokens")

    input_cost = _part_cost(input_tokens, pricing.input_per_1m)
    output_cost = _part_cost(output_tokens, pricing.output_per_1m)
    return CostBreakdown(input=input_cost, output=output_cost, total=input_cost + output_cost)


class PricingTable:
    """
    Static per-model prices used when the store has no pricing row.

    Usage:
        table = PricingTable.default(fallback_model="gpt-4o-mini-realtime-preview")
        table.get("gpt-realtime")
    """

    def __init__(
        self,
        prices: Dict[str, Tuple[Price, Price]],
        fallback_model: Optional[str] = None,
    ):
        self._prices: Dict[str, Tuple[Decimal, Decimal]] = {
            model: (to_decimal(inp), to_decimal(out)) for model, (inp, out) in prices.items()
        }
        if fallback_model and fallback_model not in self._prices:
            raise PricingConfigurationError(fallback_model)
        self.fallback_model = fallback_model or None

    @classmethod
    def default(cls, fallback_model: Optional[str] = None) -> "PricingTable":
        return cls(DEFAULT_PRICES, fallback_model=fallback_model)

    def models(self) -> List[str]:
        return sorted(self._prices)

    def get(self, model: str) -> Optional[ModelPricing]:
        prices = self._prices.get(model)
        if prices is None:
            return None
        return ModelPricing(
            model=model,
            input_per_1m=prices[0],
            output_per_1m=prices[1],
            source=PricingSource.DEFAULT,
        )

    def fallback(self, model: str) -> Optional[ModelPricing]:
        """Fallback model's price, reported under the requested model id."""
        if not self.fallback_model:
            return None
        inp, out = self._prices[self.fallback_model]
        return ModelPricing(
            model=model,
            input_per_1m=inp,
            output_per_1m=out,
            source=PricingSource.FALLBACK,
            priced_as=self.fallback_model,
        )


class PricingResolver:
    """Resolves model prices from the store with a static table behind it."""

    def __init__(
        self,
        store: MeteringStore,
        table: Optional[PricingTable] = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        store_timeout: float = 5.0,
    ):
        self.store = store
        self.table = table or PricingTable.default()
        self.clock = clock
        self.store_timeout = store_timeout

    async def resolve(self, model: str) -> ModelPricing:
        row = await guarded(
            self.store.get_effective_pricing(model, self.clock()),
            timeout=self.store_timeout,
            operation="pricing.resolve",
        )
        if row is not None:
            return ModelPricing(
                model=model,
                input_per_1m=to_decimal(row.input_per_1m),
                output_per_1m=to_decimal(row.output_per_1m),
                source=PricingSource.DATABASE,
                effective_from=row.effective_from,
            )

        pricing = self.table.get(model)
        if pricing is not None:
            return pricing

        pricing = self.table.fallback(model)
        if pricing is not None:
            logger.warning(
                "No price for model, using fallback model price",
                model=model,
                priced_as=pricing.priced_as,
            )
            return pricing

        logger.error("No pricing configured for model", model=model)
        raise PricingConfigurationError(model)

    def cost(self, input_tokens: int, output_tokens: int, pricing: ModelPricing) -> CostBreakdown:
        return calculate_cost(input_tokens, output_tokens, pricing)
