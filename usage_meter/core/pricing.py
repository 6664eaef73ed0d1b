"""
Pricing calculations and rate management.

Converts raw provider measurements into billable units and money.
All arithmetic is integer: amounts are minor-currency units.
"""

from dataclasses import dataclass
from typing import Dict

from usage_meter.storage.models import ResourceKind


def quantity_to_units(raw_quantity: int, unit_granularity: int) -> int:
    """Convert a raw measurement into billable units, rounding UP.

    Any partial unit consumed is billed in full: 61 seconds at 60-second
    granularity is 2 minutes, 71 characters at 70 per segment is 2 segments.

    Args:
        raw_quantity: Seconds of call time, characters of text, ...
        unit_granularity: Raw quantity covered by one billable unit

    Returns:
        Number of billable units, 0 for zero or negative quantities

    Raises:
        ValueError: If granularity is not positive
    """
    if unit_granularity <= 0:
        raise ValueError("unit_granularity must be > 0")
    if raw_quantity <= 0:
        return 0
    return -(-raw_quantity // unit_granularity)


def units_to_cost(units: int, price_per_unit: int) -> int:
    """Cost of ``units`` in minor-currency units."""
    if units <= 0:
        return 0
    return units * price_per_unit


@dataclass(frozen=True)
class ResourcePricing:
    """Unit size and price for one resource."""
    unit_granularity: int  # Raw quantity per billable unit
    price_per_unit: int    # Minor units per billable unit

    def __post_init__(self):
        if self.unit_granularity <= 0:
            raise ValueError("unit_granularity must be > 0")
        if self.price_per_unit < 0:
            raise ValueError("price_per_unit must be >= 0")


@dataclass(frozen=True)
class PriceTable:
    """Fixed price table for billable resources."""
    prices: Dict[ResourceKind, ResourcePricing]

    def get_pricing(self, kind: ResourceKind) -> ResourcePricing:
        """Get pricing for a resource.

        Raises:
            ValueError: If the resource has no price
        """
        if kind not in self.prices:
            raise ValueError(f"Unpriced resource: {kind.value}")
        return self.prices[kind]

    def units_for(self, kind: ResourceKind, raw_quantity: int) -> int:
        """Billable units for a raw quantity of ``kind``."""
        return quantity_to_units(raw_quantity, self.get_pricing(kind).unit_granularity)

    def cost_for(self, kind: ResourceKind, units: int) -> int:
        """Cost of ``units`` of ``kind`` paid from the wallet."""
        return units_to_cost(units, self.get_pricing(kind).price_per_unit)


# 5.00 per started minute and per 70-character segment
DEFAULT_PRICE_TABLE = PriceTable({
    ResourceKind.CALL_MINUTES: ResourcePricing(unit_granularity=60, price_per_unit=500),
    ResourceKind.SMS_SEGMENTS: ResourcePricing(unit_granularity=70, price_per_unit=500),
})


def price_quantity(
    kind: ResourceKind,
    raw_quantity: int,
    table: PriceTable = DEFAULT_PRICE_TABLE,
) -> int:
    """Billable units for a raw quantity (seconds or characters) of ``kind``."""
    return table.units_for(kind, raw_quantity)
