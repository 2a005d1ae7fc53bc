"""
Pricing calculations and rate management.

Flat-fee proration, tiered usage pricing, bulk discounts and the
pay-as-you-go event pricing table.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import ValidationError
from .money import ZERO, round_money
from .proration import daily_proration


@dataclass(frozen=True)
class PricingTier:
    """A usage tier. limit is the cumulative upper bound; None means unbounded."""
    limit: Optional[int]
    price: Decimal


@dataclass(frozen=True)
class BulkDiscount:
    """Percentage off the base amount once quantity reaches min_quantity."""
    min_quantity: int
    discount_percentage: Decimal


class FlatFeePricer:
    """Prorated flat recurring fee."""

    def calculate(self, amount: Decimal, days_in_period: int, days_used: int) -> Decimal:
        return daily_proration(amount, days_in_period, days_used)


class TieredUsagePricer:
    """Graduated tier pricing.

    Units fill tiers from the lowest up and each tier's units are charged
    at that tier's price. A zero-price tier is a free allotment.
    """

    def __init__(self, tiers: Sequence[PricingTier]):
        if not tiers:
            raise ValidationError("At least one pricing tier is required", field="tiers")
        previous = 0
        for index, tier in enumerate(tiers):
            if tier.limit is None:
                if index != len(tiers) - 1:
                    raise ValidationError("Only the last tier may be unbounded", field="tiers")
                continue
            if tier.limit <= previous:
                raise ValidationError("Tier limits must be strictly ascending", field="tiers")
            previous = tier.limit
        self.tiers = list(tiers)

    def breakdown(self, usage: int) -> List[Tuple[int, int, Decimal]]:
        """Per-tier consumption as (tier_index, units, cost) for tiers reached."""
        if usage < 0:
            raise ValidationError("Usage cannot be negative", field="usage")

        consumed = []
        remaining = usage
        lower = 0
        for index, tier in enumerate(self.tiers):
            if remaining <= 0:
                break
            capacity = remaining if tier.limit is None else tier.limit - lower
            units = min(remaining, capacity)
            consumed.append((index, units, tier.price * units))
            remaining -= units
            if tier.limit is not None:
                lower = tier.limit
        return consumed

    def calculate(self, usage: int) -> Decimal:
        total = ZERO
        for _, _, cost in self.breakdown(usage):
            total += cost
        return total


def calculate_bulk_discount(
    base_amount: Decimal,
    quantity: int,
    discounts: Sequence[BulkDiscount],
) -> Decimal:
    """Discount for the last rule whose threshold the quantity meets (>=)."""
    discount = ZERO
    for rule in discounts:
        if quantity >= rule.min_quantity:
            discount = base_amount * rule.discount_percentage / Decimal(100)
    return discount


def tier_index_for(tiers: Sequence[PricingTier], quantity: int) -> Optional[int]:
    """1-based index of the tier a total quantity falls into."""
    for index, tier in enumerate(tiers):
        if tier.limit is None or quantity <= tier.limit:
            return index + 1
    return None


@dataclass(frozen=True)
class EventPricingConfig:
    """Pay-as-you-go pricing for one marketplace event type."""
    event_type: str
    base_price: Decimal
    tiers: Tuple[PricingTier, ...] = ()
    bulk_discounts: Tuple[BulkDiscount, ...] = ()


@dataclass(frozen=True)
class EventPricing:
    """Priced quantity of a marketplace event."""
    event_type: str
    quantity: int
    base_amount: Decimal
    discount_applied: Decimal
    final_amount: Decimal
    tier: Optional[int] = None


@dataclass(frozen=True)
class PricingTable:
    """Pricing configuration keyed by event type."""
    prices: Dict[str, EventPricingConfig] = field(default_factory=dict)

    def get_pricing(self, event_type: str) -> EventPricingConfig:
        """Get pricing for an event type.

        Raises:
            ValidationError: If the event type is not priced
        """
        if event_type not in self.prices:
            raise ValidationError(f"Invalid event type: {event_type}", field="event_type")
        return self.prices[event_type]

    @property
    def event_types(self) -> List[str]:
        return sorted(self.prices)


def _default_event_config(event_type: str) -> EventPricingConfig:
    return EventPricingConfig(
        event_type=event_type,
        base_price=Decimal("10.00"),
        tiers=(
            PricingTier(limit=100, price=Decimal("9.00")),
            PricingTier(limit=500, price=Decimal("8.50")),
            PricingTier(limit=None, price=Decimal("8.00")),
        ),
        bulk_discounts=(BulkDiscount(min_quantity=100, discount_percentage=Decimal("10")),),
    )


DEFAULT_EVENT_TYPES = ("project_posted", "freelancer_hired", "custom")

DEFAULT_PRICING_TABLE = PricingTable(
    {event_type: _default_event_config(event_type) for event_type in DEFAULT_EVENT_TYPES}
)


def calculate_event_pricing(
    event_type: str,
    quantity: int,
    table: PricingTable = DEFAULT_PRICING_TABLE,
) -> EventPricing:
    """Price a quantity of one event type.

    base = base_price * quantity; the bulk discount comes off the base.
    Both are rounded to four places (half-up).
    The tier index is reported for information only.

    Raises:
        ValidationError: If quantity <= 0 or the event type is unknown
    """
    if quantity <= 0:
        raise ValidationError("Event quantity must be greater than zero", field="quantity")
    config = table.get_pricing(event_type)

    base_amount = round_money(config.base_price * quantity)
    discount = round_money(calculate_bulk_discount(base_amount, quantity, config.bulk_discounts))
    tier = tier_index_for(config.tiers, quantity) if config.tiers else None

    return EventPricing(
        event_type=event_type,
        quantity=quantity,
        base_amount=base_amount,
        discount_applied=discount,
        final_amount=base_amount - discount,
        tier=tier,
    )


def total_event_cost(
    quantities: Dict[str, int],
    table: PricingTable = DEFAULT_PRICING_TABLE,
) -> Decimal:
    """Total cost across event types given the summed quantity per type."""
    total = ZERO
    for event_type, quantity in sorted(quantities.items()):
        if quantity <= 0:
            continue
        total += calculate_event_pricing(event_type, quantity, table).final_amount
    return total
