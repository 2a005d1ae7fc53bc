"""
Seat-based subscriptions.

Seat changes inside a billing period are prorated by the share of the
period still remaining; removing seats produces a negative amount.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Optional

import structlog

from ..storage.models import BillingFrequency, EntitySubscription
from ..storage.repository import BillingRepository, new_id
from .errors import NotFoundError, ValidationError
from .money import ZERO
from .periods import DateLike, add_months, add_years, as_datetime


@dataclass(frozen=True)
class SeatProration:
    days_in_period: int
    days_remaining: int
    proration_factor: Decimal
    base_amount: Decimal
    proration_amount: Decimal


@dataclass(frozen=True)
class SeatChange:
    previous_seat_count: int
    new_seat_count: int
    proration_amount: Decimal
    effective_date: DateLike
    next_billing_date: date


@dataclass(frozen=True)
class SeatUtilization:
    allocated_seats: int
    active_users: int
    utilization_percentage: Decimal
    over_allocated: bool


def days_between(start: DateLike, end: DateLike) -> int:
    """Whole days from start to end, rounding a partial day up."""
    delta = as_datetime(end) - as_datetime(start)
    if delta.seconds or delta.microseconds:
        return delta.days + 1
    return delta.days


def calculate_seat_proration(
    current_seat_count: int,
    new_seat_count: int,
    price_per_seat: Decimal,
    period_start: DateLike,
    period_end: DateLike,
    change_date: DateLike,
) -> SeatProration:
    """Prorate a seat change over the days left in the period."""
    days_in_period = days_between(period_start, period_end)
    if days_in_period <= 0:
        raise ValidationError("Billing period must span at least one day", field="period_end")
    days_remaining = max(0, days_between(change_date, period_end))

    factor = Decimal(days_remaining) / Decimal(days_in_period)
    seat_difference = new_seat_count - current_seat_count
    base_amount = price_per_seat * abs(seat_difference)
    amount = base_amount * factor

    return SeatProration(
        days_in_period=days_in_period,
        days_remaining=days_remaining,
        proration_factor=factor,
        base_amount=base_amount,
        proration_amount=amount if seat_difference >= 0 else -amount,
    )


def subscription_period_start(next_billing_date: date, frequency: BillingFrequency) -> date:
    if frequency == BillingFrequency.MONTHLY:
        return add_months(next_billing_date, -1)
    return add_years(next_billing_date, -1)


class SeatSubscriptionService:
    """Creates and resizes seat subscriptions."""

    def __init__(
        self,
        repository: BillingRepository,
        clock: Callable[[], datetime] = datetime.now,
        logger: Optional[Any] = None,
    ):
        self.repository = repository
        self.clock = clock
        self.log = logger or structlog.get_logger(__name__)

    def create_subscription(
        self,
        entity_id: str,
        frequency: BillingFrequency,
        seat_count: int,
        price_per_seat: Decimal,
    ) -> EntitySubscription:
        if seat_count <= 0:
            raise ValidationError("Seat count must be greater than zero", field="seat_count")
        if price_per_seat < ZERO:
            raise ValidationError("Price per seat cannot be negative", field="price_per_seat")

        today = self.clock().date()
        if frequency == BillingFrequency.MONTHLY:
            next_billing = add_months(today, 1)
        else:
            next_billing = add_years(today, 1)

        subscription = EntitySubscription(
            id=new_id(),
            entity_id=entity_id,
            frequency=frequency,
            seat_count=seat_count,
            price_per_seat=price_per_seat,
            next_billing_date=next_billing,
        )
        self.repository.insert_subscription(subscription)
        self.log.info(
            "subscription_created",
            entity_id=entity_id,
            frequency=frequency.value,
            seats=seat_count,
        )
        return subscription

    def get_subscription(self, entity_id: str) -> Optional[EntitySubscription]:
        return self.repository.get_active_subscription(entity_id)

    def update_seat_count(
        self,
        entity_id: str,
        new_seat_count: int,
        effective_date: Optional[DateLike] = None,
    ) -> SeatChange:
        """Resize the active subscription and return the prorated charge.

        Raises:
            NotFoundError: If the entity has no active subscription
            ValidationError: If new_seat_count is not positive
        """
        if new_seat_count <= 0:
            raise ValidationError("Seat count must be greater than zero", field="seat_count")
        subscription = self.repository.get_active_subscription(entity_id)
        if subscription is None:
            raise NotFoundError(f"No active subscription found for entity {entity_id}", entity_id=entity_id)

        effective = effective_date or self.clock()
        proration = calculate_seat_proration(
            subscription.seat_count,
            new_seat_count,
            subscription.price_per_seat,
            subscription_period_start(subscription.next_billing_date, subscription.frequency),
            subscription.next_billing_date,
            effective,
        )
        self.repository.update_subscription_seats(subscription.id, new_seat_count)
        self.log.info(
            "subscription_seats_updated",
            entity_id=entity_id,
            previous=subscription.seat_count,
            seats=new_seat_count,
        )
        return SeatChange(
            previous_seat_count=subscription.seat_count,
            new_seat_count=new_seat_count,
            proration_amount=proration.proration_amount,
            effective_date=effective,
            next_billing_date=subscription.next_billing_date,
        )

    def recommended_seat_count(self, entity_id: str) -> int:
        return self.repository.count_active_members(entity_id)

    def seat_utilization(self, entity_id: str) -> SeatUtilization:
        subscription = self.get_subscription(entity_id)
        active_users = self.recommended_seat_count(entity_id)
        allocated = subscription.seat_count if subscription else 0
        percentage = Decimal(active_users) / Decimal(allocated) * 100 if allocated else ZERO
        return SeatUtilization(
            allocated_seats=allocated,
            active_users=active_users,
            utilization_percentage=percentage,
            over_allocated=active_users > allocated,
        )
