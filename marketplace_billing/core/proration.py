"""
Proration calculations.

Pure date and amount arithmetic for partial billing periods, mid-cycle
plan changes and grace periods. Nothing here touches persistence.

Day counts are inclusive: a period from the 1st to the 30th is 30 days.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from .errors import ProrationError
from .money import ZERO
from .periods import DateLike, as_datetime, days_between_inclusive, days_in_month


class ProrationStrategy(Enum):
    """How a mid-cycle adjustment is billed."""
    DAILY = "daily"
    IMMEDIATE = "immediate"
    NEXT_CYCLE = "next_cycle"


class AdjustmentType(Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    ADD_ON = "add_on"
    REMOVAL = "removal"


@dataclass(frozen=True)
class ProrationPeriod:
    """A span of the billing period charged at a fixed amount."""
    start_date: DateLike
    end_date: DateLike
    amount: Decimal


@dataclass(frozen=True)
class PlanChange:
    change_date: DateLike
    old_plan_amount: Decimal
    new_plan_amount: Decimal
    reason: Optional[str] = None


@dataclass(frozen=True)
class ProrationDetails:
    total_days_in_period: int
    days_on_old_plan: int
    days_on_new_plan: int
    effective_date: DateLike


@dataclass(frozen=True)
class ProrationResult:
    """Outcome of a mid-cycle plan change.

    Exactly one of charge_due / credit_due is set. credit_due is always
    a magnitude (non-negative).
    """
    old_plan_charge: Decimal
    new_plan_charge: Decimal
    total: Decimal
    details: ProrationDetails
    charge_due: Optional[Decimal] = None
    credit_due: Optional[Decimal] = None


@dataclass(frozen=True)
class PlanChangeProration:
    old_plan_charge: Decimal
    new_plan_charge: Decimal
    total: Decimal
    savings: Decimal  # positive when the change costs more than staying


@dataclass(frozen=True)
class MidCycleAdjustment:
    adjustment_type: AdjustmentType
    adjustment_date: DateLike
    old_amount: Decimal
    new_amount: Decimal
    strategy: ProrationStrategy = ProrationStrategy.DAILY


@dataclass
class AdjustmentSummary:
    total_adjustments: Decimal
    final_amount: Decimal
    breakdown: List[ProrationResult] = field(default_factory=list)


@dataclass(frozen=True)
class UsageProration:
    prorated_usage: Decimal
    usage_ratio: Decimal
    effective_start: DateLike
    effective_end: DateLike
    effective_days: int


@dataclass(frozen=True)
class GraceProration:
    prorated_amount: Decimal
    grace_period_applied: bool
    effective_start: DateLike
    effective_end: DateLike
    effective_days: int


def validate_proration_inputs(total_days: int, used_days: int) -> None:
    """Validate day counts.

    Raises:
        ProrationError: If total_days <= 0 or used_days is outside [0, total_days]
    """
    if total_days <= 0:
        raise ProrationError("Total days must be greater than zero", field="total_days")
    if used_days < 0:
        raise ProrationError("Used days cannot be negative", field="used_days")
    if used_days > total_days:
        raise ProrationError("Used days cannot exceed total days", field="used_days")


def daily_proration(amount: Decimal, total_days: int, used_days: int) -> Decimal:
    """Prorate an amount by days used: amount * used_days / total_days.

    A full period returns the exact input amount and an unused period
    returns zero, so neither case accumulates rounding drift.
    """
    validate_proration_inputs(total_days, used_days)
    if used_days == 0:
        return ZERO
    if used_days == total_days:
        return amount
    return amount * Decimal(used_days) / Decimal(total_days)


def date_based_proration(
    amount: Decimal,
    period_start: DateLike,
    period_end: DateLike,
    actual_start: DateLike,
    actual_end: DateLike,
) -> Decimal:
    """Prorate an amount for the part of a period that service was active.

    The actual service window is clipped to the billing period; no
    overlap yields zero.
    """
    if as_datetime(period_start) >= as_datetime(period_end):
        raise ProrationError("Start date must be before end date", field="period_start")
    if as_datetime(actual_start) > as_datetime(actual_end):
        raise ProrationError("Actual start date must be before actual end date", field="actual_start")

    total_days = days_between_inclusive(period_start, period_end)
    usage_start = max(as_datetime(actual_start), as_datetime(period_start))
    usage_end = min(as_datetime(actual_end), as_datetime(period_end))
    if usage_start >= usage_end:
        return ZERO

    used_days = days_between_inclusive(usage_start, usage_end)
    return daily_proration(amount, total_days, used_days)


def multi_period_proration(periods: List[ProrationPeriod]) -> Decimal:
    """Sum the amounts of every period that spans at least one day."""
    if not periods:
        raise ProrationError("At least one proration period must be provided", field="periods")
    total = ZERO
    for period in periods:
        if days_between_inclusive(period.start_date, period.end_date) > 0:
            total += period.amount
    return total


def plan_change_proration(
    old_plan_amount: Decimal,
    new_plan_amount: Decimal,
    total_days: int,
    days_on_old_plan: int,
    days_on_new_plan: int,
) -> PlanChangeProration:
    """Split a period between two plans by an explicit day count."""
    validate_proration_inputs(total_days, days_on_old_plan)
    validate_proration_inputs(total_days, days_on_new_plan)
    if days_on_old_plan + days_on_new_plan != total_days:
        raise ProrationError(
            "Days on old plan plus days on new plan must equal total days in period",
            field="days_on_new_plan",
        )

    old_charge = daily_proration(old_plan_amount, total_days, days_on_old_plan)
    new_charge = daily_proration(new_plan_amount, total_days, days_on_new_plan)
    total = old_charge + new_charge
    return PlanChangeProration(
        old_plan_charge=old_charge,
        new_plan_charge=new_charge,
        total=total,
        savings=total - old_plan_amount,
    )


def monthly_proration(amount: Decimal, year: int, month: int, used_days: int) -> Decimal:
    """Prorate over the actual length of a calendar month (leap-year aware)."""
    return daily_proration(amount, days_in_month(year, month), used_days)


def mid_cycle_plan_change(
    change: PlanChange,
    period_start: DateLike,
    period_end: DateLike,
) -> ProrationResult:
    """Prorate a plan change that happens inside a billing period.

    Days on the old plan run inclusively from period start to the change
    date; the rest of the period is on the new plan. The price difference
    prorated over the new-plan days is a charge for upgrades and a credit
    (magnitude only) otherwise.
    """
    total_days = days_between_inclusive(period_start, period_end)
    days_on_old = days_between_inclusive(period_start, change.change_date)
    days_on_new = total_days - days_on_old

    old_charge = daily_proration(change.old_plan_amount, total_days, days_on_old)
    new_charge = daily_proration(change.new_plan_amount, total_days, days_on_new)

    is_upgrade = change.new_plan_amount > change.old_plan_amount
    adjustment = daily_proration(
        change.new_plan_amount - change.old_plan_amount, total_days, days_on_new
    )

    return ProrationResult(
        old_plan_charge=old_charge,
        new_plan_charge=new_charge,
        total=old_charge + new_charge,
        details=ProrationDetails(
            total_days_in_period=total_days,
            days_on_old_plan=days_on_old,
            days_on_new_plan=days_on_new,
            effective_date=change.change_date,
        ),
        charge_due=adjustment if is_upgrade else None,
        credit_due=None if is_upgrade else abs(adjustment),
    )


def process_mid_cycle_adjustments(
    adjustments: List[MidCycleAdjustment],
    period_start: DateLike,
    period_end: DateLike,
    base_plan_amount: Decimal,
) -> AdjustmentSummary:
    """Apply a batch of adjustments in date order.

    NEXT_CYCLE adjustments are skipped. Charges add to the running total
    and credits subtract from it.
    """
    summary = AdjustmentSummary(total_adjustments=ZERO, final_amount=base_plan_amount)
    ordered = sorted(adjustments, key=lambda a: as_datetime(a.adjustment_date))

    for adjustment in ordered:
        if adjustment.strategy == ProrationStrategy.NEXT_CYCLE:
            continue
        result = mid_cycle_plan_change(
            PlanChange(
                change_date=adjustment.adjustment_date,
                old_plan_amount=adjustment.old_amount,
                new_plan_amount=adjustment.new_amount,
                reason=f"{adjustment.adjustment_type.value} adjustment",
            ),
            period_start,
            period_end,
        )
        summary.breakdown.append(result)
        if result.charge_due is not None:
            summary.total_adjustments += result.charge_due
        if result.credit_due is not None:
            summary.total_adjustments -= result.credit_due

    summary.final_amount = base_plan_amount + summary.total_adjustments
    return summary


def usage_proration(
    total_usage: Decimal,
    usage_start: DateLike,
    usage_end: DateLike,
    period_start: DateLike,
    period_end: DateLike,
) -> UsageProration:
    """Scale usage by the share of the billing period it overlaps."""
    effective_start = max(as_datetime(usage_start), as_datetime(period_start))
    effective_end = min(as_datetime(usage_end), as_datetime(period_end))

    if effective_start >= effective_end:
        return UsageProration(ZERO, ZERO, effective_start, effective_end, 0)

    period_days = days_between_inclusive(period_start, period_end)
    effective_days = days_between_inclusive(effective_start, effective_end)
    ratio = Decimal(effective_days) / Decimal(period_days)
    return UsageProration(
        prorated_usage=Decimal(total_usage) * ratio,
        usage_ratio=ratio,
        effective_start=effective_start,
        effective_end=effective_end,
        effective_days=effective_days,
    )


def subscription_proration_with_grace(
    amount: Decimal,
    actual_start: DateLike,
    actual_end: DateLike,
    period_start: DateLike,
    period_end: DateLike,
    grace_period_days: int = 0,
) -> GraceProration:
    """Prorate a subscription whose start is pulled back by a grace period."""
    grace_start = as_datetime(actual_start) - timedelta(days=grace_period_days)
    effective_start = max(grace_start, as_datetime(period_start))
    effective_end = min(as_datetime(actual_end), as_datetime(period_end))

    total_days = days_between_inclusive(period_start, period_end)
    used_days = days_between_inclusive(effective_start, effective_end)

    return GraceProration(
        prorated_amount=daily_proration(amount, total_days, used_days),
        grace_period_applied=grace_start < as_datetime(actual_start),
        effective_start=effective_start,
        effective_end=effective_end,
        effective_days=used_days,
    )
