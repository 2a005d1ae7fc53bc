"""
Credit ledger.

Per-customer credits are applied to invoices in priority order: credit
type first (promotional, refund, manual, adjustment), then oldest first.
A partially consumed credit is split: the original is marked applied and
a new credit carries the remainder, so value is never created or lost.

Entity-level balances back the pay-as-you-go credit model. Deductions
that cannot be made come back as results with a reason instead of
raising, so callers can fall back to invoicing.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from ..storage.models import Credit, CreditType, EntityCreditBalance
from ..storage.repository import BillingRepository, new_id
from .errors import DataIntegrityError, ValidationError
from .events import (
    CreditsApplied,
    CreditsDeducted,
    CreditsPurchased,
    CreditsReversed,
    EventSink,
    publish_safely,
)
from .money import ZERO, round_money, sum_amounts, to_decimal_string

EXPIRING_SOON_DAYS = 30

NO_BALANCE = "No credit balance found for entity"
INSUFFICIENT_CREDITS = "Insufficient credits"
EXCEEDS_USER_LIMIT = "Credit amount exceeds user limit"


@dataclass(frozen=True)
class CreditApplication:
    """How much of one credit went to an invoice."""
    credit_id: str
    credit_type: CreditType
    original_amount: Decimal
    applied_amount: Decimal

    @property
    def remaining_amount(self) -> Decimal:
        return self.original_amount - self.applied_amount

    @property
    def fully_consumed(self) -> bool:
        return self.applied_amount == self.original_amount


@dataclass(frozen=True)
class CreditApplicationResult:
    total_applied: Decimal
    remaining_invoice_amount: Decimal
    applications: List[CreditApplication] = field(default_factory=list)
    expired_credit_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class CreditDeductionResult:
    success: bool
    deducted_amount: Decimal
    remaining_balance: Decimal
    reason: Optional[str] = None


@dataclass(frozen=True)
class CreditBalanceEntry:
    credit_id: str
    credit_type: CreditType
    amount: Decimal
    remaining_amount: Decimal
    expires_at: Optional[datetime]
    applied_at: Optional[datetime]


@dataclass(frozen=True)
class CreditBalance:
    total_available: Decimal
    total_applied: Decimal
    total_expired: Decimal
    breakdown: List[CreditBalanceEntry] = field(default_factory=list)


@dataclass(frozen=True)
class CreditAnalytics:
    total_issued: Decimal
    total_applied: Decimal
    total_expired: Decimal
    applications_by_type: Dict[CreditType, Decimal]
    average_application_amount: Decimal
    utilization_rate: Decimal  # percent of issued value that was applied


def sort_credits(credits: Iterable[Credit]) -> List[Credit]:
    """Order credits for application: type priority, then creation time."""
    return sorted(credits, key=lambda c: (c.credit_type.priority, c.created_at))


def split_expired(credits: Iterable[Credit], now: datetime) -> Tuple[List[Credit], List[Credit]]:
    """Partition credits into (valid, expired) at a point in time."""
    valid = []
    expired = []
    for credit in credits:
        if credit.expires_at is not None and credit.expires_at <= now:
            expired.append(credit)
        else:
            valid.append(credit)
    return valid, expired


def plan_credit_application(credits: Iterable[Credit], amount: Decimal) -> CreditApplicationResult:
    """Decide how credits cover an amount without touching storage.

    The amount is rounded to four places first. Only unapplied positive
    credits are considered. Each credit in priority order contributes
    min(credit amount, remaining amount) until nothing remains.
    """
    remaining = round_money(amount) if amount > ZERO else ZERO
    applications = []
    for credit in sort_credits(c for c in credits if c.is_available and c.amount > ZERO):
        if remaining <= ZERO:
            break
        applied = min(credit.amount, remaining)
        applications.append(
            CreditApplication(
                credit_id=credit.id,
                credit_type=credit.credit_type,
                original_amount=credit.amount,
                applied_amount=applied,
            )
        )
        remaining -= applied

    return CreditApplicationResult(
        total_applied=sum_amounts(a.applied_amount for a in applications),
        remaining_invoice_amount=remaining,
        applications=applications,
    )


class CreditLedger:
    """Customer credits and entity credit balances.

    Args:
        repository: Billing repository
        events: Optional sink for ledger events
        clock: Returns the current time; injectable for tests
        refund_expiration_days: Lifetime of refund credits
        promotional_expiration_days: Default lifetime of promotional credits
        logger: Optional structlog logger
    """

    def __init__(
        self,
        repository: BillingRepository,
        events: Optional[EventSink] = None,
        clock: Callable[[], datetime] = datetime.now,
        refund_expiration_days: int = 365,
        promotional_expiration_days: int = 90,
        logger: Optional[Any] = None,
    ):
        self.repository = repository
        self.events = events
        self.clock = clock
        self.refund_expiration_days = refund_expiration_days
        self.promotional_expiration_days = promotional_expiration_days
        self.log = logger or structlog.get_logger(__name__)

    # Customer credits

    def create_credit(
        self,
        customer_id: str,
        amount: Decimal,
        credit_type: CreditType,
        description: str,
        expiration_days: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Credit:
        now = self.clock()
        credit = Credit(
            id=new_id(),
            customer_id=customer_id,
            amount=round_money(amount),
            credit_type=credit_type,
            description=description,
            created_at=now,
            expires_at=now + timedelta(days=expiration_days) if expiration_days else None,
            metadata=dict(metadata or {}),
        )
        self.repository.insert_credit(credit)
        self.log.info(
            "credit_created",
            credit_id=credit.id,
            customer_id=customer_id,
            credit_type=credit_type.value,
            amount=to_decimal_string(amount),
        )
        return credit

    def issue_refund_credit(
        self,
        customer_id: str,
        amount: Decimal,
        original_invoice_id: str,
        reason: str,
    ) -> Credit:
        return self.create_credit(
            customer_id,
            amount,
            CreditType.REFUND,
            f"Refund for invoice: {reason}",
            expiration_days=self.refund_expiration_days,
            metadata={
                "original_invoice_id": original_invoice_id,
                "refund_reason": reason,
                "issued_at": self.clock().isoformat(),
            },
        )

    def issue_promotional_credit(
        self,
        customer_id: str,
        amount: Decimal,
        promotion_name: str,
        expiration_days: Optional[int] = None,
    ) -> Credit:
        return self.create_credit(
            customer_id,
            amount,
            CreditType.PROMOTIONAL,
            f"Promotional credit: {promotion_name}",
            expiration_days=expiration_days or self.promotional_expiration_days,
            metadata={
                "promotion_name": promotion_name,
                "issued_at": self.clock().isoformat(),
            },
        )

    def transfer_credit(
        self,
        from_customer_id: str,
        to_customer_id: str,
        amount: Decimal,
        reason: str,
    ) -> Tuple[CreditApplicationResult, Credit]:
        """Move credit value from one customer to another.

        The source customer's credits are consumed in application order,
        splitting the last one if needed, and the destination receives a
        single ADJUSTMENT credit for the same amount.

        Returns:
            (consumed, credit): the source credits used and the new
            destination credit

        Raises:
            ValidationError: If amount is not positive or exceeds the
                source customer's available credits
        """
        if amount <= ZERO:
            raise ValidationError("Transfer amount must be greater than zero", field="amount")
        amount = round_money(amount)

        with self.repository.transaction():
            now = self.clock()
            available = self.available_credits(from_customer_id)
            plan = plan_credit_application(available, amount)
            if plan.total_applied < amount:
                raise ValidationError(
                    f"Insufficient credits for transfer: available {to_decimal_string(plan.total_applied)}",
                    field="amount",
                )

            by_id = {c.id: c for c in available}
            for application in plan.applications:
                self._record_application(
                    by_id[application.credit_id],
                    application,
                    now,
                    usage={"transferred_to": to_customer_id, "transfer_reason": reason},
                    split={"split_from_transfer": to_customer_id},
                )
            credit = self.create_credit(
                to_customer_id,
                amount,
                CreditType.ADJUSTMENT,
                f"Credit transfer from customer: {reason}",
                metadata={
                    "transfer_from": from_customer_id,
                    "transfer_reason": reason,
                    "source_credit_ids": [a.credit_id for a in plan.applications],
                },
            )

        self.log.info(
            "credits_transferred",
            from_customer_id=from_customer_id,
            to_customer_id=to_customer_id,
            amount=to_decimal_string(amount),
        )
        return plan, credit

    def available_credits(self, customer_id: str) -> List[Credit]:
        """Unapplied, unexpired positive credits in application order."""
        valid, _ = split_expired(self.repository.list_unapplied_credits(customer_id), self.clock())
        return sort_credits(c for c in valid if c.amount > ZERO)

    def apply_credits_to_invoice(
        self,
        customer_id: str,
        invoice_total: Decimal,
        invoice_id: Optional[str] = None,
    ) -> CreditApplicationResult:
        """Apply a customer's credits against an invoice total.

        Without an invoice_id nothing is written and the result is a
        preview. With one, expired credits are marked expired and each
        application is recorded against the invoice; a partial application
        splits the credit. Call inside the invoice's transaction so the
        ledger and the invoice commit together.

        Args:
            customer_id: Customer whose credits are used
            invoice_total: Amount to cover (subtotal minus discount)
            invoice_id: Invoice the credits are applied to

        Returns:
            CreditApplicationResult with per-credit applications
        """
        now = self.clock()
        unapplied = [c for c in self.repository.list_unapplied_credits(customer_id) if c.amount > ZERO]
        valid, expired = split_expired(unapplied, now)
        plan = plan_credit_application(valid, invoice_total)

        if invoice_id is None:
            return CreditApplicationResult(
                total_applied=plan.total_applied,
                remaining_invoice_amount=plan.remaining_invoice_amount,
                applications=plan.applications,
                expired_credit_ids=[c.id for c in expired],
            )

        by_id = {c.id: c for c in valid}
        with self.repository.transaction():
            for credit in expired:
                self.repository.mark_credit_applied(
                    credit.id,
                    now,
                    {**credit.metadata, "expired_at": now.isoformat(), "expired_reason": "Credit expired"},
                )
            for application in plan.applications:
                self._record_application(
                    by_id[application.credit_id],
                    application,
                    now,
                    usage={"applied_to_invoice": invoice_id},
                    split={"split_from_application": invoice_id},
                )

        if expired:
            self.log.info("credits_expired", customer_id=customer_id, count=len(expired))
        if plan.total_applied > ZERO:
            self.log.info(
                "credits_applied",
                customer_id=customer_id,
                invoice_id=invoice_id,
                amount=to_decimal_string(plan.total_applied),
                credits=len(plan.applications),
            )
            publish_safely(
                self.events,
                CreditsApplied(
                    customer_id=customer_id,
                    invoice_id=invoice_id,
                    amount=plan.total_applied,
                    credit_ids=[a.credit_id for a in plan.applications],
                ),
                self.log,
            )

        return CreditApplicationResult(
            total_applied=plan.total_applied,
            remaining_invoice_amount=plan.remaining_invoice_amount,
            applications=plan.applications,
            expired_credit_ids=[c.id for c in expired],
        )

    def _record_application(
        self,
        credit: Credit,
        application: CreditApplication,
        now: datetime,
        usage: Dict[str, Any],
        split: Dict[str, Any],
    ) -> None:
        metadata = {
            **credit.metadata,
            **usage,
            "applied_amount": to_decimal_string(application.applied_amount),
            "fully_consumed": application.fully_consumed,
        }
        if not application.fully_consumed:
            remainder = Credit(
                id=new_id(),
                customer_id=credit.customer_id,
                amount=application.remaining_amount,
                credit_type=credit.credit_type,
                description=f"{credit.description} (remaining balance)",
                created_at=credit.created_at,
                expires_at=credit.expires_at,
                metadata={
                    **credit.metadata,
                    "original_credit_id": credit.id,
                    **split,
                },
            )
            self.repository.insert_credit(remainder)
            metadata["split_remaining_credit_created"] = True
        self.repository.mark_credit_applied(credit.id, now, metadata)

    def reverse_credit_application(self, invoice_id: str, reason: str) -> List[Credit]:
        """Give back credits applied to an invoice as new adjustment credits.

        History is never rewritten: each applied credit produces a new
        ADJUSTMENT credit for the amount it contributed to the invoice.
        """
        applied = self.repository.find_credits_applied_to_invoice(invoice_id)
        reversals = []
        with self.repository.transaction():
            for credit in applied:
                amount = _applied_amount(credit)
                reversals.append(
                    self.create_credit(
                        credit.customer_id,
                        amount,
                        CreditType.ADJUSTMENT,
                        f"Reversal of credit application: {reason}",
                        metadata={
                            "original_credit_id": credit.id,
                            "reversal_reason": reason,
                            "reversed_invoice_id": invoice_id,
                            "reversed_at": self.clock().isoformat(),
                        },
                    )
                )

        if reversals:
            total = sum_amounts(c.amount for c in reversals)
            self.log.info(
                "credits_reversed",
                invoice_id=invoice_id,
                amount=to_decimal_string(total),
                reason=reason,
            )
            publish_safely(
                self.events,
                CreditsReversed(
                    customer_id=reversals[0].customer_id,
                    invoice_id=invoice_id,
                    amount=total,
                    reason=reason,
                ),
                self.log,
            )
        return reversals

    def get_credit_balance(self, customer_id: str) -> CreditBalance:
        """Available, applied and expired totals with a per-credit breakdown."""
        now = self.clock()
        total_available = ZERO
        total_applied = ZERO
        total_expired = ZERO
        breakdown = []

        for credit in self.repository.list_credits(customer_id):
            is_expired = _is_expired(credit, now)
            if is_expired:
                total_expired += credit.amount
            elif not credit.is_available:
                total_applied += _applied_amount(credit)
            else:
                total_available += credit.amount

            breakdown.append(
                CreditBalanceEntry(
                    credit_id=credit.id,
                    credit_type=credit.credit_type,
                    amount=credit.amount,
                    remaining_amount=credit.amount if credit.is_available and not is_expired else ZERO,
                    expires_at=credit.expires_at,
                    applied_at=credit.applied_at,
                )
            )

        return CreditBalance(total_available, total_applied, total_expired, breakdown)

    def get_credit_analytics(
        self,
        customer_id: str,
        from_date: datetime,
        to_date: datetime,
    ) -> CreditAnalytics:
        """Issued, applied and expired credit value created in a date range."""
        now = self.clock()
        total_issued = ZERO
        total_applied = ZERO
        total_expired = ZERO
        by_type = {credit_type: ZERO for credit_type in CreditType}
        applications = 0

        for credit in self.repository.list_credits(customer_id, from_date, to_date):
            total_issued += credit.amount
            if _is_expired(credit, now):
                total_expired += credit.amount
            elif not credit.is_available:
                applied = _applied_amount(credit)
                total_applied += applied
                by_type[credit.credit_type] += applied
                applications += 1

        average = total_applied / applications if applications else ZERO
        rate = total_applied / total_issued * 100 if total_issued > ZERO else ZERO
        return CreditAnalytics(
            total_issued=total_issued,
            total_applied=total_applied,
            total_expired=total_expired,
            applications_by_type=by_type,
            average_application_amount=average,
            utilization_rate=rate,
        )

    # Entity credit balances

    def get_entity_balance(self, entity_id: str) -> Optional[EntityCreditBalance]:
        """Entity balance, or None if the entity never bought credits.

        Raises:
            DataIntegrityError: If used credits exceed total credits
        """
        balance = self.repository.get_entity_balance(entity_id)
        if balance is not None:
            _check_balance(balance)
        return balance

    def purchase_entity_credits(
        self,
        entity_id: str,
        amount: Decimal,
        validity_days: int,
    ) -> EntityCreditBalance:
        """Add purchased credits to an entity; expiry moves to the latest purchase."""
        if amount <= ZERO:
            raise ValidationError("Credit amount must be greater than zero", field="amount")
        expires_at = self.clock() + timedelta(days=validity_days)
        with self.repository.transaction():
            current = self.repository.get_entity_balance(entity_id)
            balance = EntityCreditBalance(
                entity_id=entity_id,
                total_credits=(current.total_credits if current else ZERO) + amount,
                used_credits=current.used_credits if current else ZERO,
                expires_at=expires_at,
            )
            self.repository.save_entity_balance(balance)

        self.log.info("entity_credits_purchased", entity_id=entity_id, amount=to_decimal_string(amount))
        publish_safely(self.events, CreditsPurchased(entity_id, amount, expires_at), self.log)
        return balance

    def deduct_entity_credits(
        self,
        entity_id: str,
        amount: Decimal,
        user_credit_limit: Optional[Decimal] = None,
    ) -> CreditDeductionResult:
        """Deduct credits from an entity balance if it can cover the amount.

        The balance check and the increment run in one write transaction,
        so two concurrent deductions cannot both spend the same credits.

        Args:
            entity_id: Entity to charge
            amount: Credits to deduct
            user_credit_limit: Per-user cap; ignored unless positive

        Returns:
            CreditDeductionResult; on failure success is False and reason
            explains why

        Raises:
            ValidationError: If amount is not positive
            DataIntegrityError: If the stored balance has used > total
        """
        if amount <= ZERO:
            raise ValidationError("Credit amount must be greater than zero", field="amount")

        with self.repository.transaction():
            balance = self.repository.get_entity_balance(entity_id)
            if balance is None:
                return CreditDeductionResult(False, ZERO, ZERO, NO_BALANCE)
            _check_balance(balance)

            available = balance.available_credits
            if available < amount:
                return CreditDeductionResult(False, ZERO, available, INSUFFICIENT_CREDITS)
            if user_credit_limit is not None and user_credit_limit > ZERO and amount > user_credit_limit:
                return CreditDeductionResult(False, ZERO, available, EXCEEDS_USER_LIMIT)

            self.repository.save_entity_balance(
                EntityCreditBalance(
                    entity_id=entity_id,
                    total_credits=balance.total_credits,
                    used_credits=balance.used_credits + amount,
                    expires_at=balance.expires_at,
                )
            )

        remaining = available - amount
        self.log.info(
            "entity_credits_deducted",
            entity_id=entity_id,
            amount=to_decimal_string(amount),
            remaining=to_decimal_string(remaining),
        )
        publish_safely(self.events, CreditsDeducted(entity_id, amount, remaining), self.log)
        return CreditDeductionResult(True, amount, remaining)

    def has_expiring_credits(self, entity_id: str, within_days: int = EXPIRING_SOON_DAYS) -> bool:
        """True if the entity's credits expire within the given number of days."""
        balance = self.repository.get_entity_balance(entity_id)
        if balance is None or balance.expires_at is None:
            return False
        return balance.expires_at <= self.clock() + timedelta(days=within_days)


def _is_expired(credit: Credit, now: datetime) -> bool:
    if "expired_reason" in credit.metadata:
        return True
    return credit.is_available and credit.expires_at is not None and credit.expires_at <= now


def _applied_amount(credit: Credit) -> Decimal:
    return Decimal(credit.metadata.get("applied_amount", str(credit.amount)))


def _check_balance(balance: EntityCreditBalance) -> None:
    if balance.used_credits > balance.total_credits:
        raise DataIntegrityError(
            "Used credits exceed total credits",
            entity_id=balance.entity_id,
            used_credits=to_decimal_string(balance.used_credits),
            total_credits=to_decimal_string(balance.total_credits),
        )
