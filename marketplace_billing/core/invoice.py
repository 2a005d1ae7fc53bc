"""
Invoice computation and generation.

An invoice is composed of a base fee, usage overage above the committed
calls, an early-cycle discount and the credits applied from the ledger.
Exactly one invoice exists per (contract, period_start, period_end).
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from ..storage.models import Contract, Credit, Invoice, InvoiceLine, InvoiceStatus, LineType
from ..storage.repository import BillingRepository, new_id
from .errors import ValidationError
from .events import EventSink, InvoiceCreated, publish_safely
from .ledger import CreditLedger, plan_credit_application
from .money import ZERO, round_money, to_decimal_string

DEFAULT_NUMBER_PREFIX = "INV"
DEFAULT_DUE_DAYS = 30
DEFAULT_CURRENCY = "USD"
MAX_DISCOUNTED_CYCLES = 3


@dataclass(frozen=True)
class InvoiceAmounts:
    """Computed invoice totals and line items.

    discount_amount and credit_amount are magnitudes; their lines carry
    negative amounts.
    """
    subtotal: Decimal
    discount_amount: Decimal
    credit_amount: Decimal
    total: Decimal
    line_items: List[InvoiceLine] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with four-digit decimal strings."""
        return {
            "subtotal": to_decimal_string(self.subtotal),
            "discountAmount": to_decimal_string(self.discount_amount),
            "creditAmount": to_decimal_string(self.credit_amount),
            "total": to_decimal_string(self.total),
            "lineItems": [
                {
                    "type": line.line_type.value,
                    "description": line.description,
                    "quantity": line.quantity,
                    "unitAmount": to_decimal_string(line.unit_amount),
                    "amount": to_decimal_string(line.amount),
                }
                for line in self.line_items
            ],
        }


def format_invoice_number(prefix: str, year: int, sequence: int) -> str:
    return f"{prefix}-{year}-{sequence:06d}"


def _format_rate(rate: Decimal) -> str:
    text = format(rate * 100, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return f"{text}%"


def _charge_lines(
    contract: Contract,
    usage: int,
    billing_cycle: int,
    max_discounted_cycles: int,
) -> Tuple[List[InvoiceLine], Decimal, Decimal]:
    if usage < 0:
        raise ValidationError("Usage cannot be negative", field="usage")

    lines = []
    base_fee = round_money(contract.base_fee)
    subtotal = ZERO

    if base_fee != ZERO:
        lines.append(
            InvoiceLine(
                line_type=LineType.BASE_FEE,
                description="Base fee",
                quantity=1,
                unit_amount=base_fee,
                amount=base_fee,
            )
        )
        subtotal += base_fee

    overage_units = max(0, usage - contract.min_commit_calls)
    if overage_units > 0:
        overage = round_money(contract.call_overage_fee * overage_units)
        lines.append(
            InvoiceLine(
                line_type=LineType.USAGE_OVERAGE,
                description=f"Usage overage ({overage_units} calls above {contract.min_commit_calls} committed)",
                quantity=overage_units,
                unit_amount=contract.call_overage_fee,
                amount=overage,
            )
        )
        subtotal += overage

    discount = ZERO
    if contract.discount_rate > ZERO and billing_cycle <= max_discounted_cycles:
        discount = round_money(subtotal * contract.discount_rate)
        lines.append(
            InvoiceLine(
                line_type=LineType.DISCOUNT,
                description=f"Discount ({_format_rate(contract.discount_rate)}, cycle {billing_cycle})",
                quantity=1,
                unit_amount=-discount,
                amount=-discount,
            )
        )

    return lines, subtotal, discount


def _with_credit(
    lines: List[InvoiceLine],
    subtotal: Decimal,
    discount: Decimal,
    credit: Decimal,
) -> InvoiceAmounts:
    line_items = list(lines)
    if credit > ZERO:
        line_items.append(
            InvoiceLine(
                line_type=LineType.CREDIT,
                description="Credits applied",
                quantity=1,
                unit_amount=-credit,
                amount=-credit,
            )
        )
    line_items = [
        InvoiceLine(
            line_type=line.line_type,
            description=line.description,
            quantity=line.quantity,
            unit_amount=line.unit_amount,
            amount=line.amount,
            position=position,
        )
        for position, line in enumerate(line_items)
    ]
    return InvoiceAmounts(
        subtotal=subtotal,
        discount_amount=discount,
        credit_amount=credit,
        total=subtotal - discount - credit,
        line_items=line_items,
    )


def calculate_invoice_amounts(
    contract: Contract,
    usage: int,
    billing_cycle: int,
    credits: Iterable[Credit] = (),
    max_discounted_cycles: int = MAX_DISCOUNTED_CYCLES,
) -> InvoiceAmounts:
    """Compute invoice totals and lines with no side effects.

    Args:
        contract: Contract being billed
        usage: Calls used in the period
        billing_cycle: 1-based cycle number; the discount applies while
            it is at most max_discounted_cycles
        credits: Credits available to offset the invoice
        max_discounted_cycles: Number of early cycles that get the discount

    Returns:
        InvoiceAmounts

    Raises:
        ValidationError: If usage is negative
    """
    lines, subtotal, discount = _charge_lines(contract, usage, billing_cycle, max_discounted_cycles)
    plan = plan_credit_application(credits, subtotal - discount)
    return _with_credit(lines, subtotal, discount, plan.total_applied)


class InvoiceGenerator:
    """Persists invoices, applying ledger credits in the same transaction."""

    def __init__(
        self,
        repository: BillingRepository,
        ledger: CreditLedger,
        events: Optional[EventSink] = None,
        clock: Callable[[], datetime] = datetime.now,
        number_prefix: str = DEFAULT_NUMBER_PREFIX,
        due_days: int = DEFAULT_DUE_DAYS,
        currency: str = DEFAULT_CURRENCY,
        max_discounted_cycles: int = MAX_DISCOUNTED_CYCLES,
        logger: Optional[Any] = None,
    ):
        self.repository = repository
        self.ledger = ledger
        self.events = events
        self.clock = clock
        self.number_prefix = number_prefix
        self.due_days = due_days
        self.currency = currency
        self.max_discounted_cycles = max_discounted_cycles
        self.log = logger or structlog.get_logger(__name__)

    def calculate_invoice_amounts(self, contract: Contract, usage: int, billing_cycle: int) -> InvoiceAmounts:
        """Preview an invoice against the customer's current credits. Writes nothing."""
        return calculate_invoice_amounts(
            contract,
            usage,
            billing_cycle,
            credits=self.ledger.available_credits(contract.customer_id),
            max_discounted_cycles=self.max_discounted_cycles,
        )

    def generate_invoice(
        self,
        contract: Contract,
        usage: int,
        period_start: date,
        period_end: date,
        billing_cycle: int,
    ) -> Invoice:
        """Create the invoice for a contract period, or return the existing one.

        The invoice header, its lines, the credit applications and the
        invoice number are written in one transaction; a failure leaves
        none of them behind.
        """
        existing = self.repository.find_invoice(contract.id, period_start, period_end)
        if existing is not None:
            self.log.info("invoice_exists", invoice_id=existing.id, contract_id=contract.id)
            return existing

        with self.repository.transaction():
            existing = self.repository.find_invoice(contract.id, period_start, period_end)
            if existing is not None:
                return existing

            lines, subtotal, discount = _charge_lines(
                contract, usage, billing_cycle, self.max_discounted_cycles
            )
            invoice_id = new_id()
            applied = self.ledger.apply_credits_to_invoice(
                contract.customer_id, subtotal - discount, invoice_id
            )
            amounts = _with_credit(lines, subtotal, discount, applied.total_applied)

            now = self.clock()
            sequence = self.repository.next_invoice_sequence(now.year)
            invoice = Invoice(
                id=invoice_id,
                number=format_invoice_number(self.number_prefix, now.year, sequence),
                customer_id=contract.customer_id,
                contract_id=contract.id,
                status=InvoiceStatus.OPEN,
                subtotal=amounts.subtotal,
                discount_amount=amounts.discount_amount,
                credit_amount=amounts.credit_amount,
                total=amounts.total,
                currency=self.currency,
                period_start=period_start,
                period_end=period_end,
                billing_cycle=billing_cycle,
                due_date=now.date() + timedelta(days=self.due_days),
                created_at=now,
            )
            self.repository.insert_invoice(invoice, amounts.line_items)

        self.log.info(
            "invoice_created",
            invoice_id=invoice.id,
            invoice_number=invoice.number,
            contract_id=contract.id,
            total=to_decimal_string(invoice.total),
        )
        publish_safely(
            self.events,
            InvoiceCreated(
                invoice_id=invoice.id,
                invoice_number=invoice.number,
                customer_id=invoice.customer_id,
                contract_id=invoice.contract_id,
                total=invoice.total,
                currency=invoice.currency,
            ),
            self.log,
        )
        return invoice
