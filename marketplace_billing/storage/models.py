"""
Data models for storage layer.

Defines billing records and their status enumerations. Records are
immutable snapshots; updates go through the repository and return new
instances.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class JobStatus(Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class BillingTrigger(Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    RETRY = "retry"


class ContractStatus(Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"


class InvoiceStatus(Enum):
    DRAFT = "DRAFT"
    OPEN = "OPEN"
    PAID = "PAID"
    VOID = "VOID"
    UNCOLLECTIBLE = "UNCOLLECTIBLE"


class LineType(Enum):
    BASE_FEE = "BASE_FEE"
    USAGE_OVERAGE = "USAGE_OVERAGE"
    DISCOUNT = "DISCOUNT"
    CREDIT = "CREDIT"


class CreditType(Enum):
    """Credit types. priority is the application order (lower first)."""
    PROMOTIONAL = "PROMOTIONAL"
    REFUND = "REFUND"
    MANUAL = "MANUAL"
    ADJUSTMENT = "ADJUSTMENT"

    @property
    def priority(self) -> int:
        return _CREDIT_PRIORITY[self]


_CREDIT_PRIORITY = {
    CreditType.PROMOTIONAL: 0,
    CreditType.REFUND: 1,
    CreditType.MANUAL: 2,
    CreditType.ADJUSTMENT: 3,
}


class SubscriptionStatus(Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELED = "CANCELED"


class BillingFrequency(Enum):
    MONTHLY = "MONTHLY"
    ANNUAL = "ANNUAL"


class BillingMethod(Enum):
    CREDITS = "CREDITS"
    INVOICE = "INVOICE"


@dataclass(frozen=True)
class BillingJob:
    """One billing run per as-of date."""
    id: str
    as_of_date: date
    status: JobStatus
    started_at: datetime
    total_customers: int = 0
    processed_customers: int = 0
    invoices_created: int = 0
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Contract:
    """Pay-as-you-go billing agreement between a customer and the platform."""
    id: str
    customer_id: str
    base_fee: Decimal
    call_overage_fee: Decimal
    min_commit_calls: int = 0
    discount_rate: Decimal = Decimal("0")
    billing_cycle: int = 1
    next_billing_date: Optional[date] = None
    billing_anchor_day: Optional[int] = None
    status: ContractStatus = ContractStatus.ACTIVE
    last_billed_at: Optional[date] = None


@dataclass(frozen=True)
class UsageEvent:
    """Immutable metered fact. Append-only."""
    contract_id: str
    quantity: int
    timestamp: datetime
    id: Optional[int] = None


@dataclass(frozen=True)
class InvoiceLine:
    line_type: LineType
    description: str
    quantity: int
    unit_amount: Decimal
    amount: Decimal
    invoice_id: Optional[str] = None
    position: int = 0


@dataclass(frozen=True)
class Invoice:
    id: str
    number: str
    customer_id: str
    contract_id: str
    status: InvoiceStatus
    subtotal: Decimal
    discount_amount: Decimal
    credit_amount: Decimal
    total: Decimal
    currency: str
    period_start: date
    period_end: date
    billing_cycle: int
    due_date: date
    created_at: datetime


@dataclass(frozen=True)
class Credit:
    """Monetary grant against future invoices.

    applied_at is set once the credit is consumed (fully, or split with a
    remainder credit created) or expired.
    """
    id: str
    customer_id: str
    amount: Decimal
    credit_type: CreditType
    description: str
    created_at: datetime
    applied_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_available(self) -> bool:
        return self.applied_at is None


@dataclass(frozen=True)
class EntityCreditBalance:
    entity_id: str
    total_credits: Decimal
    used_credits: Decimal
    expires_at: Optional[datetime] = None

    @property
    def available_credits(self) -> Decimal:
        return self.total_credits - self.used_credits


@dataclass(frozen=True)
class EntityMember:
    """A user's membership of an entity, with an optional per-user credit limit."""
    entity_id: str
    user_id: str
    active: bool = True
    credit_limit: Decimal = Decimal("0")


@dataclass(frozen=True)
class EntitySubscription:
    """Seat-based subscription state."""
    id: str
    entity_id: str
    frequency: BillingFrequency
    seat_count: int
    price_per_seat: Decimal
    next_billing_date: date
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE

    @property
    def total_price(self) -> Decimal:
        return self.price_per_seat * self.seat_count


@dataclass(frozen=True)
class MarketplaceEvent:
    """A priced pay-as-you-go marketplace event.

    amount is the charged total; unit_price is amount / quantity for display.
    """
    id: str
    entity_id: str
    user_id: str
    event_type: str
    quantity: int
    unit_price: Decimal
    amount: Decimal
    timestamp: datetime
    billing_method: Optional[BillingMethod] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
