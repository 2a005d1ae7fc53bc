"""
Billing domain events and event sinks.

Each event is a frozen dataclass tagged with an EventType. Delivery is
fire-and-forget: a failing sink is logged and never affects the billing
operation that produced the event.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional, Union

import structlog

from .money import to_decimal_string

logger = structlog.get_logger(__name__)


class EventType(Enum):
    INVOICE_CREATED = "invoice.created"
    CREDITS_APPLIED = "credits.applied"
    CREDITS_REVERSED = "credits.reversed"
    CREDITS_DEDUCTED = "credits.deducted"
    CREDITS_PURCHASED = "credits.purchased"
    BILLING_JOB_COMPLETED = "billing_job.completed"
    BILLING_JOB_FAILED = "billing_job.failed"
    MARKETPLACE_EVENT_PROCESSED = "marketplace_event.processed"
    PAYMENT_PROCESSED = "payment.processed"


@dataclass(frozen=True)
class InvoiceCreated:
    invoice_id: str
    invoice_number: str
    customer_id: str
    contract_id: str
    total: Decimal
    currency: str
    event_type: EventType = field(default=EventType.INVOICE_CREATED, init=False)


@dataclass(frozen=True)
class CreditsApplied:
    customer_id: str
    invoice_id: str
    amount: Decimal
    credit_ids: List[str]
    event_type: EventType = field(default=EventType.CREDITS_APPLIED, init=False)


@dataclass(frozen=True)
class CreditsReversed:
    customer_id: str
    invoice_id: str
    amount: Decimal
    reason: str
    event_type: EventType = field(default=EventType.CREDITS_REVERSED, init=False)


@dataclass(frozen=True)
class CreditsDeducted:
    entity_id: str
    amount: Decimal
    remaining: Decimal
    event_type: EventType = field(default=EventType.CREDITS_DEDUCTED, init=False)


@dataclass(frozen=True)
class CreditsPurchased:
    entity_id: str
    amount: Decimal
    expires_at: Optional[datetime]
    event_type: EventType = field(default=EventType.CREDITS_PURCHASED, init=False)


@dataclass(frozen=True)
class BillingJobCompleted:
    job_id: str
    as_of_date: date
    invoices_created: int
    total_customers: int
    event_type: EventType = field(default=EventType.BILLING_JOB_COMPLETED, init=False)


@dataclass(frozen=True)
class BillingJobFailed:
    job_id: str
    as_of_date: date
    error: str
    event_type: EventType = field(default=EventType.BILLING_JOB_FAILED, init=False)


@dataclass(frozen=True)
class MarketplaceEventProcessed:
    event_id: str
    entity_id: str
    event_type_name: str
    amount: Decimal
    billing_method: str
    event_type: EventType = field(default=EventType.MARKETPLACE_EVENT_PROCESSED, init=False)


@dataclass(frozen=True)
class PaymentProcessed:
    invoice_id: str
    amount: Decimal
    payment_reference: str
    event_type: EventType = field(default=EventType.PAYMENT_PROCESSED, init=False)


BillingEvent = Union[
    InvoiceCreated,
    CreditsApplied,
    CreditsReversed,
    CreditsDeducted,
    CreditsPurchased,
    BillingJobCompleted,
    BillingJobFailed,
    MarketplaceEventProcessed,
    PaymentProcessed,
]


class EventSink:
    """Receives billing events. Subclasses override publish()."""

    def publish(self, event: BillingEvent) -> None:
        raise NotImplementedError


class NullEventSink(EventSink):
    def publish(self, event: BillingEvent) -> None:
        return None


class InMemoryEventSink(EventSink):
    """Collects events in order; used by tests and previews."""

    def __init__(self) -> None:
        self.events: List[BillingEvent] = []

    def publish(self, event: BillingEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> List[BillingEvent]:
        return [event for event in self.events if event.event_type == event_type]


class LoggingEventSink(EventSink):
    """Writes each event as a structured log line."""

    def __init__(self, log: Optional[Any] = None) -> None:
        self.log = log or structlog.get_logger("marketplace_billing.events")

    def publish(self, event: BillingEvent) -> None:
        self.log.info("billing_event", event_type=event.event_type.value, summary=describe_event(event))


def publish_safely(sink: Optional[EventSink], event: BillingEvent, log: Optional[Any] = None) -> None:
    """Publish an event, logging and swallowing any sink failure."""
    if sink is None:
        return
    try:
        sink.publish(event)
    except Exception as exc:
        (log or logger).warning(
            "event_publish_failed",
            event_type=event.event_type.value,
            error=str(exc),
        )


def describe_event(event: BillingEvent) -> str:
    """One-line human description of an event.

    Raises:
        TypeError: If event is not a known billing event
    """
    if isinstance(event, InvoiceCreated):
        return (
            f"Invoice {event.invoice_number} for {event.customer_id}: "
            f"{event.currency} {to_decimal_string(event.total)}"
        )
    if isinstance(event, CreditsApplied):
        return (
            f"Applied {to_decimal_string(event.amount)} credits from "
            f"{len(event.credit_ids)} credit(s) to invoice {event.invoice_id}"
        )
    if isinstance(event, CreditsReversed):
        return (
            f"Reversed {to_decimal_string(event.amount)} credits on invoice "
            f"{event.invoice_id}: {event.reason}"
        )
    if isinstance(event, CreditsDeducted):
        return (
            f"Deducted {to_decimal_string(event.amount)} credits from entity "
            f"{event.entity_id}, {to_decimal_string(event.remaining)} remaining"
        )
    if isinstance(event, CreditsPurchased):
        return f"Entity {event.entity_id} purchased {to_decimal_string(event.amount)} credits"
    if isinstance(event, BillingJobCompleted):
        return (
            f"Billing job {event.job_id} for {event.as_of_date.isoformat()} completed: "
            f"{event.invoices_created}/{event.total_customers} invoices"
        )
    if isinstance(event, BillingJobFailed):
        return f"Billing job {event.job_id} for {event.as_of_date.isoformat()} failed: {event.error}"
    if isinstance(event, MarketplaceEventProcessed):
        return (
            f"{event.event_type_name} for entity {event.entity_id}: "
            f"{to_decimal_string(event.amount)} via {event.billing_method}"
        )
    if isinstance(event, PaymentProcessed):
        return (
            f"Payment {event.payment_reference} of {to_decimal_string(event.amount)} "
            f"for invoice {event.invoice_id}"
        )
    raise TypeError(f"Unknown billing event: {type(event).__name__}")
