"""
Pay-as-you-go marketplace event processing.

Each event is validated and priced, paid from the entity's prepaid
credits when possible, and stored with the billing method used. When
credits cannot cover it the event falls back to invoicing with the
reason recorded.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from ..storage.models import BillingMethod, MarketplaceEvent
from ..storage.repository import BillingRepository, new_id
from .errors import ValidationError
from .events import EventSink, MarketplaceEventProcessed, publish_safely
from .ledger import INSUFFICIENT_CREDITS, NO_BALANCE, CreditLedger
from .money import ZERO, to_decimal_string
from .pricing import DEFAULT_PRICING_TABLE, EventPricing, PricingTable, calculate_event_pricing, total_event_cost


@dataclass(frozen=True)
class MarketplaceEventRequest:
    entity_id: str
    user_id: str
    event_type: str
    quantity: int = 1
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EventProcessingResult:
    success: bool
    event_id: str
    billing_method: BillingMethod
    pricing: Optional[EventPricing] = None
    deducted_amount: Optional[Decimal] = None
    remaining_balance: Optional[Decimal] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class EventTypeSummary:
    event_type: str
    count: int
    total_cost: Decimal


@dataclass(frozen=True)
class BillingSummary:
    total_events: int
    total_cost: Decimal
    event_breakdown: List[EventTypeSummary]
    credits_billed: Decimal
    invoices_billed: Decimal


class MarketplaceEventProcessor:
    """Prices marketplace events and decides how each one is paid.

    Args:
        repository: Billing repository
        ledger: Credit ledger used for entity deductions
        pricing: Pricing table for event types
        events: Optional event sink
        clock: Returns the current time
        require_membership: Reject users who are not active entity members
        logger: Optional structlog logger
    """

    def __init__(
        self,
        repository: BillingRepository,
        ledger: CreditLedger,
        pricing: PricingTable = DEFAULT_PRICING_TABLE,
        events: Optional[EventSink] = None,
        clock: Callable[[], datetime] = datetime.now,
        require_membership: bool = True,
        logger: Optional[Any] = None,
    ):
        self.repository = repository
        self.ledger = ledger
        self.pricing = pricing
        self.events = events
        self.clock = clock
        self.require_membership = require_membership
        self.log = logger or structlog.get_logger(__name__)

    def process_event(
        self,
        request: MarketplaceEventRequest,
        force_invoicing: bool = False,
    ) -> EventProcessingResult:
        """Validate, price, store and bill one event.

        The credit deduction and the stored event commit together; if
        either fails neither is kept.

        Raises:
            ValidationError: If the request is invalid
            DataIntegrityError: If the entity's stored balance is corrupt
        """
        credit_limit = self._validate(request)
        pricing = calculate_event_pricing(request.event_type, request.quantity, self.pricing)
        event_id = new_id()

        with self.repository.transaction():
            if force_invoicing:
                result = EventProcessingResult(True, event_id, BillingMethod.INVOICE, pricing, reason="Forced invoicing")
            else:
                result = self._pay_with_credits(request, event_id, pricing, credit_limit)

            event = MarketplaceEvent(
                id=event_id,
                entity_id=request.entity_id,
                user_id=request.user_id,
                event_type=request.event_type,
                quantity=request.quantity,
                unit_price=pricing.final_amount / request.quantity,
                amount=pricing.final_amount,
                timestamp=self.clock(),
                billing_method=result.billing_method,
                metadata=dict(request.metadata),
            )
            self.repository.insert_marketplace_event(event)

        self.log.info(
            "marketplace_event_processed",
            event_id=event.id,
            entity_id=request.entity_id,
            event_type=request.event_type,
            amount=to_decimal_string(pricing.final_amount),
            billing_method=result.billing_method.value,
        )
        publish_safely(
            self.events,
            MarketplaceEventProcessed(
                event_id=event.id,
                entity_id=request.entity_id,
                event_type_name=request.event_type,
                amount=pricing.final_amount,
                billing_method=result.billing_method.value,
            ),
            self.log,
        )
        return result

    def process_batch(
        self,
        requests: Sequence[MarketplaceEventRequest],
        force_invoicing: bool = False,
    ) -> List[EventProcessingResult]:
        """Process events independently; one failure does not stop the rest."""
        results = []
        for request in requests:
            try:
                results.append(self.process_event(request, force_invoicing))
            except Exception as exc:
                self.log.warning(
                    "marketplace_event_failed",
                    entity_id=request.entity_id,
                    event_type=request.event_type,
                    error=str(exc),
                )
                results.append(
                    EventProcessingResult(
                        success=False,
                        event_id="",
                        billing_method=BillingMethod.INVOICE,
                        reason=str(exc),
                    )
                )
        return results

    def event_history(
        self,
        entity_id: str,
        from_date: datetime,
        to_date: datetime,
        event_type: Optional[str] = None,
    ) -> List[MarketplaceEvent]:
        return self.repository.list_marketplace_events(entity_id, from_date, to_date, event_type)

    def billing_summary(self, entity_id: str, from_date: datetime, to_date: datetime) -> BillingSummary:
        """Totals per event type and per billing method over a date range."""
        groups: Dict[str, List[Any]] = {}
        credits_billed = ZERO
        invoices_billed = ZERO
        events = self.event_history(entity_id, from_date, to_date)

        for event in events:
            cost = event.amount
            group = groups.setdefault(event.event_type, [0, ZERO])
            group[0] += event.quantity
            group[1] += cost
            if event.billing_method == BillingMethod.CREDITS:
                credits_billed += cost
            else:
                invoices_billed += cost

        breakdown = [
            EventTypeSummary(event_type, count, cost)
            for event_type, (count, cost) in sorted(groups.items())
        ]
        return BillingSummary(
            total_events=len(events),
            total_cost=credits_billed + invoices_billed,
            event_breakdown=breakdown,
            credits_billed=credits_billed,
            invoices_billed=invoices_billed,
        )

    def total_cost(self, entity_id: str, from_date: datetime, to_date: datetime) -> Decimal:
        """Price the summed quantity per event type for the range."""
        quantities: Dict[str, int] = {}
        for event in self.event_history(entity_id, from_date, to_date):
            quantities[event.event_type] = quantities.get(event.event_type, 0) + event.quantity
        return total_event_cost(quantities, self.pricing)

    def credit_balance(self, entity_id: str) -> Decimal:
        balance = self.ledger.get_entity_balance(entity_id)
        return balance.available_credits if balance else ZERO

    def _validate(self, request: MarketplaceEventRequest) -> Optional[Decimal]:
        if request.quantity <= 0:
            raise ValidationError("Event quantity must be greater than zero", field="quantity")
        self.pricing.get_pricing(request.event_type)

        if not self.require_membership:
            return None
        member = self.repository.get_entity_member(request.entity_id, request.user_id)
        if member is None or not member.active:
            raise ValidationError(
                f"User {request.user_id} is not an active member of entity {request.entity_id}",
                field="user_id",
            )
        return member.credit_limit

    def _pay_with_credits(
        self,
        request: MarketplaceEventRequest,
        event_id: str,
        pricing: EventPricing,
        credit_limit: Optional[Decimal],
    ) -> EventProcessingResult:
        deduction = self.ledger.deduct_entity_credits(request.entity_id, pricing.final_amount, credit_limit)
        if deduction.success:
            return EventProcessingResult(
                success=True,
                event_id=event_id,
                billing_method=BillingMethod.CREDITS,
                pricing=pricing,
                deducted_amount=deduction.deducted_amount,
                remaining_balance=deduction.remaining_balance,
            )

        if deduction.reason in (NO_BALANCE, INSUFFICIENT_CREDITS):
            reason = INSUFFICIENT_CREDITS
        else:
            reason = f"Credit deduction failed: {deduction.reason}"
        return EventProcessingResult(
            success=True,
            event_id=event_id,
            billing_method=BillingMethod.INVOICE,
            pricing=pricing,
            reason=reason,
        )
