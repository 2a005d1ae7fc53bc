"""
Unit tests for the credit ledger.

Tests application order, splitting, expiry, reversals and entity
credit balances.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from marketplace_billing.core.errors import DataIntegrityError, ValidationError
from marketplace_billing.core.events import EventType
from marketplace_billing.core.ledger import (
    EXCEEDS_USER_LIMIT,
    INSUFFICIENT_CREDITS,
    NO_BALANCE,
    CreditLedger,
    plan_credit_application,
)
from marketplace_billing.storage.models import Credit, CreditType, EntityCreditBalance


@pytest.fixture
def ledger(repository, sink, clock):
    return CreditLedger(repository, events=sink, clock=clock)


@pytest.fixture
def mixed_credits(ledger, clock):
    """A manual credit of 50 issued before a promotional credit of 20."""
    issued_at = clock.now
    clock.now = issued_at - timedelta(hours=1)
    manual = ledger.create_credit("customer-1", Decimal("50"), CreditType.MANUAL, "Goodwill")
    clock.now = issued_at
    promo = ledger.issue_promotional_credit("customer-1", Decimal("20"), "Spring launch")
    return manual, promo


def _available_total(ledger, customer_id="customer-1"):
    return sum((c.amount for c in ledger.available_credits(customer_id)), Decimal("0"))


class TestCreditIssuance:
    """Test credit creation helpers."""

    def test_refund_credit(self, ledger, clock):
        credit = ledger.issue_refund_credit("customer-1", Decimal("15"), "inv-9", "Service outage")
        assert credit.credit_type == CreditType.REFUND
        assert credit.description == "Refund for invoice: Service outage"
        assert credit.expires_at == clock.now + timedelta(days=365)
        assert credit.metadata["original_invoice_id"] == "inv-9"

    def test_promotional_default_expiry(self, ledger, clock):
        credit = ledger.issue_promotional_credit("customer-1", Decimal("10"), "Welcome")
        assert credit.description == "Promotional credit: Welcome"
        assert credit.expires_at == clock.now + timedelta(days=90)

    def test_transfer_consumes_source_credits(self, ledger, repository, mixed_credits):
        """Verify the source spends its own credits, splitting the last one."""
        manual, promo = mixed_credits
        consumed, credit = ledger.transfer_credit("customer-1", "customer-2", Decimal("30"), "Account merge")

        assert [a.credit_id for a in consumed.applications] == [promo.id, manual.id]
        assert credit.amount == Decimal("30")
        assert credit.credit_type == CreditType.ADJUSTMENT
        assert credit.metadata["transfer_from"] == "customer-1"
        assert _available_total(ledger, "customer-1") == Decimal("40")
        assert _available_total(ledger, "customer-2") == Decimal("30")

        source = repository.get_credit(manual.id)
        assert source.metadata["transferred_to"] == "customer-2"
        assert "applied_to_invoice" not in source.metadata

    def test_transfer_conserves_value(self, ledger):
        """Verify transferred value can only be spent once."""
        ledger.create_credit("alice", Decimal("100"), CreditType.MANUAL, "Grant")
        ledger.transfer_credit("alice", "bob", Decimal("100"), "Gift")

        alice = ledger.apply_credits_to_invoice("alice", Decimal("1000"), "inv-a")
        bob = ledger.apply_credits_to_invoice("bob", Decimal("1000"), "inv-b")
        assert alice.total_applied == Decimal("0")
        assert bob.total_applied == Decimal("100")

    def test_transfer_beyond_balance_rejected(self, ledger, mixed_credits):
        with pytest.raises(ValidationError, match="Insufficient credits for transfer"):
            ledger.transfer_credit("customer-1", "customer-2", Decimal("70.0001"), "Too much")
        assert _available_total(ledger, "customer-1") == Decimal("70")
        assert ledger.available_credits("customer-2") == []

    def test_transfer_requires_positive_amount(self, ledger):
        with pytest.raises(ValidationError):
            ledger.transfer_credit("customer-1", "customer-2", Decimal("0"), "noop")


class TestCreditApplication:
    """Test applying credits to invoices."""

    def test_type_priority_before_age(self, ledger, mixed_credits):
        """Verify promotional credit is used before an older manual credit."""
        manual, promo = mixed_credits
        result = ledger.apply_credits_to_invoice("customer-1", Decimal("30"), "inv-1")

        assert [a.credit_id for a in result.applications] == [promo.id, manual.id]
        assert [a.applied_amount for a in result.applications] == [Decimal("20"), Decimal("10")]
        assert result.total_applied == Decimal("30")
        assert result.remaining_invoice_amount == Decimal("0")

    def test_partial_application_splits_credit(self, ledger, repository, mixed_credits):
        """Verify the remainder credit keeps type, age and expiry of the original."""
        manual, _ = mixed_credits
        ledger.apply_credits_to_invoice("customer-1", Decimal("30"), "inv-1")

        original = repository.get_credit(manual.id)
        assert not original.is_available
        assert original.metadata["applied_amount"] == "10.0000"
        assert original.metadata["fully_consumed"] is False
        assert original.metadata["split_remaining_credit_created"] is True

        remaining = ledger.available_credits("customer-1")
        assert len(remaining) == 1
        assert remaining[0].amount == Decimal("40")
        assert remaining[0].credit_type == CreditType.MANUAL
        assert remaining[0].created_at == manual.created_at
        assert remaining[0].description == "Goodwill (remaining balance)"
        assert remaining[0].metadata["original_credit_id"] == manual.id

    def test_value_is_conserved(self, ledger, mixed_credits):
        """Verify available before equals applied plus available after."""
        before = _available_total(ledger)
        result = ledger.apply_credits_to_invoice("customer-1", Decimal("30"), "inv-1")
        assert before == result.total_applied + _available_total(ledger)

    def test_credits_exceeding_invoice(self, ledger, mixed_credits):
        result = ledger.apply_credits_to_invoice("customer-1", Decimal("5"), "inv-1")
        assert result.total_applied == Decimal("5")
        assert _available_total(ledger) == Decimal("65")

    def test_invoice_exceeding_credits(self, ledger, mixed_credits):
        result = ledger.apply_credits_to_invoice("customer-1", Decimal("100"), "inv-1")
        assert result.total_applied == Decimal("70")
        assert result.remaining_invoice_amount == Decimal("30")
        assert ledger.available_credits("customer-1") == []

    def test_preview_writes_nothing(self, ledger, sink, mixed_credits):
        result = ledger.apply_credits_to_invoice("customer-1", Decimal("30"))
        assert result.total_applied == Decimal("30")
        assert _available_total(ledger) == Decimal("70")
        assert sink.of_type(EventType.CREDITS_APPLIED) == []

    def test_publishes_credits_applied(self, ledger, sink, mixed_credits):
        ledger.apply_credits_to_invoice("customer-1", Decimal("30"), "inv-1")
        events = sink.of_type(EventType.CREDITS_APPLIED)
        assert len(events) == 1
        assert events[0].amount == Decimal("30")
        assert events[0].invoice_id == "inv-1"

    def test_expired_credits_are_marked_not_applied(self, ledger, repository, clock):
        """Verify a credit at its expiry instant is expired, not used."""
        credit = ledger.issue_promotional_credit("customer-1", Decimal("20"), "Flash", expiration_days=1)
        clock.now = credit.expires_at

        result = ledger.apply_credits_to_invoice("customer-1", Decimal("30"), "inv-1")
        assert result.total_applied == Decimal("0")
        assert result.expired_credit_ids == [credit.id]

        stored = repository.get_credit(credit.id)
        assert stored.metadata["expired_reason"] == "Credit expired"
        assert "applied_to_invoice" not in stored.metadata
        assert ledger.get_credit_balance("customer-1").total_expired == Decimal("20")

    def test_plan_ignores_negative_credits(self, clock):
        debit = Credit("c-neg", "customer-1", Decimal("-5"), CreditType.ADJUSTMENT, "Debit", clock.now)
        assert plan_credit_application([debit], Decimal("10")).total_applied == Decimal("0")

    def test_plan_rounds_amount_half_up(self, clock):
        credit = Credit("c-1", "customer-1", Decimal("100"), CreditType.MANUAL, "Grant", clock.now)
        plan = plan_credit_application([credit], Decimal("5.00005"))
        assert plan.total_applied == Decimal("5.0001")
        assert plan.applications[0].remaining_amount == Decimal("94.9999")

    def test_half_way_split_conserves_value(self, ledger, repository):
        """Verify a half-way amount splits without creating value."""
        credit = ledger.create_credit("customer-1", Decimal("100"), CreditType.MANUAL, "Grant")
        result = ledger.apply_credits_to_invoice("customer-1", Decimal("5.00005"), "inv-1")

        applied = Decimal(repository.get_credit(credit.id).metadata["applied_amount"])
        assert result.total_applied == applied == Decimal("5.0001")
        assert applied + _available_total(ledger) == Decimal("100")


class TestReversalAndReporting:
    """Test reversals, balances and analytics."""

    def test_reversal_returns_applied_amounts(self, ledger, sink, mixed_credits):
        ledger.apply_credits_to_invoice("customer-1", Decimal("30"), "inv-1")
        reversals = ledger.reverse_credit_application("inv-1", "Invoice voided")

        assert sorted(r.amount for r in reversals) == [Decimal("10"), Decimal("20")]
        assert all(r.credit_type == CreditType.ADJUSTMENT for r in reversals)
        assert reversals[0].description == "Reversal of credit application: Invoice voided"
        assert _available_total(ledger) == Decimal("70")

        events = sink.of_type(EventType.CREDITS_REVERSED)
        assert len(events) == 1
        assert events[0].amount == Decimal("30")

    def test_reversal_of_unknown_invoice(self, ledger):
        assert ledger.reverse_credit_application("inv-missing", "noop") == []

    def test_balance_totals(self, ledger, mixed_credits):
        ledger.apply_credits_to_invoice("customer-1", Decimal("30"), "inv-1")
        balance = ledger.get_credit_balance("customer-1")
        assert balance.total_applied == Decimal("30")
        assert balance.total_available == Decimal("40")
        assert balance.total_expired == Decimal("0")
        assert len(balance.breakdown) == 3

    def test_analytics(self, ledger, clock):
        ledger.create_credit("customer-1", Decimal("50"), CreditType.MANUAL, "First")
        clock.now = clock.now + timedelta(minutes=5)
        ledger.create_credit("customer-1", Decimal("25"), CreditType.MANUAL, "Second")
        ledger.apply_credits_to_invoice("customer-1", Decimal("50"), "inv-1")

        analytics = ledger.get_credit_analytics("customer-1", datetime(2024, 3, 1), datetime(2024, 3, 31))
        assert analytics.total_issued == Decimal("75")
        assert analytics.total_applied == Decimal("50")
        assert analytics.applications_by_type[CreditType.MANUAL] == Decimal("50")
        assert analytics.average_application_amount == Decimal("50")
        assert analytics.utilization_rate.quantize(Decimal("0.01")) == Decimal("66.67")


class TestEntityCredits:
    """Test entity credit balances."""

    def test_purchase_and_deduct(self, ledger, sink, clock):
        balance = ledger.purchase_entity_credits("e-1", Decimal("100"), validity_days=30)
        assert balance.total_credits == Decimal("100")
        assert balance.expires_at == clock.now + timedelta(days=30)

        result = ledger.deduct_entity_credits("e-1", Decimal("40"))
        assert result.success
        assert result.deducted_amount == Decimal("40")
        assert result.remaining_balance == Decimal("60")
        assert ledger.get_entity_balance("e-1").used_credits == Decimal("40")
        assert len(sink.of_type(EventType.CREDITS_DEDUCTED)) == 1

    def test_purchases_accumulate(self, ledger):
        ledger.purchase_entity_credits("e-1", Decimal("100"), validity_days=30)
        ledger.deduct_entity_credits("e-1", Decimal("40"))
        balance = ledger.purchase_entity_credits("e-1", Decimal("50"), validity_days=30)
        assert balance.available_credits == Decimal("110")

    def test_insufficient_credits(self, ledger):
        ledger.purchase_entity_credits("e-1", Decimal("50"), validity_days=30)
        result = ledger.deduct_entity_credits("e-1", Decimal("80"))
        assert not result.success
        assert result.reason == INSUFFICIENT_CREDITS
        assert result.remaining_balance == Decimal("50")
        assert ledger.get_entity_balance("e-1").used_credits == Decimal("0")

    def test_no_balance(self, ledger):
        result = ledger.deduct_entity_credits("e-unknown", Decimal("1"))
        assert not result.success
        assert result.reason == NO_BALANCE

    def test_user_limit(self, ledger):
        ledger.purchase_entity_credits("e-1", Decimal("100"), validity_days=30)
        limited = ledger.deduct_entity_credits("e-1", Decimal("30"), user_credit_limit=Decimal("20"))
        assert not limited.success
        assert limited.reason == EXCEEDS_USER_LIMIT

        unlimited = ledger.deduct_entity_credits("e-1", Decimal("30"), user_credit_limit=Decimal("0"))
        assert unlimited.success

    def test_amount_must_be_positive(self, ledger):
        with pytest.raises(ValidationError):
            ledger.deduct_entity_credits("e-1", Decimal("0"))
        with pytest.raises(ValidationError):
            ledger.purchase_entity_credits("e-1", Decimal("-1"), validity_days=30)

    def test_corrupt_balance_raises(self, ledger, repository):
        repository.save_entity_balance(EntityCreditBalance("e-1", Decimal("10"), Decimal("20")))
        with pytest.raises(DataIntegrityError):
            ledger.get_entity_balance("e-1")
        with pytest.raises(DataIntegrityError):
            ledger.deduct_entity_credits("e-1", Decimal("1"))

    def test_expiring_credits(self, ledger):
        ledger.purchase_entity_credits("e-soon", Decimal("10"), validity_days=10)
        ledger.purchase_entity_credits("e-later", Decimal("10"), validity_days=60)
        assert ledger.has_expiring_credits("e-soon")
        assert not ledger.has_expiring_credits("e-later")
        assert not ledger.has_expiring_credits("e-none")
