"""
Unit tests for storage layer.

Tests schema creation, transactions, and record insertion and retrieval.
"""

import os
import sqlite3
import tempfile
from datetime import date, datetime
from decimal import Decimal

import pytest

from marketplace_billing.storage.db import get_connection
from marketplace_billing.storage.models import (
    BillingFrequency,
    BillingMethod,
    Credit,
    CreditType,
    EntityCreditBalance,
    EntityMember,
    EntitySubscription,
    Invoice,
    InvoiceLine,
    InvoiceStatus,
    JobStatus,
    LineType,
    MarketplaceEvent,
    UsageEvent,
)
from marketplace_billing.storage.repository import BillingRepository, initialize_schema

from conftest import make_contract


def _invoice(invoice_id="inv-1", number="INV-2024-000001", period_start=date(2024, 2, 1)):
    return Invoice(
        id=invoice_id,
        number=number,
        customer_id="customer-1",
        contract_id="contract-1",
        status=InvoiceStatus.OPEN,
        subtotal=Decimal("100"),
        discount_amount=Decimal("0"),
        credit_amount=Decimal("0"),
        total=Decimal("100"),
        currency="USD",
        period_start=period_start,
        period_end=date(2024, 3, 1),
        billing_cycle=1,
        due_date=date(2024, 3, 31),
        created_at=datetime(2024, 3, 1, 10, 0),
    )


BASE_LINE = InvoiceLine(LineType.BASE_FEE, "Base fee", 1, Decimal("100"), Decimal("100"))


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify every billing table is created."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
                tables = {row[0] for row in rows}
            finally:
                conn.close()

            for table in (
                "billing_job",
                "contract",
                "usage_event",
                "invoice",
                "invoice_line",
                "invoice_sequence",
                "credit",
                "entity_credit_balance",
                "entity_member",
                "entity_subscription",
                "marketplace_event",
            ):
                assert table in tables

    def test_schema_creation_is_idempotent(self, repository):
        repository.initialize_schema()
        assert repository.get_job_by_date(date(2024, 1, 1)) is None


class TestTransactions:
    """Test atomic write groups."""

    def test_rollback_on_error(self, repository):
        """Verify nothing written in a failed block survives."""
        with pytest.raises(RuntimeError):
            with repository.transaction():
                repository.insert_contract(make_contract())
                raise RuntimeError("boom")
        assert repository.get_contract("contract-1") is None
        assert not repository.in_transaction

    def test_nested_blocks_join_outer(self, repository):
        with pytest.raises(RuntimeError):
            with repository.transaction():
                with repository.transaction():
                    repository.insert_contract(make_contract())
                assert repository.in_transaction
                raise RuntimeError("boom")
        assert repository.get_contract("contract-1") is None

    def test_commit(self, repository):
        with repository.transaction():
            repository.insert_contract(make_contract())
        assert repository.get_contract("contract-1") is not None


class TestJobs:
    """Test billing job persistence."""

    def test_one_job_per_date(self, repository):
        repository.create_job(date(2024, 3, 1), datetime(2024, 3, 1, 6, 0))
        with pytest.raises(sqlite3.IntegrityError):
            repository.create_job(date(2024, 3, 1), datetime(2024, 3, 1, 7, 0))

    def test_lease_is_won_once(self, repository):
        """Verify only one caller moves a job from PENDING to RUNNING."""
        job = repository.create_job(date(2024, 3, 1), datetime(2024, 3, 1, 6, 0))
        assert repository.try_mark_running(job.id)
        assert not repository.try_mark_running(job.id)
        assert repository.get_job(job.id).status == JobStatus.RUNNING

    def test_update_job_fields(self, repository):
        job = repository.create_job(date(2024, 3, 1), datetime(2024, 3, 1, 6, 0), {"trigger": "manual"})
        updated = repository.update_job(
            job.id,
            total_customers=4,
            processed_customers=3,
            invoices_created=2,
            metadata={"trigger": "manual", "errors": ["x"]},
        )
        assert updated.total_customers == 4
        assert updated.processed_customers == 3
        assert updated.invoices_created == 2
        assert updated.metadata["errors"] == ["x"]
        assert updated.status == JobStatus.PENDING

    def test_recent_jobs_newest_first(self, repository):
        for day in (1, 3, 2):
            repository.create_job(date(2024, 3, day), datetime(2024, 3, day, 6, 0))
        recent = repository.list_recent_jobs(2)
        assert [job.as_of_date.day for job in recent] == [3, 2]


class TestContracts:
    """Test contract discovery and advancement."""

    def test_find_contracts_due(self, repository):
        repository.insert_contract(make_contract("c-late", next_billing=date(2024, 3, 10)))
        repository.insert_contract(make_contract("c-early", next_billing=date(2024, 2, 1)))
        repository.insert_contract(make_contract("c-future", next_billing=date(2024, 4, 1)))
        repository.insert_contract(make_contract("c-none", next_billing=None))

        due = repository.find_contracts_due(date(2024, 3, 10))
        assert [c.id for c in due] == ["c-early", "c-late"]

    def test_find_contracts_due_for_customer(self, repository):
        repository.insert_contract(make_contract("c-1", customer_id="a"))
        repository.insert_contract(make_contract("c-2", customer_id="b"))
        assert [c.id for c in repository.find_contracts_due(date(2024, 3, 1), "b")] == ["c-2"]

    def test_advance_keeps_first_anchor(self, repository):
        """Verify the anchor day is set once and billing_cycle increments."""
        repository.insert_contract(make_contract(next_billing=date(2024, 1, 31)))
        repository.advance_contract("contract-1", date(2024, 2, 29), date(2024, 1, 31), anchor_day=31)
        repository.advance_contract("contract-1", date(2024, 3, 31), date(2024, 2, 29), anchor_day=29)

        contract = repository.get_contract("contract-1")
        assert contract.billing_anchor_day == 31
        assert contract.billing_cycle == 3
        assert contract.next_billing_date == date(2024, 3, 31)
        assert contract.last_billed_at == date(2024, 2, 29)

    def test_decimal_fields_round_trip(self, repository):
        repository.insert_contract(make_contract(base_fee="99.99", discount_rate="0.2"))
        contract = repository.get_contract("contract-1")
        assert contract.base_fee == Decimal("99.99")
        assert contract.discount_rate == Decimal("0.2")


class TestUsage:
    """Test usage aggregation."""

    def test_half_open_interval(self, repository):
        """Verify events at period_start count and events at period_end do not."""
        repository.insert_contract(make_contract())
        repository.insert_usage_events([
            UsageEvent("contract-1", 10, datetime(2024, 2, 1, 0, 0)),
            UsageEvent("contract-1", 20, datetime(2024, 2, 29, 23, 59, 59)),
            UsageEvent("contract-1", 40, datetime(2024, 3, 1, 0, 0)),
            UsageEvent("contract-1", 80, datetime(2024, 1, 31, 23, 59, 59)),
        ])
        assert repository.sum_usage("contract-1", date(2024, 2, 1), date(2024, 3, 1)) == 30

    def test_no_usage_is_zero(self, repository):
        repository.insert_contract(make_contract())
        assert repository.sum_usage("contract-1", date(2024, 2, 1), date(2024, 3, 1)) == 0

    def test_negative_quantity_rejected(self, repository):
        repository.insert_contract(make_contract())
        with pytest.raises(sqlite3.IntegrityError):
            repository.insert_usage_event(UsageEvent("contract-1", -1, datetime(2024, 2, 1)))


class TestInvoices:
    """Test invoice persistence."""

    def test_insert_and_read_lines(self, repository):
        repository.insert_contract(make_contract())
        repository.insert_invoice(_invoice(), [BASE_LINE])

        invoice = repository.find_invoice("contract-1", date(2024, 2, 1), date(2024, 3, 1))
        assert invoice.id == "inv-1"
        assert invoice.total == Decimal("100")
        lines = repository.get_invoice_lines("inv-1")
        assert len(lines) == 1
        assert lines[0].line_type == LineType.BASE_FEE

    def test_one_invoice_per_period(self, repository):
        """Verify a duplicate period is rejected and leaves no lines behind."""
        repository.insert_contract(make_contract())
        repository.insert_invoice(_invoice(), [BASE_LINE])
        with pytest.raises(sqlite3.IntegrityError):
            repository.insert_invoice(_invoice("inv-2", "INV-2024-000002"), [BASE_LINE])
        assert repository.get_invoice("inv-2") is None
        assert repository.get_invoice_lines("inv-2") == []

    def test_sequence_per_year(self, repository):
        assert repository.next_invoice_sequence(2024) == 1
        assert repository.next_invoice_sequence(2024) == 2
        assert repository.next_invoice_sequence(2025) == 1

    def test_list_invoices_by_customer(self, repository):
        repository.insert_contract(make_contract())
        repository.insert_invoice(_invoice(), [BASE_LINE])
        assert len(repository.list_invoices("customer-1")) == 1
        assert repository.list_invoices("someone-else") == []


class TestCredits:
    """Test credit persistence."""

    def test_mark_applied(self, repository):
        credit = Credit(
            id="cr-1",
            customer_id="customer-1",
            amount=Decimal("25"),
            credit_type=CreditType.MANUAL,
            description="Goodwill",
            created_at=datetime(2024, 3, 1, 9, 0),
        )
        repository.insert_credit(credit)
        assert [c.id for c in repository.list_unapplied_credits("customer-1")] == ["cr-1"]

        repository.mark_credit_applied("cr-1", datetime(2024, 3, 2), {"applied_to_invoice": "inv-1"})
        assert repository.list_unapplied_credits("customer-1") == []
        applied = repository.find_credits_applied_to_invoice("inv-1")
        assert [c.id for c in applied] == ["cr-1"]
        assert applied[0].applied_at == datetime(2024, 3, 2)

    def test_list_credits_by_creation_range(self, repository):
        for index, day in enumerate((1, 10, 20)):
            repository.insert_credit(
                Credit(
                    id=f"cr-{index}",
                    customer_id="customer-1",
                    amount=Decimal("1"),
                    credit_type=CreditType.MANUAL,
                    description="x",
                    created_at=datetime(2024, 3, day),
                )
            )
        credits = repository.list_credits("customer-1", datetime(2024, 3, 5), datetime(2024, 3, 15))
        assert [c.id for c in credits] == ["cr-1"]


class TestEntityRecords:
    """Test entity balances, members, subscriptions and events."""

    def test_balance_upsert(self, repository):
        repository.save_entity_balance(EntityCreditBalance("e-1", Decimal("100"), Decimal("0")))
        repository.save_entity_balance(EntityCreditBalance("e-1", Decimal("100"), Decimal("40")))
        balance = repository.get_entity_balance("e-1")
        assert balance.available_credits == Decimal("60")

    def test_members(self, repository):
        repository.save_entity_member(EntityMember("e-1", "u-1", credit_limit=Decimal("50")))
        repository.save_entity_member(EntityMember("e-1", "u-2", active=False))
        assert repository.get_entity_member("e-1", "u-1").credit_limit == Decimal("50")
        assert repository.count_active_members("e-1") == 1

    def test_subscription_seats(self, repository):
        subscription = EntitySubscription(
            id="sub-1",
            entity_id="e-1",
            frequency=BillingFrequency.MONTHLY,
            seat_count=5,
            price_per_seat=Decimal("20"),
            next_billing_date=date(2024, 4, 1),
        )
        repository.insert_subscription(subscription)
        repository.update_subscription_seats("sub-1", 8)
        stored = repository.get_active_subscription("e-1")
        assert stored.seat_count == 8
        assert stored.total_price == Decimal("160")

    def test_marketplace_events_newest_first(self, repository):
        for day in (1, 15, 31):
            repository.insert_marketplace_event(
                MarketplaceEvent(
                    id=f"ev-{day}",
                    entity_id="e-1",
                    user_id="u-1",
                    event_type="custom",
                    quantity=3,
                    unit_price=Decimal("3.3333"),
                    amount=Decimal("10"),
                    timestamp=datetime(2024, 3, day, 12, 0),
                    billing_method=BillingMethod.CREDITS if day == 15 else BillingMethod.INVOICE,
                )
            )

        events = repository.list_marketplace_events("e-1", datetime(2024, 3, 1, 12, 0), datetime(2024, 3, 15, 12, 0))
        assert [e.id for e in events] == ["ev-15", "ev-1"]
        assert events[0].billing_method == BillingMethod.CREDITS
        assert events[1].billing_method == BillingMethod.INVOICE
        assert events[0].amount == Decimal("10")
