"""
Tests for billing run orchestration.

Covers contract discovery, per-contract isolation, job idempotency and
retry, cancellation and month-end scheduling.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from marketplace_billing.core.engine import BillingEngine
from marketplace_billing.core.errors import NotFoundError
from marketplace_billing.core.events import EventType, InMemoryEventSink
from marketplace_billing.storage.models import JobStatus, UsageEvent

from conftest import make_contract

AS_OF = date(2024, 3, 1)


@pytest.fixture
def engine(repository, sink, clock):
    return BillingEngine(repository, events=sink, clock=clock)


@pytest.fixture
def due_contracts(repository):
    """Two contracts due on AS_OF and one due next month."""
    repository.insert_contract(make_contract("c-1", customer_id="acme"))
    repository.insert_contract(make_contract("c-2", customer_id="globex"))
    repository.insert_contract(make_contract("c-later", customer_id="acme", next_billing=date(2024, 4, 1)))
    repository.insert_usage_events([
        UsageEvent("c-1", 1000, datetime(2024, 2, 3, 10, 0)),
        UsageEvent("c-1", 500, datetime(2024, 2, 20, 16, 45)),
        UsageEvent("c-1", 9999, datetime(2024, 3, 1, 0, 0)),
    ])


class CancellingSink(InMemoryEventSink):
    """Cancels the run's job as soon as the first invoice is created."""

    def __init__(self, jobs, as_of_date):
        super().__init__()
        self.jobs = jobs
        self.as_of_date = as_of_date

    def publish(self, event):
        super().publish(event)
        if event.event_type == EventType.INVOICE_CREATED and len(self.of_type(EventType.INVOICE_CREATED)) == 1:
            self.jobs.cancel_job(self.as_of_date)


class TestBillingRun:
    """Test a full billing run."""

    def test_bills_due_contracts(self, engine, repository, sink, due_contracts):
        result = engine.execute_billing_run(AS_OF)

        assert result.success
        assert result.total_customers == 2
        assert result.processed_customers == 2
        assert result.invoices_created == 2
        # c-1: $100 base + 500 calls over commitment at $0.10; c-2: $100 base
        assert result.total_billed == Decimal("250.00")
        assert result.errors == []

        invoice = repository.find_invoice("c-1", date(2024, 2, 1), AS_OF)
        assert invoice.total == Decimal("150.00")
        assert repository.find_invoice("c-later", date(2024, 3, 1), date(2024, 4, 1)) is None

        job = repository.get_job(result.job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.invoices_created == 2
        assert job.metadata["total_billed"] == "250.0000"
        assert len(sink.of_type(EventType.BILLING_JOB_COMPLETED)) == 1

    def test_contracts_advance(self, engine, repository, due_contracts):
        engine.execute_billing_run(AS_OF)
        contract = repository.get_contract("c-1")
        assert contract.next_billing_date == date(2024, 4, 1)
        assert contract.billing_cycle == 2
        assert contract.last_billed_at == AS_OF
        assert contract.billing_anchor_day == 1

    def test_rerun_of_completed_date_is_noop(self, engine, repository, due_contracts):
        """Verify a completed date returns the same job and creates nothing."""
        first = engine.execute_billing_run(AS_OF)
        second = engine.execute_billing_run(AS_OF)

        assert second.job_id == first.job_id
        assert second.already_processed
        assert second.success
        assert second.invoices_created == 0
        assert len(repository.list_invoices()) == 2
        assert repository.get_contract("c-1").billing_cycle == 2

    def test_no_contracts_due(self, engine):
        result = engine.execute_billing_run(AS_OF)
        assert result.success
        assert result.total_customers == 0
        assert result.invoices_created == 0

    def test_failing_contract_is_skipped(self, engine, repository, due_contracts, monkeypatch):
        """Verify one contract's failure is recorded without stopping the run."""
        generate = engine.invoices.generate_invoice

        def flaky(contract, *args):
            if contract.id == "c-2":
                raise RuntimeError("pricing unavailable")
            return generate(contract, *args)

        monkeypatch.setattr(engine.invoices, "generate_invoice", flaky)
        result = engine.execute_billing_run(AS_OF)

        assert result.success
        assert result.processed_customers == 1
        assert result.skipped_customers == 1
        assert result.invoices_created == 1
        assert result.errors == ["Contract c-2: pricing unavailable"]
        assert repository.get_contract("c-2").billing_cycle == 1
        assert repository.get_job(result.job_id).metadata["errors"] == result.errors

    def test_discovery_failure_fails_job(self, engine, repository, sink, due_contracts, monkeypatch):
        """Verify a run-level failure marks the job FAILED and a retry gets a new job."""
        def broken(effective_date, customer_id=None):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(repository, "find_contracts_due", broken)
        with pytest.raises(RuntimeError):
            engine.execute_billing_run(AS_OF)

        failed = repository.get_job_by_date(AS_OF)
        assert failed.status == JobStatus.FAILED
        assert failed.error_message == "database unavailable"
        assert len(sink.of_type(EventType.BILLING_JOB_FAILED)) == 1

        monkeypatch.undo()
        retry = engine.execute_billing_run(AS_OF)
        assert retry.job_id != failed.id
        assert retry.success
        assert retry.invoices_created == 2
        assert repository.get_job(retry.job_id).metadata["retry_of"] == failed.id

    def test_running_job_is_not_duplicated(self, engine, repository, due_contracts):
        job = engine.jobs.acquire_or_return(AS_OF)
        engine.jobs.start(job.id)

        result = engine.execute_billing_run(AS_OF)
        assert result.job_id == job.id
        assert result.status == JobStatus.RUNNING
        assert result.errors == ["Billing job for 2024-03-01 is already RUNNING"]
        assert repository.list_invoices() == []

    def test_cancellation_between_contracts(self, repository, clock, due_contracts):
        """Verify a cancelled run stops before its next contract and keeps committed invoices."""
        sink = CancellingSink(None, AS_OF)
        engine = BillingEngine(repository, events=sink, clock=clock)
        sink.jobs = engine.jobs

        result = engine.execute_billing_run(AS_OF)
        assert result.status == JobStatus.CANCELLED
        assert result.processed_customers == 1
        assert result.invoices_created == 1
        assert len(repository.list_invoices()) == 1
        assert repository.get_job(result.job_id).status == JobStatus.CANCELLED
        assert sink.of_type(EventType.BILLING_JOB_COMPLETED) == []


class TestMonthEndScheduling:
    """Test billing dates anchored at the end of the month."""

    @pytest.mark.parametrize("year,february_end", [(2023, 28), (2024, 29)])
    def test_month_end_anchor(self, engine, repository, year, february_end):
        repository.insert_contract(make_contract(next_billing=date(year, 1, 31)))

        engine.execute_billing_run(date(year, 1, 31))
        contract = repository.get_contract("contract-1")
        assert contract.next_billing_date == date(year, 2, february_end)
        assert contract.billing_anchor_day == 31

        engine.execute_billing_run(date(year, 2, february_end))
        contract = repository.get_contract("contract-1")
        assert contract.next_billing_date == date(year, 3, 31)
        assert contract.billing_cycle == 3
        assert repository.find_invoice("contract-1", date(year, 1, february_end), date(year, 2, february_end))


class TestCustomerBilling:
    """Test billing a single customer outside the dated run."""

    def test_bill_customer(self, engine, repository, due_contracts):
        result = engine.bill_customer("acme", AS_OF)
        assert result.success
        assert result.total_customers == 2
        assert result.invoices_created == 2
        assert repository.get_contract("c-1").billing_cycle == 1
        assert repository.get_job_by_date(AS_OF) is None

    def test_scheduled_run_reuses_customer_invoices(self, engine, repository, due_contracts):
        """Verify the dated run counts only invoices it created."""
        engine.bill_customer("acme", AS_OF)
        result = engine.execute_billing_run(AS_OF)
        assert result.processed_customers == 2
        assert result.invoices_created == 1
        assert repository.get_contract("c-1").billing_cycle == 2

    def test_missing_next_billing_date_uses_run_date(self, engine, repository):
        repository.insert_contract(make_contract(next_billing=None))
        engine.bill_customer("customer-1", date(2024, 5, 10))
        assert repository.find_invoice("contract-1", date(2024, 4, 10), date(2024, 5, 10)) is not None

    def test_unknown_customer(self, engine):
        with pytest.raises(NotFoundError):
            engine.bill_customer("nobody", AS_OF)


class TestReporting:
    """Test summaries returned to callers."""

    def test_run_billing_job_summary(self, engine, due_contracts):
        assert engine.run_billing_job(AS_OF) == {
            "success": True,
            "invoicesCreated": 2,
            "totalCustomers": 2,
            "alreadyProcessed": False,
        }

    def test_rerun_reports_no_new_invoices(self, engine, repository, due_contracts):
        """Verify a completed date reports zero created invoices on re-run."""
        engine.run_billing_job(AS_OF)
        summary = engine.run_billing_job(AS_OF)
        assert summary == {
            "success": True,
            "invoicesCreated": 0,
            "totalCustomers": 2,
            "alreadyProcessed": True,
        }
        assert len(repository.list_invoices()) == 2

    def test_run_billing_job_reports_failure(self, engine, repository, monkeypatch):
        def broken(effective_date, customer_id=None):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(repository, "find_contracts_due", broken)
        summary = engine.run_billing_job(AS_OF)
        assert summary["success"] is False
        assert summary["error"] == "database unavailable"

    def test_result_to_dict(self, engine, due_contracts):
        data = engine.execute_billing_run(AS_OF).to_dict()
        assert data["asOfDate"] == "2024-03-01"
        assert data["status"] == "COMPLETED"
        assert data["totalBilled"] == "250.0000"
        assert data["alreadyProcessed"] is False

    def test_total_billed_and_recent_jobs(self, engine, due_contracts):
        result = engine.execute_billing_run(AS_OF)
        assert engine.total_billed() == Decimal("250.00")
        assert engine.total_billed("globex") == Decimal("100.00")
        assert [job.id for job in engine.recent_jobs()] == [result.job_id]
        assert engine.job_status(result.job_id).status == JobStatus.COMPLETED
