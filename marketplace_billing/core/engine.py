"""
Billing run orchestration.

A run leases the billing job for its date, discovers the contracts due,
and for each one computes the period, aggregates usage, generates the
invoice and advances the contract. A failing contract is recorded and
skipped; it never aborts the run.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from ..storage.models import BillingJob, BillingTrigger, Contract, JobStatus
from ..storage.repository import BillingRepository
from .errors import NotFoundError
from .events import BillingJobCompleted, BillingJobFailed, EventSink, publish_safely
from .invoice import InvoiceGenerator
from .jobs import BillingJobService
from .ledger import CreditLedger
from .money import ZERO, to_decimal_string
from .periods import billing_period_for, next_billing_date


@dataclass(frozen=True)
class ContractUsage:
    contract_id: str
    period_start: date
    period_end: date
    total_quantity: int


@dataclass
class BillingRunResult:
    """Summary of one billing run, returned even when contracts fail."""
    job_id: str
    as_of_date: date
    status: JobStatus
    total_customers: int = 0
    processed_customers: int = 0
    skipped_customers: int = 0
    invoices_created: int = 0
    total_billed: Decimal = ZERO
    errors: List[str] = field(default_factory=list)
    already_processed: bool = False

    @property
    def success(self) -> bool:
        return self.status == JobStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "asOfDate": self.as_of_date.isoformat(),
            "status": self.status.value,
            "totalCustomers": self.total_customers,
            "processedCustomers": self.processed_customers,
            "skippedCustomers": self.skipped_customers,
            "invoicesCreated": self.invoices_created,
            "totalBilled": to_decimal_string(self.total_billed),
            "errors": list(self.errors),
            "alreadyProcessed": self.already_processed,
        }


class BillingEngine:
    """Runs billing for a date.

    Collaborators default to instances sharing the same repository, clock,
    event sink and logger.
    """

    def __init__(
        self,
        repository: BillingRepository,
        jobs: Optional[BillingJobService] = None,
        ledger: Optional[CreditLedger] = None,
        invoices: Optional[InvoiceGenerator] = None,
        events: Optional[EventSink] = None,
        clock: Callable[[], datetime] = datetime.now,
        logger: Optional[Any] = None,
    ):
        self.repository = repository
        self.events = events
        self.clock = clock
        self.log = logger or structlog.get_logger(__name__)
        self.jobs = jobs or BillingJobService(repository, clock=clock, logger=logger)
        self.ledger = ledger or CreditLedger(repository, events=events, clock=clock, logger=logger)
        self.invoices = invoices or InvoiceGenerator(
            repository, self.ledger, events=events, clock=clock, logger=logger
        )

    def find_contracts_due(self, effective_date: date) -> List[Contract]:
        """Active contracts with next_billing_date <= effective_date, oldest due first."""
        return self.repository.find_contracts_due(effective_date)

    def aggregate_usage(self, contract_id: str, period_start: date, period_end: date) -> ContractUsage:
        """Sum usage with period_start <= timestamp < period_end."""
        return ContractUsage(
            contract_id=contract_id,
            period_start=period_start,
            period_end=period_end,
            total_quantity=self.repository.sum_usage(contract_id, period_start, period_end),
        )

    def run_billing_job(self, as_of_date: date) -> Dict[str, Any]:
        """Run billing and report {success, invoicesCreated, totalCustomers, alreadyProcessed, error?}.

        Never raises; a run-level failure comes back with success False.
        Re-running a completed date reports zero invoices created and
        alreadyProcessed True.
        """
        try:
            result = self.execute_billing_run(as_of_date)
        except Exception as exc:
            return {
                "success": False,
                "invoicesCreated": 0,
                "totalCustomers": 0,
                "alreadyProcessed": False,
                "error": str(exc),
            }

        summary: Dict[str, Any] = {
            "success": result.success,
            "invoicesCreated": result.invoices_created,
            "totalCustomers": result.total_customers,
            "alreadyProcessed": result.already_processed,
        }
        if not result.success:
            summary["error"] = "; ".join(result.errors) or f"Billing job is {result.status.value}"
        return summary

    def execute_billing_run(
        self,
        effective_date: date,
        trigger: Union[BillingTrigger, str] = BillingTrigger.AUTOMATIC,
    ) -> BillingRunResult:
        """Bill every contract due on effective_date.

        Raises:
            Exception: Whatever contract discovery raised, after the job is
                marked FAILED
        """
        job = self.jobs.acquire_or_return(effective_date, trigger)
        log = self.log.bind(job_id=job.id, as_of_date=effective_date.isoformat())

        if job.status == JobStatus.COMPLETED:
            log.info("billing_run_already_completed")
            result = _result_from_job(job, already_processed=True)
            # counts describe this call, which invoiced nothing
            result.invoices_created = 0
            return result

        if not self.jobs.start(job.id):
            current = self.jobs.get_job(job.id) or job
            log.warning("billing_run_in_progress", status=current.status.value)
            result = _result_from_job(current)
            result.errors.append(f"Billing job for {effective_date.isoformat()} is already {current.status.value}")
            return result

        try:
            contracts = self.find_contracts_due(effective_date)
        except Exception as exc:
            self.jobs.fail(job.id, str(exc))
            publish_safely(self.events, BillingJobFailed(job.id, effective_date, str(exc)), self.log)
            raise

        self.jobs.set_total(job.id, len(contracts))
        log.info("billing_run_started", contracts=len(contracts))

        result = BillingRunResult(
            job_id=job.id,
            as_of_date=effective_date,
            status=JobStatus.RUNNING,
            total_customers=len(contracts),
        )

        for contract in contracts:
            if self.jobs.is_cancelled(job.id):
                log.warning("billing_run_cancelled", processed=result.processed_customers)
                result.status = JobStatus.CANCELLED
                break
            self._bill_contract(contract, effective_date, result, advance=True)
            self.jobs.update_progress(job.id, result.processed_customers, result.invoices_created)

        if result.status == JobStatus.CANCELLED or self.jobs.is_cancelled(job.id):
            result.status = JobStatus.CANCELLED
            return result

        self.jobs.complete(
            job.id,
            processed_customers=result.processed_customers,
            invoices_created=result.invoices_created,
            metadata={
                "skipped_customers": result.skipped_customers,
                "total_billed": to_decimal_string(result.total_billed),
                "errors": result.errors,
            },
        )
        result.status = JobStatus.COMPLETED
        log.info(
            "billing_run_completed",
            invoices_created=result.invoices_created,
            skipped=result.skipped_customers,
            total_billed=to_decimal_string(result.total_billed),
        )
        publish_safely(
            self.events,
            BillingJobCompleted(job.id, effective_date, result.invoices_created, result.total_customers),
            self.log,
        )
        return result

    def bill_customer(self, customer_id: str, effective_date: date) -> BillingRunResult:
        """Invoice all active contracts of one customer outside the dated run.

        No job lease is taken and contracts are not advanced; the
        scheduled run for the period reuses these invoices and advances
        the contracts.

        Raises:
            NotFoundError: If the customer has no active contracts
        """
        contracts = self.repository.find_active_contracts_for_customer(customer_id)
        if not contracts:
            raise NotFoundError(f"No active contracts found for customer {customer_id}", customer_id=customer_id)

        result = BillingRunResult(
            job_id="",
            as_of_date=effective_date,
            status=JobStatus.RUNNING,
            total_customers=len(contracts),
        )
        for contract in contracts:
            self._bill_contract(contract, effective_date, result, advance=False)
        result.status = JobStatus.COMPLETED
        self.log.info(
            "customer_billed",
            customer_id=customer_id,
            invoices_created=result.invoices_created,
            skipped=result.skipped_customers,
        )
        return result

    def recent_jobs(self, limit: int = 10) -> List[BillingJob]:
        return self.jobs.recent_jobs(limit)

    def job_status(self, job_id: str) -> Optional[BillingJob]:
        return self.jobs.get_job(job_id)

    def total_billed(self, customer_id: Optional[str] = None) -> Decimal:
        total = ZERO
        for invoice in self.repository.list_invoices(customer_id):
            total += invoice.total
        return total

    def _bill_contract(
        self,
        contract: Contract,
        effective_date: date,
        result: BillingRunResult,
        advance: bool,
    ) -> None:
        log = self.log.bind(contract_id=contract.id)
        try:
            period_start, period_end, used_fallback = billing_period_for(
                contract.next_billing_date, effective_date
            )
            if used_fallback:
                log.warning("billing_period_fallback", effective_date=effective_date.isoformat())

            usage = self.aggregate_usage(contract.id, period_start, period_end)
            existed = self.repository.find_invoice(contract.id, period_start, period_end) is not None
            invoice = self.invoices.generate_invoice(
                contract,
                usage.total_quantity,
                period_start,
                period_end,
                contract.billing_cycle,
            )

            if advance:
                anchor_day = contract.billing_anchor_day or period_end.day
                self.repository.advance_contract(
                    contract.id,
                    next_billing_date(effective_date, anchor_day=anchor_day),
                    effective_date,
                    anchor_day=anchor_day,
                )
        except Exception as exc:
            log.warning("contract_billing_failed", error=str(exc))
            result.errors.append(f"Contract {contract.id}: {exc}")
            result.skipped_customers += 1
            return

        result.processed_customers += 1
        if not existed:
            result.invoices_created += 1
            result.total_billed += invoice.total


def _result_from_job(job: BillingJob, already_processed: bool = False) -> BillingRunResult:
    return BillingRunResult(
        job_id=job.id,
        as_of_date=job.as_of_date,
        status=job.status,
        total_customers=job.total_customers,
        processed_customers=job.processed_customers,
        invoices_created=job.invoices_created,
        errors=list(job.metadata.get("errors", [])),
        already_processed=already_processed,
    )
