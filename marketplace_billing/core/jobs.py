"""
Billing job state machine.

One job exists per as-of date and acts as the lease for that date:

    PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED

A completed date is a no-op on re-run, an in-flight job is returned
rather than duplicated, and a failed or cancelled job is replaced by a
fresh PENDING job so the date can be retried.
"""

from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from ..storage.models import BillingJob, BillingTrigger, JobStatus
from ..storage.repository import BillingRepository
from .errors import JobStateError, NotFoundError

ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
}

RETRYABLE = (JobStatus.FAILED, JobStatus.CANCELLED)

CANCELLED_REASON = "Job cancelled by user"


class BillingJobService:
    """Creates, leases and finishes billing jobs."""

    def __init__(
        self,
        repository: BillingRepository,
        clock: Callable[[], datetime] = datetime.now,
        logger: Optional[Any] = None,
    ):
        self.repository = repository
        self.clock = clock
        self.log = logger or structlog.get_logger(__name__)

    def acquire_or_return(
        self,
        as_of_date: date,
        trigger: Union[BillingTrigger, str] = BillingTrigger.AUTOMATIC,
        entity_id: Optional[str] = None,
    ) -> BillingJob:
        """Get the job for a date, creating or replacing it as needed.

        Args:
            as_of_date: Billing reference date
            trigger: What started the run
            entity_id: Entity the run is scoped to, if any

        Returns:
            A new PENDING job, or the existing job when it is COMPLETED,
            PENDING or RUNNING
        """
        trigger = BillingTrigger(trigger)
        metadata: Dict[str, Any] = {"trigger": trigger.value}
        if entity_id:
            metadata["entity_id"] = entity_id

        with self.repository.transaction():
            existing = self.repository.get_job_by_date(as_of_date)
            if existing is None:
                job = self.repository.create_job(as_of_date, self.clock(), metadata)
                self.log.info("billing_job_created", job_id=job.id, as_of_date=as_of_date.isoformat())
                return job

            if existing.status not in RETRYABLE:
                self.log.info(
                    "billing_job_exists",
                    job_id=existing.id,
                    status=existing.status.value,
                    as_of_date=as_of_date.isoformat(),
                )
                return existing

            self.repository.delete_job(existing.id)
            metadata["retry_of"] = existing.id
            job = self.repository.create_job(as_of_date, self.clock(), metadata)

        self.log.info(
            "billing_job_retry",
            job_id=job.id,
            previous_job_id=existing.id,
            previous_status=existing.status.value,
            as_of_date=as_of_date.isoformat(),
        )
        return job

    def start(self, job_id: str) -> bool:
        """Take the lease: PENDING -> RUNNING. False if another run holds it."""
        won = self.repository.try_mark_running(job_id)
        if won:
            self.log.info("billing_job_running", job_id=job_id)
        else:
            self.log.warning("billing_job_lease_lost", job_id=job_id)
        return won

    def update_progress(self, job_id: str, processed_customers: int, invoices_created: int) -> None:
        self.repository.update_job(
            job_id,
            processed_customers=processed_customers,
            invoices_created=invoices_created,
        )

    def set_total(self, job_id: str, total_customers: int) -> None:
        self.repository.update_job(job_id, total_customers=total_customers)

    def complete(
        self,
        job_id: str,
        processed_customers: int,
        invoices_created: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> BillingJob:
        job = self._transition(job_id, JobStatus.COMPLETED)
        return self.repository.update_job(
            job_id,
            status=JobStatus.COMPLETED,
            processed_customers=processed_customers,
            invoices_created=invoices_created,
            completed_at=self.clock(),
            metadata={**job.metadata, **(metadata or {})},
        )

    def fail(self, job_id: str, error_message: str) -> BillingJob:
        self._transition(job_id, JobStatus.FAILED)
        self.log.error("billing_job_failed", job_id=job_id, error=error_message)
        return self.repository.update_job(
            job_id,
            status=JobStatus.FAILED,
            error_message=error_message,
            completed_at=self.clock(),
        )

    def cancel_job(self, as_of_date: date) -> BillingJob:
        """Cancel the job for a date. A running job stops before its next contract.

        Raises:
            NotFoundError: If no job exists for the date
            JobStateError: If the job already finished
        """
        job = self.repository.get_job_by_date(as_of_date)
        if job is None:
            raise NotFoundError(f"No job found for date {as_of_date.isoformat()}", as_of_date=as_of_date.isoformat())
        self._transition(job.id, JobStatus.CANCELLED)
        self.log.info("billing_job_cancelled", job_id=job.id, as_of_date=as_of_date.isoformat())
        return self.repository.update_job(
            job.id,
            status=JobStatus.CANCELLED,
            error_message=CANCELLED_REASON,
            completed_at=self.clock(),
        )

    def is_cancelled(self, job_id: str) -> bool:
        job = self.repository.get_job(job_id)
        return job is not None and job.status == JobStatus.CANCELLED

    def get_job(self, job_id: str) -> Optional[BillingJob]:
        return self.repository.get_job(job_id)

    def get_job_for_date(self, as_of_date: date) -> Optional[BillingJob]:
        return self.repository.get_job_by_date(as_of_date)

    def recent_jobs(self, limit: int = 10) -> List[BillingJob]:
        return self.repository.list_recent_jobs(limit)

    def _transition(self, job_id: str, target: JobStatus) -> BillingJob:
        job = self.repository.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Billing job {job_id} not found", job_id=job_id)
        if target not in ALLOWED_TRANSITIONS.get(job.status, set()):
            raise JobStateError(
                f"Cannot move job with status {job.status.value} to {target.value}",
                job_id=job_id,
                status=job.status.value,
            )
        return job
