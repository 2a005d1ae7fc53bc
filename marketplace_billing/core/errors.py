"""
Billing error taxonomy.

Validation failures are raised to the caller immediately. Per-contract
processing failures are caught by the orchestrator and recorded. Soft
business failures are never raised; they come back as result objects.
"""

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base error for the billing core.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        context: Additional data about the failure
    """

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a plain dictionary for logs and summaries."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
        }


class ValidationError(BillingError, ValueError):
    """Invalid input: surfaced immediately, never retried."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, "VALIDATION_ERROR", {"field": field} if field else None)
        self.field = field


class ProrationError(ValidationError):
    """Invalid proration inputs (day counts or date windows)."""


class NotFoundError(BillingError):
    """A referenced record does not exist."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message, "NOT_FOUND", context)


class JobStateError(BillingError):
    """Illegal billing job state transition."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message, "JOB_STATE_ERROR", context)


class DataIntegrityError(BillingError):
    """Persisted data violates a ledger invariant."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message, "DATA_INTEGRITY_ERROR", context)
