"""
Error taxonomy for the payout core.

Every error carries a machine readable ``code`` and the HTTP status the API
layer answers with. Transient processor errors are retried within a budget;
validation and state errors are raised immediately; data-integrity errors
are persisted as flags for manual review.
"""
from typing import Any, Dict, Optional


class PayoutCoreError(Exception):
    """Base exception for payout core errors."""

    code = "payout_core_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize error.

        Args:
            message: Human readable message
            code: Machine readable code (defaults to the class code)
            details: Extra context for logs and API responses
        """
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(PayoutCoreError):
    """Raised when a request violates a validation or policy rule."""

    code = "validation_error"
    status_code = 400


class RefundValidationError(ValidationError):
    """Raised when a refund request cannot be accepted."""

    code = "refund_validation_error"


class NoRouteAvailableError(ValidationError):
    """Raised when no processor / merchant account can take a charge."""

    code = "no_route_available"


class NotFoundError(PayoutCoreError):
    """Raised when a referenced entity does not exist."""

    code = "not_found"
    status_code = 404


class InvalidTransitionError(PayoutCoreError):
    """Raised when a state machine is asked for an illegal transition."""

    code = "invalid_transition"
    status_code = 409


class DataIntegrityError(PayoutCoreError):
    """Raised when stored data and incoming data disagree."""

    code = "data_integrity_error"
    status_code = 409


class ConflictingDuplicateError(DataIntegrityError):
    """Raised when a duplicate key arrives with a different payload."""

    code = "conflicting_duplicate"


class ProcessorError(PayoutCoreError):
    """Base exception for processor call failures."""

    code = "processor_error"
    status_code = 502

    def __init__(
        self,
        message: str,
        processor_id: Optional[str] = None,
        reason_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details=details)
        self.processor_id = processor_id
        self.reason_code = reason_code or self.code


class TransientProcessorError(ProcessorError):
    """Raised for failures worth retrying (timeouts, 5xx, rate limits)."""

    code = "processor_transient"


class ProcessorTimeoutError(TransientProcessorError):
    """Raised when a processor call exceeds its timeout."""

    code = "processor_timeout"


class LedgerError(PayoutCoreError):
    """Raised when the ledger rejects or cannot accept a posting."""

    code = "ledger_error"
    status_code = 502


class LockAcquisitionError(PayoutCoreError):
    """Raised when a per-transaction lock cannot be acquired in time."""

    code = "lock_unavailable"
    status_code = 503
