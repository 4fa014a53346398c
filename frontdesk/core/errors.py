"""
Error taxonomy for folio settlement.

- DistributionError: caller-correctable distribution input. Returned as a
  value by the distribution engine, raised by the orchestrator.
- ReconciliationError: the snapshot is structurally inconsistent.
- CollaboratorError: the folio backend failed. Carries the idempotency key so
  the same operation can be retried safely.
- ConcurrentAttemptError: a checkout is already running for the folio.
- StateViolationError: the folio status forbids the operation.
- IdempotencyConflictError: a key was reused with a different payload.
"""

from enum import Enum
from typing import Any, Dict, Optional


class FolioError(Exception):
    """Base class. Every error carries a code and the figures behind it."""

    code: str = "folio_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class DistributionErrorCode(str, Enum):
    EMPTY_TARGET_SET = "EmptyTargetSet"
    NON_POSITIVE_SHARE = "NonPositiveShare"
    NOTHING_TO_DISTRIBUTE = "NothingToDistribute"
    TOO_MANY_TARGETS = "TooManyTargets"
    PERCENTAGE_SUM_MISMATCH = "PercentageSumMismatch"
    FIXED_SUM_MISMATCH = "FixedSumMismatch"
    DUPLICATE_TARGET = "DuplicateTarget"
    UNKNOWN_PARTY = "UnknownParty"


class DistributionError(FolioError):
    def __init__(
        self,
        reason: DistributionErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.reason = reason
        self.code = reason.value

    @property
    def delta(self):
        """Computed sum delta for FixedSumMismatch, None otherwise."""
        return self.details.get("delta")


class ReconciliationError(FolioError):
    code = "reconciliation_error"


class CollaboratorError(FolioError):
    code = "collaborator_error"

    def __init__(
        self,
        message: str,
        *,
        operation: str,
        idempotency_key: Optional[str] = None,
        status_code: Optional[int] = None,
        already_applied: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        details = dict(details or {})
        details.setdefault("operation", operation)
        if idempotency_key:
            details.setdefault("idempotency_key", idempotency_key)
        if status_code is not None:
            details.setdefault("status_code", status_code)
        super().__init__(message, details)
        self.operation = operation
        self.idempotency_key = idempotency_key
        self.status_code = status_code
        self.already_applied = already_applied


class ConcurrentAttemptError(FolioError):
    code = "concurrent_attempt"

    def __init__(self, folio_id: str):
        super().__init__(
            f"A checkout attempt is already in progress for folio {folio_id}",
            {"folio_id": folio_id},
        )
        self.folio_id = folio_id


class StateViolationError(FolioError):
    code = "state_violation"

    def __init__(self, folio_id: str, status: str, operation: str, reason: Optional[str] = None):
        message = f"Folio {folio_id} is {status}; {operation} is not permitted"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            {"folio_id": folio_id, "status": status, "operation": operation},
        )
        self.folio_id = folio_id
        self.status = status
        self.operation = operation


class IdempotencyConflictError(FolioError):
    code = "idempotency_key_reused"

    def __init__(self, key: str, operation: str):
        super().__init__(
            f"Idempotency key {key} was already used with a different {operation} payload",
            {"key": key, "operation": operation},
        )
        self.key = key
        self.operation = operation
