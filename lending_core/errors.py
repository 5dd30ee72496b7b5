"""
Lending Error Types

Policy and validation errors are recoverable by the operator; transition
errors indicate a caller bug; transient errors are retried with backoff.
"""

from typing import Any, Dict, Optional


class LendingError(Exception):
    """Base class for all lending engine errors"""

    code = "lending_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        result = {"error": self.code, "message": self.message, "retryable": self.retryable}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(LendingError):
    """Bad input shape or range, e.g. a non-positive principal"""
    code = "validation_error"


class NotFoundError(ValidationError):
    """Referenced member, loan or installment does not exist"""
    code = "not_found"


class PolicyError(LendingError):
    """Increment level, open loan, or write-off eligibility rule violated"""
    code = "policy_error"


class InvalidTermError(PolicyError):
    """Requested term is not enabled at the member's increment level"""
    code = "invalid_term"


class InvalidTransitionError(LendingError):
    """Illegal loan lifecycle move"""
    code = "invalid_transition"


class InvalidAmountError(ValidationError):
    """Zero, negative, or otherwise nonsensical payment amount"""
    code = "invalid_amount"


class TransientError(LendingError):
    """Storage timeout or lock contention; safe to retry"""
    code = "transient_error"
    retryable = True


class ConcurrencyError(TransientError):
    """Loan row changed underneath a read-modify-write"""
    code = "concurrency_conflict"
