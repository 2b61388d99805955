"""
Exception hierarchy for the ledger engine.

All errors derive from ValueError so callers that catch ValueError keep
working.
"""

from typing import Any, Dict, Optional


class LedgerError(ValueError):
    """Base exception for all ledger engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(LedgerError):
    """Input rejected before any mutation."""

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        self.field = field
        details = kwargs.pop("details", {}) or {}
        if field:
            details["field"] = field
        super().__init__(message, details)


class NotFoundError(LedgerError):
    """A referenced account, transaction or record does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} {entity_id} not found",
            {"entity_type": entity_type, "entity_id": entity_id},
        )


class InconsistentScheduleError(LedgerError):
    """Amortization produced a negative principal component."""

    def __init__(self, message: str, payment_amount=None, interest=None):
        details = {}
        if payment_amount is not None:
            details["payment_amount"] = str(payment_amount)
        if interest is not None:
            details["interest"] = str(interest)
        super().__init__(message, details)


class CreditLimitExceededError(ValidationError):
    """Submission would push a credit card past its limit."""


class InvalidStateError(LedgerError):
    """Illegal state transition, e.g. paying a cancelled EMI."""


class StorageTimeoutError(LedgerError):
    """A persistence call did not finish within its timeout."""
