# Overview: Domain error taxonomy shared by services and routes.
"""
Error classes distinguish what a caller can rely on after a failure:

- "nothing happened": ValidationError, NotFoundError, InvalidStateError,
  InsufficientStockError, ExpiredStockError
- "sale failed but stock was restored": SaleFailedError
- "stock state needs review": CompensationFailure
"""
from __future__ import annotations


class DomainError(Exception):
    """Base class for every error raised by the inventory engine."""

    code = "domain_error"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "details": self.details}


class ValidationError(DomainError, ValueError):
    """400-level input problem, rejected before any state change."""

    code = "validation_error"


class ConflictError(DomainError, ValueError):
    """409-level business rule conflict (e.g., duplicate product name)."""

    code = "conflict"


class NotFoundError(DomainError):
    code = "not_found"


class InvalidStateError(DomainError):
    """Operation is not allowed in the document's current lifecycle state."""

    code = "invalid_state"


class InsufficientStockError(DomainError):
    code = "insufficient_stock"


class ExpiredStockError(DomainError):
    code = "expired_stock"


class PersistenceError(DomainError):
    """A write to the backing store failed."""

    code = "persistence_error"


class StaleBatchError(PersistenceError):
    """Compare-and-set on a batch's remaining quantity lost a race."""

    code = "stale_batch"


class SaleFailedError(DomainError):
    """Commit failed and every applied deduction was restored."""

    code = "sale_rolled_back"


class CompensationFailure(DomainError):
    """
    Rollback could not restore one or more batches.

    details["owed"] lists {batch_id, quantity} still to be added back by hand.
    """

    code = "compensation_failed"
