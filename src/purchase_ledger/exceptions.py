"""Error taxonomy raised by the reconciliation core."""

from __future__ import annotations


class ReconciliationError(Exception):
    """Base class for every failure surfaced by the core operations."""


class ValidationError(ReconciliationError):
    """Raised when input is rejected before anything has been written."""


class NotFoundError(ReconciliationError):
    """Raised when a purchase or product variant does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} '{entity_id}' not found")


class ConcurrencyConflict(ReconciliationError):
    """Raised when a revision check or a stock compare-and-swap fails.

    The caller should re-read the purchase and retry the whole operation.
    """


class PersistenceError(ReconciliationError):
    """Raised when the store rejects a write.

    The transaction was rolled back, so nothing from the operation is
    visible and the operation may be retried.
    """

    def __init__(self, operation: str, ids: dict[str, str | None], detail: str = ""):
        self.operation = operation
        self.ids = ids
        self.detail = detail
        described = ", ".join(f"{key}={value}" for key, value in ids.items())
        message = f"{operation} failed ({described})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class PartialReconciliationError(PersistenceError):
    """Raised when the final commit failed and its outcome is unknown.

    The intent stays ``pending`` so an operator can compare the ledger with
    the projection and finish or undo the operation by hand.
    """


__all__ = [
    "ConcurrencyConflict",
    "NotFoundError",
    "PartialReconciliationError",
    "PersistenceError",
    "ReconciliationError",
    "ValidationError",
]
