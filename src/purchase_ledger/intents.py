"""Reconciliation intents: an outbox wrapped around every stock mutation.

Each mutation first commits a ``pending`` intent, then runs all of its
writes in one transaction which also flips the intent to ``applied``. A
replayed key returns the recorded outcome instead of touching stock twice,
and intents stuck in ``pending`` point an operator at operations whose
outcome is unknown.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import models
from .constants import IntentStatus
from .exceptions import ConcurrencyConflict, PartialReconciliationError, PersistenceError, ReconciliationError

log = logging.getLogger(__name__)


def intent_key(
    operation: str,
    *,
    idempotency_key: Optional[str] = None,
    purchase_id: Optional[str] = None,
    expected_revision: Optional[int] = None,
    fingerprint: Optional[str] = None,
) -> str:
    """Derive the outbox key for an operation.

    An explicit idempotency key wins. An edit made against a known revision
    is keyed by ``(purchase, revision, fingerprint)``, so only a resend of
    the same edit replays. Anything else gets a fresh key.
    """

    if idempotency_key:
        return f"{operation}:{idempotency_key}"
    if purchase_id and expected_revision is not None:
        key = f"{operation}:{purchase_id}:{expected_revision}"
        return f"{key}:{fingerprint}" if fingerprint else key
    return f"{operation}:{models.new_id()}"


def get_intent(db: Session, key: str) -> Optional[models.ReconciliationIntent]:
    return db.get(models.ReconciliationIntent, key, populate_existing=True)


def pending_intents(db: Session) -> list[models.ReconciliationIntent]:
    """Return intents whose outcome was never recorded, oldest first."""

    statement = (
        select(models.ReconciliationIntent)
        .where(models.ReconciliationIntent.status == IntentStatus.PENDING.value)
        .order_by(models.ReconciliationIntent.created_at)
    )
    return list(db.scalars(statement))


def _begin(db: Session, key: str, operation: str, purchase_id: Optional[str]) -> None:
    intent = get_intent(db, key)
    if intent is None:
        db.add(
            models.ReconciliationIntent(
                key=key,
                operation=operation,
                purchase_id=purchase_id,
                status=IntentStatus.PENDING.value,
            )
        )
    else:
        intent.status = IntentStatus.PENDING.value
        intent.error = None
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        log.error("Could not open intent '%s' for %s: %s", key, operation, exc)
        raise PersistenceError(operation, {"intent": key, "purchase_id": purchase_id}, str(exc)) from exc


def _fail(db: Session, key: str, error: str) -> None:
    intent = get_intent(db, key)
    if intent is None:
        return
    intent.status = IntentStatus.FAILED.value
    intent.error = error
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        log.exception("Could not mark intent '%s' as failed; it stays pending", key)


def execute(
    db: Session,
    operation: str,
    key: str,
    ids: dict[str, Optional[str]],
    work: Callable[[], Optional[str]],
    *,
    precheck: Optional[Callable[[], None]] = None,
) -> Optional[str]:
    """Run *work* under the intent *key* and return the purchase id it reports.

    *precheck* runs after the replay lookup and before anything is written,
    so validation failures leave no trace in the store.
    """

    existing = get_intent(db, key)
    if existing is not None:
        if existing.status == IntentStatus.APPLIED:
            log.info("Replaying %s for intent '%s'", operation, key)
            return existing.purchase_id
        if existing.status == IntentStatus.PENDING:
            raise ConcurrencyConflict(f"Operation '{key}' is already in progress or awaiting reconciliation")

    if precheck is not None:
        precheck()

    _begin(db, key, operation, ids.get("purchase_id"))
    try:
        purchase_id = work()
        intent = get_intent(db, key)
        intent.status = IntentStatus.APPLIED.value
        if purchase_id:
            intent.purchase_id = purchase_id
        db.flush()
    except StaleDataError as exc:
        db.rollback()
        _fail(db, key, str(exc))
        raise ConcurrencyConflict(f"{operation} lost a race on {ids}; re-read and retry") from exc
    except ReconciliationError as exc:
        db.rollback()
        _fail(db, key, str(exc))
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        log.error("%s failed for %s: %s", operation, ids, exc)
        _fail(db, key, str(exc))
        raise PersistenceError(operation, ids, str(exc)) from exc

    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        log.error("Commit of %s for %s failed; intent '%s' left pending: %s", operation, ids, key, exc)
        raise PartialReconciliationError(operation, ids, str(exc)) from exc
    return purchase_id
