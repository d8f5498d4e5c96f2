"""Stock ledger and the per-variant on-hand projection.

Movements are append-only. Every movement is written together with the
matching change to ``ProductVariant.on_hand_quantity`` inside the caller's
transaction; the functions here flush but never commit, except for
:func:`adjust_stock` and :func:`record_movements`, which are complete
operations of their own.

The projection is a cached counter. It is clamped at zero while the ledger
keeps the full requested quantities, so :func:`audit_stock` can expose a
deficit that the counter hides.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import models, schemas
from .config import get_settings
from .constants import SUMMARY_PERIOD_DAYS, MovementType, ReferenceType, SummaryPeriod
from .exceptions import (
    ConcurrencyConflict,
    NotFoundError,
    PersistenceError,
    ReconciliationError,
    ValidationError,
)

log = logging.getLogger(__name__)


def current_stock(db: Session, variant_id: str) -> int:
    """Return the cached on-hand quantity for *variant_id*."""

    statement = select(models.ProductVariant.on_hand_quantity).where(models.ProductVariant.id == variant_id)
    quantity = db.execute(statement).scalar_one_or_none()
    if quantity is None:
        raise NotFoundError("Product variant", variant_id)
    return quantity


def apply_delta(db: Session, variant_id: str, delta: int, *, retries: Optional[int] = None) -> int:
    """Apply a signed change to the projection and return the new quantity.

    The write is a compare-and-swap on ``ProductVariant.version`` so two
    writers touching the same variant cannot overwrite each other's result.
    """

    attempts = retries if retries is not None else get_settings().projection_retry_limit
    variant = models.ProductVariant
    for attempt in range(1, attempts + 1):
        row = db.execute(
            select(variant.on_hand_quantity, variant.version).where(variant.id == variant_id)
        ).one_or_none()
        if row is None:
            raise NotFoundError("Product variant", variant_id)

        target = row.on_hand_quantity + delta
        if target < 0:
            log.warning(
                "Clamping stock of variant '%s' at 0 (requested %d, deficit %d)",
                variant_id,
                target,
                -target,
            )
            target = 0

        result = db.execute(
            update(variant)
            .where(variant.id == variant_id, variant.version == row.version)
            .values(on_hand_quantity=target, version=variant.version + 1, updated_at=models.utcnow())
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 1:
            return target
        log.warning("Stock of variant '%s' changed concurrently (attempt %d/%d)", variant_id, attempt, attempts)

    raise ConcurrencyConflict(f"Could not update stock of variant '{variant_id}' after {attempts} attempts")


def record_movement(
    db: Session,
    variant_id: str,
    movement_type: MovementType | str,
    quantity: int,
    *,
    reference_type: ReferenceType | str,
    reference_id: Optional[str] = None,
    notes: Optional[str] = None,
    delta: Optional[int] = None,
) -> models.StockMovement:
    """Append a movement and apply its signed delta to the projection."""

    movement_type = MovementType(movement_type)
    reference_type = ReferenceType(reference_type)
    if quantity <= 0:
        raise ValidationError("Movement quantity must be greater than zero")
    if delta is None:
        if movement_type is MovementType.ADJUSTMENT:
            raise ValidationError("Adjustment movements need an explicit signed delta")
        delta = quantity if movement_type is MovementType.IN else -quantity
    elif abs(delta) != quantity:
        raise ValidationError("Movement delta must match its quantity")

    current_stock(db, variant_id)

    movement = models.StockMovement(
        product_variant_id=variant_id,
        type=movement_type.value,
        quantity=quantity,
        delta=delta,
        reference_type=reference_type.value,
        reference_id=reference_id,
        notes=notes,
    )
    db.add(movement)
    db.flush()
    apply_delta(db, variant_id, delta)
    return movement


def adjust_stock(
    db: Session, variant_id: str, new_quantity: int, notes: Optional[str] = None
) -> Optional[models.StockMovement]:
    """Set the on-hand count of a variant by hand, recording the difference.

    Returns the adjustment movement, or ``None`` when the count already
    matches.
    """

    if new_quantity < 0:
        raise ValidationError("Stock cannot be adjusted below zero")

    current = current_stock(db, variant_id)
    delta = new_quantity - current
    if delta == 0:
        return None

    try:
        movement = record_movement(
            db,
            variant_id,
            MovementType.ADJUSTMENT,
            abs(delta),
            reference_type=ReferenceType.ADJUSTMENT,
            notes=notes or "Manual stock adjustment",
            delta=delta,
        )
        db.commit()
    except ReconciliationError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        log.error("Stock adjustment failed for variant '%s': %s", variant_id, exc)
        raise PersistenceError("adjust_stock", {"variant_id": variant_id}, str(exc)) from exc

    log.info("Adjusted stock of variant '%s' from %d to %d", variant_id, current, new_quantity)
    return movement


def record_movements(db: Session, entries: Sequence[schemas.StockMovementCreate]) -> list[models.StockMovement]:
    """Book manual movements as one unit: either every entry is recorded or none is."""

    if not entries:
        raise ValidationError("At least one movement is required")

    planned = []
    for index, entry in enumerate(entries, start=1):
        movement_type = MovementType(entry.type)
        reference_type = ReferenceType(entry.reference_type)
        if reference_type is ReferenceType.PURCHASE:
            raise ValidationError(f"Movement {index}: purchase movements are booked by purchase operations")
        is_adjustment = movement_type is MovementType.ADJUSTMENT
        if entry.quantity == 0 or (entry.quantity < 0 and not is_adjustment):
            raise ValidationError(f"Movement {index}: quantity must be greater than zero")
        planned.append((entry, movement_type, reference_type, entry.quantity if is_adjustment else None))

    try:
        recorded = [
            record_movement(
                db,
                entry.product_variant_id,
                movement_type,
                abs(entry.quantity),
                reference_type=reference_type,
                reference_id=entry.reference_id,
                notes=entry.notes,
                delta=delta,
            )
            for entry, movement_type, reference_type, delta in planned
        ]
        db.commit()
    except ReconciliationError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        variant_ids = ",".join(sorted({entry.product_variant_id for entry in entries}))
        log.error("Recording %d movement(s) failed for %s: %s", len(entries), variant_ids, exc)
        raise PersistenceError("record_movements", {"variant_ids": variant_ids}, str(exc)) from exc

    log.info("Recorded %d manual movement(s)", len(recorded))
    return recorded


def list_movements(
    db: Session,
    variant_id: str,
    *,
    limit: Optional[int] = None,
    reference_id: Optional[str] = None,
) -> list[models.StockMovement]:
    """Return the movement history of a variant, newest first."""

    current_stock(db, variant_id)
    statement = select(models.StockMovement).where(models.StockMovement.product_variant_id == variant_id)
    if reference_id:
        statement = statement.where(models.StockMovement.reference_id == reference_id)
    statement = statement.order_by(models.StockMovement.created_at.desc(), models.StockMovement.id.desc())
    if limit:
        statement = statement.limit(limit)
    return list(db.scalars(statement))


def movements_for_reference(db: Session, reference_id: str) -> list[models.StockMovement]:
    statement = (
        select(models.StockMovement)
        .where(
            models.StockMovement.reference_type == ReferenceType.PURCHASE.value,
            models.StockMovement.reference_id == reference_id,
        )
        .order_by(models.StockMovement.id)
    )
    return list(db.scalars(statement))


def movement_summary(
    db: Session,
    variant_id: str,
    period: SummaryPeriod | str = SummaryPeriod.MONTH,
    *,
    now: Optional[datetime] = None,
) -> schemas.MovementSummary:
    """Summarise the movements of a variant over the last day, week or month."""

    period = SummaryPeriod(period)
    since = (now or models.utcnow()) - timedelta(days=SUMMARY_PERIOD_DAYS[period])
    movements = [m for m in list_movements(db, variant_id) if m.created_at >= since]

    def _total(kind: MovementType) -> int:
        return sum(m.quantity for m in movements if m.type == kind.value)

    return schemas.MovementSummary(
        product_variant_id=variant_id,
        period=period.value,
        total_in=_total(MovementType.IN),
        total_out=_total(MovementType.OUT),
        total_adjustments=_total(MovementType.ADJUSTMENT),
        transaction_count=len(movements),
        last_movement=schemas.StockMovementRead.model_validate(movements[0]) if movements else None,
    )


def ledger_quantity(db: Session, variant_id: str) -> int:
    """Recompute the stock of a variant from its movements."""

    statement = select(func.coalesce(func.sum(models.StockMovement.delta), 0)).where(
        models.StockMovement.product_variant_id == variant_id
    )
    return int(db.execute(statement).scalar_one())


def audit_variant(db: Session, variant_id: str) -> schemas.StockAudit:
    projected = current_stock(db, variant_id)
    return schemas.StockAudit(
        product_variant_id=variant_id,
        ledger_quantity=ledger_quantity(db, variant_id),
        projected_quantity=projected,
    )


def audit_stock(db: Session, *, only_discrepancies: bool = False) -> list[schemas.StockAudit]:
    """Compare the projection of every variant with its ledger sum."""

    sums = (
        select(
            models.StockMovement.product_variant_id.label("variant_id"),
            func.sum(models.StockMovement.delta).label("ledger_quantity"),
        )
        .group_by(models.StockMovement.product_variant_id)
        .subquery()
    )
    statement = (
        select(
            models.ProductVariant.id,
            models.ProductVariant.on_hand_quantity,
            func.coalesce(sums.c.ledger_quantity, 0),
        )
        .outerjoin(sums, sums.c.variant_id == models.ProductVariant.id)
        .order_by(models.ProductVariant.id)
    )
    audits = [
        schemas.StockAudit(
            product_variant_id=variant_id,
            ledger_quantity=int(ledger),
            projected_quantity=projected,
        )
        for variant_id, projected, ledger in db.execute(statement)
    ]
    if only_discrepancies:
        audits = [audit for audit in audits if not audit.is_consistent]
    return audits
