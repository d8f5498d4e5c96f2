"""Database access helpers for purchases and product variants."""

from __future__ import annotations

import logging
from datetime import date
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from . import ledger, models, schemas
from .constants import MovementType, ReferenceType
from .exceptions import NotFoundError, PersistenceError, ReconciliationError, ValidationError

log = logging.getLogger(__name__)


def get_purchase(db: Session, purchase_id: str, *, include_deleted: bool = False) -> Optional[models.Purchase]:
    statement = (
        select(models.Purchase)
        .where(models.Purchase.id == purchase_id)
        .options(selectinload(models.Purchase.items))
    )
    if not include_deleted:
        statement = statement.where(models.Purchase.deleted_at.is_(None))
    return db.scalars(statement).first()


def get_active_purchase(db: Session, purchase_id: str, *, lock: bool = False) -> models.Purchase:
    """Read a live purchase and its items straight from the store.

    Objects already in the session are overwritten so decisions are never
    made on stale state. With *lock*, the row is held for the rest of the
    transaction where the database supports it.
    """

    statement = (
        select(models.Purchase)
        .where(models.Purchase.id == purchase_id, models.Purchase.deleted_at.is_(None))
        .options(selectinload(models.Purchase.items))
        .execution_options(populate_existing=True)
    )
    if lock:
        statement = statement.with_for_update()
    purchase = db.scalars(statement).first()
    if purchase is None:
        raise NotFoundError("Purchase", purchase_id)
    return purchase


def list_purchases(
    db: Session,
    *,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    status: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
) -> list[models.Purchase]:
    statement = (
        select(models.Purchase)
        .where(models.Purchase.deleted_at.is_(None))
        .options(selectinload(models.Purchase.items))
    )
    if start_date:
        statement = statement.where(models.Purchase.date >= start_date)
    if end_date:
        statement = statement.where(models.Purchase.date <= end_date)
    if status:
        statement = statement.where(models.Purchase.payment_status == status)
    statement = statement.order_by(models.Purchase.created_at.desc()).offset(skip).limit(limit)
    return list(db.scalars(statement))


def list_returns(db: Session, purchase_id: str) -> list[models.Purchase]:
    """Return the live return records created against *purchase_id*."""

    statement = (
        select(models.Purchase)
        .where(models.Purchase.return_of_id == purchase_id, models.Purchase.deleted_at.is_(None))
        .options(selectinload(models.Purchase.items))
        .order_by(models.Purchase.created_at)
    )
    return list(db.scalars(statement))


def returned_quantities(db: Session, purchase_id: str) -> dict[str, int]:
    """Sum the quantities already returned against *purchase_id* per variant."""

    statement = (
        select(models.PurchaseItem.product_variant_id, func.sum(models.PurchaseItem.quantity))
        .join(models.Purchase, models.PurchaseItem.purchase_id == models.Purchase.id)
        .where(models.Purchase.return_of_id == purchase_id, models.Purchase.deleted_at.is_(None))
        .group_by(models.PurchaseItem.product_variant_id)
    )
    return {variant_id: int(quantity) for variant_id, quantity in db.execute(statement)}


def get_variant(db: Session, variant_id: str) -> Optional[models.ProductVariant]:
    return db.get(models.ProductVariant, variant_id)


def list_variants(
    db: Session, *, skip: int = 0, limit: int = 50, include_inactive: bool = False
) -> list[models.ProductVariant]:
    statement = select(models.ProductVariant)
    if not include_inactive:
        statement = statement.where(models.ProductVariant.is_active.is_(True))
    statement = statement.order_by(models.ProductVariant.product_id, models.ProductVariant.id)
    return list(db.scalars(statement.offset(skip).limit(limit)))


def create_variant(db: Session, payload: schemas.VariantCreate) -> models.ProductVariant:
    """Create a variant; opening stock enters through the ledger as an adjustment."""

    variant = models.ProductVariant(
        product_id=payload.product_id,
        color=payload.color,
        size=payload.size,
        sku=payload.sku,
        on_hand_quantity=0,
        is_active=payload.is_active,
    )
    db.add(variant)
    try:
        db.flush()
        if payload.on_hand_quantity:
            ledger.record_movement(
                db,
                variant.id,
                MovementType.ADJUSTMENT,
                payload.on_hand_quantity,
                reference_type=ReferenceType.ADJUSTMENT,
                notes="Opening stock",
                delta=payload.on_hand_quantity,
            )
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationError(f"SKU '{payload.sku}' already exists") from exc
    except ReconciliationError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        log.error("Could not create variant %s/%s/%s: %s", payload.product_id, payload.color, payload.size, exc)
        ids = {"product_id": payload.product_id, "sku": payload.sku}
        raise PersistenceError("create_variant", ids, str(exc)) from exc
    db.refresh(variant)
    log.info("Created variant '%s' with opening stock %d", variant.id, variant.on_hand_quantity)
    return variant
