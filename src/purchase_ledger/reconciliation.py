"""Purchase-to-inventory reconciliation.

Stock moves if and only if a purchase is ``received``:

* creating a received purchase books one ``in`` movement per item;
* leaving ``received`` books ``out`` movements for the items it had
  contributed, before the items are replaced;
* entering ``received`` books ``in`` movements for the new items;
* editing a purchase that stays ``received`` reverses the old items and
  applies the new ones, unless the per-variant quantities are unchanged;
* deleting a received purchase reverses its items first.

Every operation runs in one transaction under a reconciliation intent (see
:mod:`purchase_ledger.intents`).
"""

from __future__ import annotations

import hashlib
import logging
from collections import Counter
from decimal import Decimal
from typing import Iterable, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from . import crud, intents, ledger, models, schemas
from .config import get_settings
from .constants import MovementType, PaymentStatus, ReferenceType
from .exceptions import ConcurrencyConflict, NotFoundError, ValidationError
from .ledger import current_stock

log = logging.getLogger(__name__)

ItemQuantities = Sequence[tuple[str, int]]


def validate_items(db: Session, items: Sequence[schemas.PurchaseItemPayload]) -> None:
    """Reject empty item lists, bad quantities or costs and unknown variants."""

    if not items:
        raise ValidationError("A purchase needs at least one item")
    for index, item in enumerate(items, start=1):
        if item.quantity <= 0:
            raise ValidationError(f"Item {index}: quantity must be greater than zero")
        if item.unit_cost < 0:
            raise ValidationError(f"Item {index}: unit cost cannot be negative")

    requested = {item.product_variant_id for item in items}
    known = set(db.scalars(select(models.ProductVariant.id).where(models.ProductVariant.id.in_(requested))))
    missing = sorted(requested - known)
    if missing:
        raise ValidationError(f"Unknown product variant(s): {', '.join(missing)}")


def _validate_header(payload: schemas.PurchaseCreate) -> None:
    if not payload.supplier_id or not payload.supplier_id.strip():
        raise ValidationError("Supplier is required")
    if payload.payment_status == PaymentStatus.RETURNED:
        raise ValidationError("Status 'returned' is reserved for return records")


def compute_subtotal(items: Iterable[schemas.PurchaseItemPayload]) -> Decimal:
    return sum((Decimal(item.quantity) * item.unit_cost for item in items), Decimal("0"))


def build_items(items: Sequence[schemas.PurchaseItemPayload]) -> list[models.PurchaseItem]:
    return [
        models.PurchaseItem(
            position=position,
            product_variant_id=item.product_variant_id,
            quantity=item.quantity,
            unit_cost=item.unit_cost,
            line_subtotal=Decimal(item.quantity) * item.unit_cost,
        )
        for position, item in enumerate(items)
    ]


def quantities(items: ItemQuantities) -> Counter[str]:
    """Total quantity per variant."""

    totals: Counter[str] = Counter()
    for variant_id, quantity in items:
        totals[variant_id] += quantity
    return totals


def payload_fingerprint(payload: schemas.PurchaseCreate) -> str:
    """Short digest of an edit's header, items and status."""

    body = payload.model_dump_json(exclude={"expected_revision"})
    return hashlib.sha256(body.encode("utf-8")).hexdigest()[:16]


def check_returned_quantities(db: Session, purchase_id: str, items: ItemQuantities) -> None:
    """Refuse edits that leave less of a variant than was already returned."""

    remaining = quantities(items)
    for variant_id, returned in crud.returned_quantities(db, purchase_id).items():
        if remaining[variant_id] < returned:
            raise ValidationError(
                f"Variant '{variant_id}' has {returned} returned; the purchase cannot keep "
                f"only {remaining[variant_id]}"
            )


def _pairs(items: Iterable[models.PurchaseItem] | Iterable[schemas.PurchaseItemPayload]) -> list[tuple[str, int]]:
    return [(item.product_variant_id, item.quantity) for item in items]


def apply_items(db: Session, purchase_id: str, items: ItemQuantities, notes: str) -> list[models.StockMovement]:
    """Book one ``in`` movement per item."""

    return [
        ledger.record_movement(
            db,
            variant_id,
            MovementType.IN,
            quantity,
            reference_type=ReferenceType.PURCHASE,
            reference_id=purchase_id,
            notes=notes,
        )
        for variant_id, quantity in items
    ]


def reverse_items(db: Session, purchase_id: str, items: ItemQuantities, notes: str) -> list[models.StockMovement]:
    """Book one ``out`` movement per item; the projection clamps at zero."""

    return [
        ledger.record_movement(
            db,
            variant_id,
            MovementType.OUT,
            quantity,
            reference_type=ReferenceType.PURCHASE,
            reference_id=purchase_id,
            notes=notes,
        )
        for variant_id, quantity in items
    ]


def _load(db: Session, purchase_id: Optional[str]) -> models.Purchase:
    purchase = crud.get_purchase(db, purchase_id, include_deleted=True) if purchase_id else None
    if purchase is None:
        raise NotFoundError("Purchase", str(purchase_id))
    return purchase


def create_purchase(
    db: Session, payload: schemas.PurchaseCreate, *, idempotency_key: Optional[str] = None
) -> models.Purchase:
    """Persist a purchase and, when it is received, book its stock."""

    purchase_id = models.new_id()
    key = intents.intent_key("create_purchase", idempotency_key=idempotency_key)

    def precheck() -> None:
        _validate_header(payload)
        validate_items(db, payload.items)

    def work() -> str:
        total = compute_subtotal(payload.items)
        purchase = models.Purchase(
            id=purchase_id,
            date=payload.date,
            supplier_id=payload.supplier_id.strip(),
            invoice_number=payload.invoice_number,
            payment_status=payload.payment_status,
            payment_method=payload.payment_method,
            subtotal=total,
            total=total,
            notes=payload.notes,
            items=build_items(payload.items),
        )
        db.add(purchase)
        db.flush()
        if purchase.is_received:
            apply_items(db, purchase.id, _pairs(payload.items), notes="Purchase received")
        return purchase.id

    result_id = intents.execute(
        db, "create_purchase", key, {"purchase_id": purchase_id}, work, precheck=precheck
    )
    purchase = _load(db, result_id)
    log.info(
        "Created purchase '%s' (%s, %d item(s), total %s)",
        purchase.id,
        purchase.payment_status,
        len(purchase.items),
        purchase.total,
    )
    return purchase


def update_purchase(
    db: Session,
    purchase_id: str,
    payload: schemas.PurchaseCreate,
    *,
    expected_revision: Optional[int] = None,
    idempotency_key: Optional[str] = None,
) -> models.Purchase:
    """Replace a purchase's header, items and status, reconciling stock.

    *expected_revision* (or ``payload.expected_revision``) turns the edit
    into a conditional one: a purchase changed since that revision raises
    :class:`ConcurrencyConflict`.
    """

    if expected_revision is None:
        expected_revision = getattr(payload, "expected_revision", None)
    key = intents.intent_key(
        "update_purchase",
        idempotency_key=idempotency_key,
        purchase_id=purchase_id,
        expected_revision=expected_revision,
        fingerprint=payload_fingerprint(payload),
    )
    enforce_limits = get_settings().enforce_return_limits

    def precheck() -> None:
        _validate_header(payload)
        validate_items(db, payload.items)
        if crud.get_active_purchase(db, purchase_id).is_return:
            raise ValidationError("Return records cannot be edited; delete and record the return again")
        if enforce_limits:
            check_returned_quantities(db, purchase_id, _pairs(payload.items))

    def work() -> str:
        purchase = crud.get_active_purchase(db, purchase_id, lock=True)
        if expected_revision is not None and purchase.revision != expected_revision:
            raise ConcurrencyConflict(
                f"Purchase '{purchase_id}' is at revision {purchase.revision}, expected {expected_revision}"
            )
        if enforce_limits:
            check_returned_quantities(db, purchase_id, _pairs(payload.items))

        old_items = _pairs(purchase.items)
        new_items = _pairs(payload.items)
        was_received = purchase.is_received
        now_received = payload.payment_status == PaymentStatus.RECEIVED
        stock_neutral = was_received and now_received and quantities(old_items) == quantities(new_items)

        if was_received and not stock_neutral:
            reverse_items(db, purchase.id, old_items, notes="Purchase edited - received stock reversed")

        purchase.items.clear()
        db.flush()
        purchase.items.extend(build_items(payload.items))

        total = compute_subtotal(payload.items)
        purchase.date = payload.date
        purchase.supplier_id = payload.supplier_id.strip()
        purchase.invoice_number = payload.invoice_number
        purchase.payment_status = payload.payment_status
        purchase.payment_method = payload.payment_method
        purchase.notes = payload.notes
        purchase.subtotal = total
        purchase.total = total
        purchase.updated_at = models.utcnow()
        db.flush()

        if now_received and not stock_neutral:
            apply_items(db, purchase.id, new_items, notes="Purchase received")
        return purchase.id

    intents.execute(db, "update_purchase", key, {"purchase_id": purchase_id}, work, precheck=precheck)
    purchase = _load(db, purchase_id)
    log.info("Updated purchase '%s' to %s (revision %d)", purchase.id, purchase.payment_status, purchase.revision)
    return purchase


def delete_purchase(
    db: Session,
    purchase_id: str,
    *,
    hard: Optional[bool] = None,
    idempotency_key: Optional[str] = None,
) -> None:
    """Delete a purchase after undoing whatever it did to stock.

    By default the purchase is tombstoned and every movement is kept. With
    ``hard=True`` its movements, items and row are removed instead.
    """

    purge = not get_settings().retain_history_on_delete if hard is None else hard
    key = intents.intent_key("delete_purchase", idempotency_key=idempotency_key)

    def precheck() -> None:
        crud.get_active_purchase(db, purchase_id)

    def work() -> str:
        purchase = crud.get_active_purchase(db, purchase_id, lock=True)
        items = _pairs(purchase.items)
        if purchase.is_received:
            reverse_items(db, purchase.id, items, notes="Purchase deleted - received stock reversed")
        elif purchase.is_return:
            apply_items(db, purchase.id, items, notes="Return deleted - returned stock restored")

        if purge:
            db.execute(
                delete(models.StockMovement).where(
                    models.StockMovement.reference_type == ReferenceType.PURCHASE.value,
                    models.StockMovement.reference_id == purchase.id,
                )
            )
            db.execute(
                update(models.Purchase)
                .where(models.Purchase.return_of_id == purchase.id)
                .values(return_of_id=None)
                .execution_options(synchronize_session="fetch")
            )
            db.flush()
            db.delete(purchase)
        else:
            purchase.deleted_at = models.utcnow()
        db.flush()
        return purchase.id

    intents.execute(db, "delete_purchase", key, {"purchase_id": purchase_id}, work, precheck=precheck)
    log.info("Deleted purchase '%s' (%s)", purchase_id, "purged" if purge else "tombstoned")


__all__ = [
    "apply_items",
    "build_items",
    "compute_subtotal",
    "create_purchase",
    "current_stock",
    "delete_purchase",
    "quantities",
    "reverse_items",
    "update_purchase",
    "validate_items",
]
