"""Purchase returns.

A return never edits the purchase it reverses. It is recorded as a new
purchase-shaped row with status ``returned``, linked to the original, and
books ``out`` movements for the returned quantities against that new row.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from . import crud, intents, models, reconciliation, schemas
from .config import get_settings
from .constants import PaymentStatus
from .exceptions import NotFoundError, ValidationError

log = logging.getLogger(__name__)


def return_note(original_id: str, notes: Optional[str]) -> str:
    note = f"Return of purchase {original_id}."
    if notes and notes.strip():
        note = f"{note} {notes.strip()}"
    return note


def check_return_limits(
    db: Session, original: models.Purchase, items: Sequence[schemas.PurchaseItemPayload]
) -> None:
    """Refuse returns of variants the purchase never had, or more than is left."""

    purchased = reconciliation.quantities([(i.product_variant_id, i.quantity) for i in original.items])
    already_returned = crud.returned_quantities(db, original.id)
    requested = reconciliation.quantities([(i.product_variant_id, i.quantity) for i in items])

    for variant_id, quantity in requested.items():
        if variant_id not in purchased:
            raise ValidationError(f"Variant '{variant_id}' is not part of purchase '{original.id}'")
        remaining = purchased[variant_id] - already_returned.get(variant_id, 0)
        if quantity > remaining:
            raise ValidationError(
                f"Cannot return {quantity} of variant '{variant_id}': only {remaining} left to return"
            )


def create_return(
    db: Session,
    original_purchase_id: str,
    payload: schemas.ReturnCreate,
    *,
    idempotency_key: Optional[str] = None,
) -> models.Purchase:
    """Record a return against *original_purchase_id* and take the stock back out."""

    enforce_limits = get_settings().enforce_return_limits
    return_id = models.new_id()
    key = intents.intent_key(
        "create_return",
        idempotency_key=f"{original_purchase_id}:{idempotency_key}" if idempotency_key else None,
    )

    def _original(lock: bool = False) -> models.Purchase:
        original = crud.get_active_purchase(db, original_purchase_id, lock=lock)
        if original.is_return:
            raise ValidationError("A return record cannot itself be returned")
        return original

    def precheck() -> None:
        original = _original()
        reconciliation.validate_items(db, payload.items)
        if enforce_limits:
            check_return_limits(db, original, payload.items)

    def work() -> str:
        original = _original(lock=True)
        if enforce_limits:
            check_return_limits(db, original, payload.items)

        total = reconciliation.compute_subtotal(payload.items)
        record = models.Purchase(
            id=return_id,
            date=payload.date or original.date,
            supplier_id=original.supplier_id,
            invoice_number=payload.invoice_number,
            payment_status=PaymentStatus.RETURNED.value,
            payment_method=original.payment_method,
            subtotal=total,
            total=total,
            notes=return_note(original.id, payload.notes),
            return_of_id=original.id,
            items=reconciliation.build_items(payload.items),
        )
        db.add(record)
        db.flush()
        reconciliation.reverse_items(
            db,
            record.id,
            [(item.product_variant_id, item.quantity) for item in payload.items],
            notes=f"Returned to supplier (purchase {original.id})",
        )
        return record.id

    result_id = intents.execute(
        db,
        "create_return",
        key,
        {"purchase_id": return_id, "original_purchase_id": original_purchase_id},
        work,
        precheck=precheck,
    )
    record = crud.get_purchase(db, result_id, include_deleted=True) if result_id else None
    if record is None:
        raise NotFoundError("Purchase", str(result_id))
    log.info("Recorded return '%s' against purchase '%s' (total %s)", record.id, original_purchase_id, record.total)
    return record
