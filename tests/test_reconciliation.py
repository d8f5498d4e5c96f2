from __future__ import annotations

from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from purchase_ledger import crud, intents, ledger, models, reconciliation, returns, schemas
from purchase_ledger.constants import IntentStatus, PaymentStatus
from purchase_ledger.exceptions import (
    ConcurrencyConflict,
    NotFoundError,
    PartialReconciliationError,
    PersistenceError,
    ValidationError,
)

NON_RECEIVED = ["pending", "paid", "cancelled"]


def _movements(db, purchase_id):
    return ledger.movements_for_reference(db, purchase_id)


def _count(db, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def _return_payload(variant_id, quantity, unit_cost="1000"):
    item = schemas.PurchaseItemPayload(product_variant_id=variant_id, quantity=quantity, unit_cost=Decimal(unit_cost))
    return schemas.ReturnCreate(items=[item])


def test_received_purchase_books_stock_in(db, make_variant, purchase_payload):
    variant = make_variant(on_hand=10)

    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)], status="received"))

    assert reconciliation.current_stock(db, variant.id) == 15
    assert purchase.subtotal == Decimal("5000")
    assert purchase.total == purchase.subtotal
    assert purchase.revision == 1
    assert [i.line_subtotal for i in purchase.items] == [Decimal("5000")]
    movements = _movements(db, purchase.id)
    assert [(m.type, m.quantity, m.delta) for m in movements] == [("in", 5, 5)]


@pytest.mark.parametrize("status", NON_RECEIVED)
def test_unreceived_purchase_leaves_stock_alone(db, make_variant, purchase_payload, status):
    variant = make_variant(on_hand=10)

    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)], status=status))

    assert reconciliation.current_stock(db, variant.id) == 10
    assert _movements(db, purchase.id) == []


def test_totals_sum_every_line(db, make_variant, purchase_payload):
    first, second = make_variant(), make_variant()

    purchase = reconciliation.create_purchase(
        db, purchase_payload([(first.id, 2, "12.50"), (second.id, 3, "4.00"), (first.id, 1, "0")])
    )

    assert purchase.subtotal == Decimal("37.00")
    assert [i.position for i in purchase.items] == [0, 1, 2]


@pytest.mark.parametrize(
    "items, message",
    [
        ([], "at least one item"),
        ([("VARIANT", 0)], "quantity must be greater than zero"),
        ([("VARIANT", -3)], "quantity must be greater than zero"),
        ([("VARIANT", 1, "-0.01")], "unit cost cannot be negative"),
        ([("does-not-exist", 1)], "Unknown product variant"),
    ],
)
def test_invalid_items_are_rejected_before_any_write(db, make_variant, purchase_payload, items, message):
    variant = make_variant(on_hand=4)
    items = [(variant.id if entry[0] == "VARIANT" else entry[0], *entry[1:]) for entry in items]

    with pytest.raises(ValidationError, match=message):
        reconciliation.create_purchase(db, purchase_payload(items, status="received"))

    assert _count(db, models.Purchase) == 0
    assert _count(db, models.ReconciliationIntent) == 0
    assert reconciliation.current_stock(db, variant.id) == 4


def test_blank_supplier_is_rejected(db, make_variant, purchase_payload):
    variant = make_variant()

    with pytest.raises(ValidationError, match="Supplier"):
        reconciliation.create_purchase(db, purchase_payload([(variant.id, 1)], supplier_id="   "))


def test_returned_status_is_reserved_for_returns(db, make_variant, purchase_payload):
    variant = make_variant()

    with pytest.raises(ValidationError, match="reserved"):
        reconciliation.create_purchase(db, purchase_payload([(variant.id, 1)], status="returned"))


def test_receive_cancel_and_return_scenario(db, make_variant, purchase_payload):
    variant = make_variant(on_hand=10)

    p1 = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5, "1000")], status="received"))
    assert reconciliation.current_stock(db, variant.id) == 15
    assert [(m.type, m.quantity) for m in _movements(db, p1.id)] == [("in", 5)]

    reconciliation.update_purchase(db, p1.id, purchase_payload([(variant.id, 5, "1000")], status="cancelled"))
    assert reconciliation.current_stock(db, variant.id) == 10
    assert [(m.type, m.quantity) for m in _movements(db, p1.id)] == [("in", 5), ("out", 5)]

    record = returns.create_return(db, p1.id, _return_payload(variant.id, 2))
    assert reconciliation.current_stock(db, variant.id) == 8
    assert [(m.type, m.quantity, m.reference_id) for m in _movements(db, record.id)] == [("out", 2, record.id)]
    assert crud.get_purchase(db, p1.id).payment_status == PaymentStatus.CANCELLED


@pytest.mark.parametrize(
    "old_status, new_status",
    [("received", other) for other in NON_RECEIVED] + [(other, "received") for other in NON_RECEIVED],
)
def test_crossing_received_books_exactly_one_set(db, make_variant, purchase_payload, old_status, new_status):
    first, second = make_variant(on_hand=20), make_variant(on_hand=20)
    lines = [(first.id, 3), (second.id, 4)]
    purchase = reconciliation.create_purchase(db, purchase_payload(lines, status=old_status))
    before = len(_movements(db, purchase.id))

    reconciliation.update_purchase(db, purchase.id, purchase_payload(lines, status=new_status))

    booked = _movements(db, purchase.id)[before:]
    expected_type = "in" if new_status == "received" else "out"
    assert [(m.type, m.product_variant_id, m.quantity) for m in booked] == [
        (expected_type, first.id, 3),
        (expected_type, second.id, 4),
    ]
    sign = 1 if new_status == "received" else 0
    assert reconciliation.current_stock(db, first.id) == 20 + 3 * sign
    assert reconciliation.current_stock(db, second.id) == 20 + 4 * sign


@pytest.mark.parametrize("old_status", NON_RECEIVED)
@pytest.mark.parametrize("new_status", NON_RECEIVED)
def test_transitions_away_from_received_do_not_move_stock(db, make_variant, purchase_payload, old_status, new_status):
    variant = make_variant(on_hand=7)
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 2)], status=old_status))

    reconciliation.update_purchase(db, purchase.id, purchase_payload([(variant.id, 9)], status=new_status))

    assert _movements(db, purchase.id) == []
    assert reconciliation.current_stock(db, variant.id) == 7


def test_cancelling_twice_reverses_once(db, make_variant, purchase_payload):
    variant = make_variant(on_hand=10)
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)], status="received"))
    cancelled = purchase_payload([(variant.id, 5)], status="cancelled")

    reconciliation.update_purchase(db, purchase.id, cancelled)
    reconciliation.update_purchase(db, purchase.id, cancelled)

    assert [m.type for m in _movements(db, purchase.id)] == ["in", "out"]
    assert reconciliation.current_stock(db, variant.id) == 10


def test_editing_received_quantities_reverses_then_applies(db, make_variant, purchase_payload):
    variant = make_variant(on_hand=10)
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)], status="received"))

    updated = reconciliation.update_purchase(db, purchase.id, purchase_payload([(variant.id, 8)], status="received"))

    assert reconciliation.current_stock(db, variant.id) == 18
    assert [(m.type, m.quantity) for m in _movements(db, purchase.id)] == [("in", 5), ("out", 5), ("in", 8)]
    assert [i.quantity for i in updated.items] == [8]
    assert updated.revision == 2


def test_editing_received_variants_moves_stock_between_them(db, make_variant, purchase_payload):
    old_variant, new_variant = make_variant(on_hand=1), make_variant()
    purchase = reconciliation.create_purchase(db, purchase_payload([(old_variant.id, 5)], status="received"))

    reconciliation.update_purchase(db, purchase.id, purchase_payload([(new_variant.id, 5)], status="received"))

    assert reconciliation.current_stock(db, old_variant.id) == 1
    assert reconciliation.current_stock(db, new_variant.id) == 5


def test_cost_only_edit_of_received_purchase_is_stock_neutral(db, make_variant, purchase_payload):
    variant = make_variant(on_hand=10)
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5, "1000")], status="received"))

    updated = reconciliation.update_purchase(
        db, purchase.id, purchase_payload([(variant.id, 2, "900"), (variant.id, 3, "900")], status="received")
    )

    assert [m.type for m in _movements(db, purchase.id)] == ["in"]
    assert reconciliation.current_stock(db, variant.id) == 15
    assert updated.total == Decimal("4500")
    assert len(updated.items) == 2


def test_update_replaces_header_fields(db, make_variant, purchase_payload):
    variant = make_variant()
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 1)]))

    updated = reconciliation.update_purchase(
        db,
        purchase.id,
        purchase_payload([(variant.id, 1)], supplier_id="SUP-002", invoice_number=None, payment_method="transfer"),
    )

    assert updated.supplier_id == "SUP-002"
    assert updated.invoice_number is None
    assert updated.payment_method == "transfer"


def test_update_unknown_purchase(db, make_variant, purchase_payload):
    variant = make_variant()

    with pytest.raises(NotFoundError):
        reconciliation.update_purchase(db, "missing", purchase_payload([(variant.id, 1)]))


def test_update_with_stale_revision_conflicts(db, make_variant, purchase_payload):
    variant = make_variant(on_hand=10)
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)], status="received"))
    reconciliation.update_purchase(db, purchase.id, purchase_payload([(variant.id, 6)], status="received"))

    with pytest.raises(ConcurrencyConflict, match="revision 2"):
        reconciliation.update_purchase(
            db, purchase.id, purchase_payload([(variant.id, 1)], status="cancelled", expected_revision=1)
        )

    assert reconciliation.current_stock(db, variant.id) == 16
    assert crud.get_purchase(db, purchase.id).payment_status == "received"


def test_retried_edit_at_same_revision_applies_once(db, make_variant, purchase_payload):
    variant = make_variant(on_hand=10)
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)]))
    edit = purchase_payload([(variant.id, 5)], status="received", expected_revision=purchase.revision)

    first = reconciliation.update_purchase(db, purchase.id, edit)
    second = reconciliation.update_purchase(db, purchase.id, edit)

    assert first.id == second.id
    assert second.revision == 2
    assert reconciliation.current_stock(db, variant.id) == 15
    assert [m.type for m in _movements(db, purchase.id)] == ["in"]


def test_create_with_idempotency_key_is_applied_once(db, make_variant, purchase_payload):
    variant = make_variant()
    payload = purchase_payload([(variant.id, 4)], status="received")

    first = reconciliation.create_purchase(db, payload, idempotency_key="form-42")
    second = reconciliation.create_purchase(db, payload, idempotency_key="form-42")

    assert first.id == second.id
    assert reconciliation.current_stock(db, variant.id) == 4
    assert _count(db, models.Purchase) == 1
    assert intents.get_intent(db, "create_purchase:form-42").status == IntentStatus.APPLIED


def test_return_records_cannot_be_edited(db, make_variant, purchase_payload):
    variant = make_variant()
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)], status="received"))
    record = returns.create_return(db, purchase.id, _return_payload(variant.id, 1))

    with pytest.raises(ValidationError, match="cannot be edited"):
        reconciliation.update_purchase(db, record.id, purchase_payload([(variant.id, 1)]))


@pytest.mark.parametrize("hard", [False, True])
def test_create_then_delete_restores_stock(db, make_variant, purchase_payload, hard):
    first, second = make_variant(on_hand=3), make_variant(on_hand=0)
    purchase = reconciliation.create_purchase(
        db, purchase_payload([(first.id, 5), (second.id, 2), (first.id, 1)], status="received")
    )

    reconciliation.delete_purchase(db, purchase.id, hard=hard)

    assert reconciliation.current_stock(db, first.id) == 3
    assert reconciliation.current_stock(db, second.id) == 0
    assert crud.get_purchase(db, purchase.id) is None
    assert all(audit.is_consistent for audit in ledger.audit_stock(db))


def test_soft_delete_keeps_the_audit_trail(db, make_variant, purchase_payload):
    variant = make_variant(on_hand=10)
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)], status="received"))

    reconciliation.delete_purchase(db, purchase.id)

    tombstone = crud.get_purchase(db, purchase.id, include_deleted=True)
    assert tombstone.deleted_at is not None
    assert len(tombstone.items) == 1
    assert [m.type for m in _movements(db, purchase.id)] == ["in", "out"]
    assert crud.list_purchases(db) == []


def test_hard_delete_purges_movements_and_items(db, make_variant, purchase_payload):
    variant = make_variant(on_hand=10)
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)], status="received"))

    reconciliation.delete_purchase(db, purchase.id, hard=True)

    assert crud.get_purchase(db, purchase.id, include_deleted=True) is None
    assert _movements(db, purchase.id) == []
    assert _count(db, models.PurchaseItem) == 0


def test_hard_delete_honours_settings_default(db, make_variant, purchase_payload, monkeypatch):
    from purchase_ledger.config import get_settings

    monkeypatch.setattr(get_settings(), "retain_history_on_delete", False)
    variant = make_variant()
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 1)]))

    reconciliation.delete_purchase(db, purchase.id)

    assert crud.get_purchase(db, purchase.id, include_deleted=True) is None


def test_deleting_unreceived_purchase_books_nothing(db, make_variant, purchase_payload):
    variant = make_variant(on_hand=10)
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)], status="paid"))

    reconciliation.delete_purchase(db, purchase.id)

    assert _movements(db, purchase.id) == []
    assert reconciliation.current_stock(db, variant.id) == 10


def test_delete_unknown_purchase(db):
    with pytest.raises(NotFoundError, match="missing"):
        reconciliation.delete_purchase(db, "missing")


def test_deleted_purchase_cannot_be_deleted_again(db, make_variant, purchase_payload):
    variant = make_variant()
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 1)]))
    reconciliation.delete_purchase(db, purchase.id)

    with pytest.raises(NotFoundError):
        reconciliation.delete_purchase(db, purchase.id)


def test_ledger_matches_projection_after_mixed_operations(db, make_variant, purchase_payload):
    a, b, c = make_variant(on_hand=5), make_variant(on_hand=0), make_variant(on_hand=12)

    p1 = reconciliation.create_purchase(db, purchase_payload([(a.id, 4), (b.id, 6)], status="received"))
    p2 = reconciliation.create_purchase(db, purchase_payload([(c.id, 3)], status="pending"))
    reconciliation.update_purchase(db, p2.id, purchase_payload([(c.id, 3), (a.id, 1)], status="received"))
    reconciliation.update_purchase(db, p1.id, purchase_payload([(a.id, 2), (b.id, 6)], status="received"))
    returns.create_return(db, p1.id, _return_payload(b.id, 4))
    ledger.adjust_stock(db, c.id, 20, "Cycle count")
    reconciliation.update_purchase(db, p2.id, purchase_payload([(c.id, 3), (a.id, 1)], status="paid"))
    reconciliation.delete_purchase(db, p2.id, hard=True)

    audits = ledger.audit_stock(db)
    assert [audit.discrepancy for audit in audits] == [0, 0, 0]
    assert reconciliation.current_stock(db, a.id) == 7
    assert reconciliation.current_stock(db, b.id) == 2
    assert reconciliation.current_stock(db, c.id) == 17


def test_store_failure_rolls_everything_back(db, make_variant, purchase_payload, monkeypatch):
    variant = make_variant(on_hand=10)

    def broken_record_movement(*args, **kwargs):
        raise OperationalError("INSERT INTO stock_movements", None, Exception("disk I/O error"))

    monkeypatch.setattr(ledger, "record_movement", broken_record_movement)

    with pytest.raises(PersistenceError) as excinfo:
        reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)], status="received"))

    assert not isinstance(excinfo.value, PartialReconciliationError)
    assert excinfo.value.operation == "create_purchase"
    assert _count(db, models.Purchase) == 0
    assert reconciliation.current_stock(db, variant.id) == 10
    statuses = db.scalars(select(models.ReconciliationIntent.status)).all()
    assert statuses == [IntentStatus.FAILED.value]


def test_failed_commit_leaves_a_pending_intent(db, make_variant, purchase_payload, monkeypatch):
    variant = make_variant(on_hand=10)
    real_commit = db.commit
    calls = {"count": 0}

    def flaky_commit():
        calls["count"] += 1
        if calls["count"] == 2:
            raise OperationalError("COMMIT", None, Exception("connection reset"))
        real_commit()

    monkeypatch.setattr(db, "commit", flaky_commit)

    with pytest.raises(PartialReconciliationError) as excinfo:
        reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)], status="received"))

    pending = intents.pending_intents(db)
    assert [intent.operation for intent in pending] == ["create_purchase"]
    assert pending[0].purchase_id == excinfo.value.ids["purchase_id"]
    assert reconciliation.current_stock(db, variant.id) == 10


def test_pending_intent_blocks_a_replay(db, make_variant, purchase_payload):
    variant = make_variant()
    db.add(models.ReconciliationIntent(key="create_purchase:stuck", operation="create_purchase"))
    db.commit()

    with pytest.raises(ConcurrencyConflict, match="in progress"):
        reconciliation.create_purchase(db, purchase_payload([(variant.id, 1)]), idempotency_key="stuck")


def test_different_edits_at_the_same_revision_conflict(db, make_variant, purchase_payload):
    variant = make_variant(on_hand=10)
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)]))

    reconciliation.update_purchase(
        db, purchase.id, purchase_payload([(variant.id, 5)], status="received", expected_revision=1)
    )
    with pytest.raises(ConcurrencyConflict, match="revision 2"):
        reconciliation.update_purchase(
            db,
            purchase.id,
            purchase_payload([(variant.id, 9)], status="cancelled", supplier_id="SUP-B", expected_revision=1),
        )

    stored = crud.get_purchase(db, purchase.id)
    assert (stored.payment_status, stored.supplier_id, stored.revision) == ("received", "SUP-001", 2)
    assert reconciliation.current_stock(db, variant.id) == 15


def test_edit_fingerprint_ignores_expected_revision_only(purchase_payload):
    first = purchase_payload([("V-1", 2)], status="paid", expected_revision=1)
    same = purchase_payload([("V-1", 2)], status="paid", expected_revision=3)
    other = purchase_payload([("V-1", 3)], status="paid", expected_revision=1)

    assert reconciliation.payload_fingerprint(first) == reconciliation.payload_fingerprint(same)
    assert reconciliation.payload_fingerprint(first) != reconciliation.payload_fingerprint(other)


def test_hard_delete_detaches_tombstoned_returns(db, make_variant, purchase_payload):
    variant = make_variant()
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)], status="received"))
    record = returns.create_return(db, purchase.id, _return_payload(variant.id, 2))
    reconciliation.delete_purchase(db, record.id)

    reconciliation.delete_purchase(db, purchase.id, hard=True)

    tombstone = crud.get_purchase(db, record.id, include_deleted=True)
    assert tombstone.deleted_at is not None
    assert tombstone.return_of_id is None
    assert crud.get_purchase(db, purchase.id, include_deleted=True) is None
    assert reconciliation.current_stock(db, variant.id) == 0


@pytest.mark.parametrize(
    "lines, message",
    [
        ("shrunk", "has 3 returned"),
        ("dropped", "only 0"),
    ],
)
def test_edit_cannot_undercut_returned_quantities(db, make_variant, purchase_payload, lines, message):
    variant, other = make_variant(), make_variant()
    purchase = reconciliation.create_purchase(
        db, purchase_payload([(variant.id, 5), (other.id, 1)], status="received")
    )
    returns.create_return(db, purchase.id, _return_payload(variant.id, 3))
    items = [(variant.id, 2), (other.id, 1)] if lines == "shrunk" else [(other.id, 1)]

    with pytest.raises(ValidationError, match=message):
        reconciliation.update_purchase(db, purchase.id, purchase_payload(items, status="received"))

    assert [i.quantity for i in crud.get_purchase(db, purchase.id).items] == [5, 1]
    assert reconciliation.current_stock(db, variant.id) == 2


def test_edit_may_keep_exactly_the_returned_quantity(db, make_variant, purchase_payload):
    variant = make_variant(on_hand=10)
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)], status="received"))
    returns.create_return(db, purchase.id, _return_payload(variant.id, 3))

    updated = reconciliation.update_purchase(db, purchase.id, purchase_payload([(variant.id, 3)], status="received"))

    assert [i.quantity for i in updated.items] == [3]
    assert reconciliation.current_stock(db, variant.id) == 10


def test_return_limits_off_allows_undercutting_edits(db, make_variant, purchase_payload, monkeypatch):
    from purchase_ledger.config import get_settings

    monkeypatch.setattr(get_settings(), "enforce_return_limits", False)
    variant = make_variant()
    purchase = reconciliation.create_purchase(db, purchase_payload([(variant.id, 5)], status="received"))
    returns.create_return(db, purchase.id, _return_payload(variant.id, 3))

    updated = reconciliation.update_purchase(db, purchase.id, purchase_payload([(variant.id, 1)], status="received"))

    assert [i.quantity for i in updated.items] == [1]
