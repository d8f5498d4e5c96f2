from __future__ import annotations

import pytest
from sqlalchemy import update
from typer.testing import CliRunner

from purchase_ledger import crud, models, schemas
from purchase_ledger.cli import app
from purchase_ledger.database import Base, SessionLocal, get_engine, init_database

runner = CliRunner()


@pytest.fixture(autouse=True)
def fresh_database():
    Base.metadata.drop_all(get_engine())
    init_database()
    yield
    Base.metadata.drop_all(get_engine())


@pytest.fixture
def variant_id() -> str:
    with SessionLocal() as session:
        variant = crud.create_variant(
            session,
            schemas.VariantCreate(product_id="P-SOCK", color="grey", size="42", sku="SOCK-42", on_hand_quantity=6),
        )
        return variant.id


def test_show_paths():
    result = runner.invoke(app, ["show-paths"])

    assert result.exit_code == 0
    assert "Database: sqlite:///" in result.stdout
    assert "Log directory:" in result.stdout


def test_stock_and_adjust(variant_id):
    result = runner.invoke(app, ["adjust", variant_id, "9", "--notes", "Recount"])
    assert result.exit_code == 0, result.stdout
    assert "Recorded adjustment of +3" in result.stdout

    result = runner.invoke(app, ["adjust", variant_id, "9"])
    assert "nothing recorded" in result.stdout

    result = runner.invoke(app, ["stock", variant_id])
    assert result.exit_code == 0
    assert "On hand: 9" in result.stdout
    assert "Ledger:  9" in result.stdout


def test_stock_of_unknown_variant_fails():
    result = runner.invoke(app, ["stock", "ghost"])

    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_movements_lists_history(variant_id):
    result = runner.invoke(app, ["movements", variant_id])

    assert result.exit_code == 0
    assert "adjustment" in result.stdout
    assert "Opening stock" in result.stdout


def test_audit_passes_then_flags_tampering(variant_id):
    result = runner.invoke(app, ["audit"])
    assert result.exit_code == 0
    assert "All 1 variant(s) match the ledger." in result.stdout

    with SessionLocal() as session:
        session.execute(
            update(models.ProductVariant).where(models.ProductVariant.id == variant_id).values(on_hand_quantity=2)
        )
        session.commit()

    result = runner.invoke(app, ["audit"])
    assert result.exit_code == 1
    assert f"- {variant_id} | 2 | 6 | -4" in result.stdout
    assert "1 variant(s) need reconciliation." in result.stdout


def test_pending_intents(variant_id):
    result = runner.invoke(app, ["pending-intents"])
    assert "No pending intents." in result.stdout

    with SessionLocal() as session:
        session.add(models.ReconciliationIntent(key="create_purchase:abc", operation="create_purchase"))
        session.commit()

    result = runner.invoke(app, ["pending-intents"])
    assert result.exit_code == 0
    assert "create_purchase:abc | create_purchase | purchase=- (missing)" in result.stdout


def test_record_movement(variant_id):
    result = runner.invoke(app, ["record-movement", variant_id, "in", "4", "--notes", "Late delivery"])
    assert result.exit_code == 0, result.stdout
    assert "Recorded in movement of +4" in result.stdout

    result = runner.invoke(app, ["record-movement", variant_id, "out", "0"])
    assert result.exit_code == 1
    assert "greater than zero" in result.stdout

    result = runner.invoke(app, ["stock", variant_id])
    assert "On hand: 10" in result.stdout
