"""Shared pytest fixtures for the purchase ledger tests."""

from __future__ import annotations

import os
import tempfile
from collections.abc import Generator
from datetime import date
from decimal import Decimal
from typing import Any, Callable

# Settings are read when the package is imported; point them at a scratch
# directory before that happens.
os.environ["PURCHASE_LEDGER_HOME"] = tempfile.mkdtemp(prefix="purchase-ledger-tests-")
for _name in ("PURCHASE_LEDGER_DB", "PURCHASE_LEDGER_DATABASE_URL", "PURCHASE_LEDGER_LOG_DIR"):
    os.environ.pop(_name, None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from purchase_ledger import crud, models, schemas  # noqa: E402
from purchase_ledger.app import create_app  # noqa: E402
from purchase_ledger.database import Base, build_engine, init_database  # noqa: E402
from purchase_ledger.dependencies import get_db  # noqa: E402

PURCHASE_DATE = date(2024, 3, 1)


@pytest.fixture(name="db_engine")
def db_engine_fixture(tmp_path) -> Generator[Any, None, None]:
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_database(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="db")
def db_fixture(db_engine) -> Generator[Session, None, None]:
    with Session(db_engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture
def make_variant(db: Session) -> Callable[..., models.ProductVariant]:
    """Create a variant with an opening stock recorded in the ledger."""

    counter = iter(range(1, 10_000))

    def _make(on_hand: int = 0, **overrides: Any) -> models.ProductVariant:
        number = next(counter)
        fields = {
            "product_id": "P-SHIRT",
            "color": "black",
            "size": f"S{number}",
            "sku": f"SKU-{number:04d}",
            "on_hand_quantity": on_hand,
        }
        fields.update(overrides)
        return crud.create_variant(db, schemas.VariantCreate(**fields))

    return _make


def item(variant_id: str, quantity: int, unit_cost: str = "1000") -> schemas.PurchaseItemPayload:
    return schemas.PurchaseItemPayload(
        product_variant_id=variant_id, quantity=quantity, unit_cost=Decimal(unit_cost)
    )


@pytest.fixture
def purchase_payload() -> Callable[..., schemas.PurchaseUpdate]:
    """Build purchase payloads; ``items`` is a list of ``(variant_id, quantity[, cost])`` tuples."""

    def _build(items: list[tuple], status: str = "pending", **overrides: Any) -> schemas.PurchaseUpdate:
        fields: dict[str, Any] = {
            "date": PURCHASE_DATE,
            "supplier_id": "SUP-001",
            "invoice_number": "INV-001",
            "payment_status": status,
            "items": [item(*entry) for entry in items],
        }
        fields.update(overrides)
        return schemas.PurchaseUpdate(**fields)

    return _build


@pytest.fixture(name="client")
def client_fixture(db_engine) -> Generator[TestClient, None, None]:
    app = create_app()

    def get_db_override() -> Generator[Session, None, None]:
        with Session(db_engine, expire_on_commit=False) as session:
            yield session

    app.dependency_overrides[get_db] = get_db_override

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
