"""FastAPI application factory."""

from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import __version__, crud, intents, ledger, reconciliation, returns, schemas
from .config import get_settings
from .constants import PaymentStatus, SummaryPeriod
from .database import init_database
from .dependencies import get_db, get_notifier
from .exceptions import (
    ConcurrencyConflict,
    NotFoundError,
    PartialReconciliationError,
    PersistenceError,
    ValidationError,
)
from .notifications import GENERIC_FAILURE, Notifier, report_outcome

_ERROR_STATUS: list[tuple[type[Exception], int, bool]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST, False),
    (NotFoundError, status.HTTP_404_NOT_FOUND, False),
    (ConcurrencyConflict, status.HTTP_409_CONFLICT, False),
    (PartialReconciliationError, status.HTTP_500_INTERNAL_SERVER_ERROR, True),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE, True),
]


def _register_error_handlers(app: FastAPI) -> None:
    for error_cls, status_code, generic in _ERROR_STATUS:

        def handler(request: Request, exc: Exception, status_code: int = status_code, generic: bool = generic):
            detail = GENERIC_FAILURE if generic else str(exc)
            return JSONResponse(status_code=status_code, content={"detail": detail})

        app.add_exception_handler(error_cls, handler)


def _require_variant(db: Session, variant_id: str):
    variant = crud.get_variant(db, variant_id)
    if not variant:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product variant not found")
    return variant


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = get_settings()
    init_database()

    app = FastAPI(title=settings.app_name, version=__version__)
    _register_error_handlers(app)

    @app.get("/health", tags=["system"])
    def health_check() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/variants", response_model=schemas.VariantRead, status_code=status.HTTP_201_CREATED, tags=["stock"])
    def create_variant(payload: schemas.VariantCreate, db: Session = Depends(get_db)):
        return crud.create_variant(db, payload)

    @app.get("/variants", response_model=list[schemas.VariantRead], tags=["stock"])
    def list_variants(
        skip: int = 0,
        limit: int = Query(50, ge=1, le=200),
        include_inactive: bool = False,
        db: Session = Depends(get_db),
    ):
        return crud.list_variants(db, skip=skip, limit=limit, include_inactive=include_inactive)

    @app.get("/variants/{variant_id}", response_model=schemas.VariantRead, tags=["stock"])
    def get_variant(variant_id: str, db: Session = Depends(get_db)):
        return _require_variant(db, variant_id)

    @app.get("/variants/{variant_id}/stock", response_model=schemas.StockLevel, tags=["stock"])
    def get_stock(variant_id: str, db: Session = Depends(get_db)):
        return schemas.StockLevel(
            product_variant_id=variant_id,
            on_hand_quantity=reconciliation.current_stock(db, variant_id),
        )

    @app.post(
        "/variants/{variant_id}/adjustments",
        response_model=Optional[schemas.StockMovementRead],
        tags=["stock"],
    )
    def adjust_stock(
        variant_id: str,
        payload: schemas.StockAdjustmentCreate,
        db: Session = Depends(get_db),
        notifier: Notifier = Depends(get_notifier),
    ):
        with report_outcome(notifier, "adjust_stock", "Stock adjusted", variant_id=variant_id):
            return ledger.adjust_stock(db, variant_id, payload.new_quantity, payload.notes)

    @app.get("/variants/{variant_id}/movements", response_model=list[schemas.StockMovementRead], tags=["stock"])
    def list_movements(
        variant_id: str,
        limit: Optional[int] = Query(None, ge=1, le=500),
        reference_id: Optional[str] = None,
        db: Session = Depends(get_db),
    ):
        return ledger.list_movements(db, variant_id, limit=limit, reference_id=reference_id)

    @app.post(
        "/variants/{variant_id}/movements",
        response_model=schemas.StockMovementRead,
        status_code=status.HTTP_201_CREATED,
        tags=["stock"],
    )
    def record_movement(
        variant_id: str,
        payload: schemas.MovementEntry,
        db: Session = Depends(get_db),
        notifier: Notifier = Depends(get_notifier),
    ):
        entry = schemas.StockMovementCreate(product_variant_id=variant_id, **payload.model_dump())
        with report_outcome(notifier, "record_movement", "Stock movement recorded", variant_id=variant_id):
            return ledger.record_movements(db, [entry])[0]

    @app.post(
        "/movements",
        response_model=list[schemas.StockMovementRead],
        status_code=status.HTTP_201_CREATED,
        tags=["stock"],
    )
    def record_movements(
        payload: list[schemas.StockMovementCreate],
        db: Session = Depends(get_db),
        notifier: Notifier = Depends(get_notifier),
    ):
        with report_outcome(notifier, "record_movements", f"{len(payload)} stock movement(s) recorded"):
            return ledger.record_movements(db, payload)

    @app.get("/variants/{variant_id}/movement-summary", response_model=schemas.MovementSummary, tags=["stock"])
    def movement_summary(variant_id: str, period: SummaryPeriod = SummaryPeriod.MONTH, db: Session = Depends(get_db)):
        return ledger.movement_summary(db, variant_id, period)

    @app.post("/purchases", response_model=schemas.PurchaseRead, status_code=status.HTTP_201_CREATED, tags=["purchases"])
    def create_purchase(
        payload: schemas.PurchaseCreate,
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
        db: Session = Depends(get_db),
        notifier: Notifier = Depends(get_notifier),
    ):
        with report_outcome(notifier, "create_purchase", "Purchase saved", supplier_id=payload.supplier_id):
            return reconciliation.create_purchase(db, payload, idempotency_key=idempotency_key)

    @app.get("/purchases", response_model=list[schemas.PurchaseRead], tags=["purchases"])
    def list_purchases(
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        payment_status: Optional[PaymentStatus] = Query(None, alias="status"),
        skip: int = 0,
        limit: int = Query(50, ge=1, le=200),
        db: Session = Depends(get_db),
    ):
        return crud.list_purchases(
            db,
            start_date=start_date,
            end_date=end_date,
            status=payment_status.value if payment_status else None,
            skip=skip,
            limit=limit,
        )

    @app.get("/purchases/{purchase_id}", response_model=schemas.PurchaseRead, tags=["purchases"])
    def get_purchase(purchase_id: str, db: Session = Depends(get_db)):
        purchase = crud.get_purchase(db, purchase_id)
        if not purchase:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Purchase not found")
        return purchase

    @app.put("/purchases/{purchase_id}", response_model=schemas.PurchaseRead, tags=["purchases"])
    def update_purchase(
        purchase_id: str,
        payload: schemas.PurchaseUpdate,
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
        db: Session = Depends(get_db),
        notifier: Notifier = Depends(get_notifier),
    ):
        with report_outcome(notifier, "update_purchase", "Purchase updated", purchase_id=purchase_id):
            return reconciliation.update_purchase(db, purchase_id, payload, idempotency_key=idempotency_key)

    @app.delete("/purchases/{purchase_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["purchases"])
    def delete_purchase(
        purchase_id: str,
        hard: Optional[bool] = None,
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
        db: Session = Depends(get_db),
        notifier: Notifier = Depends(get_notifier),
    ) -> None:
        with report_outcome(notifier, "delete_purchase", "Purchase deleted", purchase_id=purchase_id):
            reconciliation.delete_purchase(db, purchase_id, hard=hard, idempotency_key=idempotency_key)

    @app.post(
        "/purchases/{purchase_id}/returns",
        response_model=schemas.PurchaseRead,
        status_code=status.HTTP_201_CREATED,
        tags=["purchases"],
    )
    def create_return(
        purchase_id: str,
        payload: schemas.ReturnCreate,
        idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
        db: Session = Depends(get_db),
        notifier: Notifier = Depends(get_notifier),
    ):
        with report_outcome(notifier, "create_return", "Return recorded", purchase_id=purchase_id):
            return returns.create_return(db, purchase_id, payload, idempotency_key=idempotency_key)

    @app.get("/purchases/{purchase_id}/returns", response_model=list[schemas.PurchaseRead], tags=["purchases"])
    def list_returns(purchase_id: str, db: Session = Depends(get_db)):
        return crud.list_returns(db, purchase_id)

    @app.get("/audit/stock", response_model=list[schemas.StockAudit], tags=["audit"])
    def audit_stock(only_discrepancies: bool = False, db: Session = Depends(get_db)):
        return ledger.audit_stock(db, only_discrepancies=only_discrepancies)

    @app.get("/audit/intents", response_model=list[schemas.IntentRead], tags=["audit"])
    def pending_intents(db: Session = Depends(get_db)):
        return intents.pending_intents(db)

    return app
