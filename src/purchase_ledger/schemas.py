"""Pydantic schemas for API payloads."""

from __future__ import annotations

from datetime import date as date_type, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .constants import MovementType, PaymentMethod, PaymentStatus, ReferenceType


class PurchaseItemPayload(BaseModel):
    """A requested line item.

    Quantity and cost rules are checked by the reconciliation core so every
    caller gets the same error type.
    """

    product_variant_id: str = Field(..., min_length=1, max_length=36)
    quantity: int
    unit_cost: Decimal


class PurchaseCreate(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    date: date_type
    supplier_id: str = Field(..., max_length=64)
    invoice_number: Optional[str] = Field(None, max_length=64)
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None
    items: list[PurchaseItemPayload] = Field(default_factory=list)


class PurchaseUpdate(PurchaseCreate):
    """Full replacement of a purchase's header, items and status."""

    expected_revision: Optional[int] = Field(None, ge=1)


class ReturnCreate(BaseModel):
    items: list[PurchaseItemPayload] = Field(default_factory=list)
    notes: Optional[str] = None
    date: Optional[date_type] = None
    invoice_number: Optional[str] = Field(None, max_length=64)


class PurchaseItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    position: int
    product_variant_id: str
    quantity: int
    unit_cost: Decimal
    line_subtotal: Decimal


class PurchaseRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    date: date_type
    supplier_id: str
    invoice_number: Optional[str]
    payment_status: str
    payment_method: Optional[str]
    subtotal: Decimal
    total: Decimal
    notes: Optional[str]
    return_of_id: Optional[str]
    revision: int
    created_at: datetime
    updated_at: datetime
    items: list[PurchaseItemRead] = Field(default_factory=list)


class VariantCreate(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=64)
    color: str = Field(..., min_length=1, max_length=64)
    size: str = Field(..., min_length=1, max_length=32)
    sku: Optional[str] = Field(None, max_length=64)
    on_hand_quantity: int = Field(0, ge=0, description="Opening stock, recorded as an adjustment")
    is_active: bool = True


class VariantRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    product_id: str
    color: str
    size: str
    sku: Optional[str]
    on_hand_quantity: int
    is_active: bool


class StockLevel(BaseModel):
    product_variant_id: str
    on_hand_quantity: int


class StockAdjustmentCreate(BaseModel):
    new_quantity: int = Field(..., ge=0)
    notes: Optional[str] = None


class MovementEntry(BaseModel):
    """A manual stock movement.

    ``quantity`` is a positive count for ``in`` and ``out``; an ``adjustment``
    carries its direction in the sign.
    """

    model_config = ConfigDict(use_enum_values=True)

    type: MovementType
    quantity: int
    reference_type: ReferenceType = ReferenceType.MANUAL
    reference_id: Optional[str] = Field(None, max_length=36)
    notes: Optional[str] = None


class StockMovementCreate(MovementEntry):
    product_variant_id: str = Field(..., min_length=1, max_length=36)


class StockMovementRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_variant_id: str
    type: str
    quantity: int
    delta: int
    reference_type: str
    reference_id: Optional[str]
    notes: Optional[str]
    created_at: datetime


class MovementSummary(BaseModel):
    product_variant_id: str
    period: str
    total_in: int
    total_out: int
    total_adjustments: int
    transaction_count: int
    last_movement: Optional[StockMovementRead] = None


class StockAudit(BaseModel):
    """Ledger sum versus the stored projection for one variant."""

    product_variant_id: str
    ledger_quantity: int
    projected_quantity: int

    @computed_field
    @property
    def discrepancy(self) -> int:
        return self.projected_quantity - self.ledger_quantity

    @computed_field
    @property
    def is_consistent(self) -> bool:
        return self.discrepancy == 0


class IntentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    operation: str
    purchase_id: Optional[str]
    status: str
    error: Optional[str]
    created_at: datetime
    updated_at: datetime
