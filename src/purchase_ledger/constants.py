"""Enumerations shared across the reconciliation modules."""

from __future__ import annotations

from enum import Enum


class PaymentStatus(str, Enum):
    """Lifecycle states of a purchase order."""

    PENDING = "pending"
    RECEIVED = "received"
    PAID = "paid"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class PaymentMethod(str, Enum):
    """How a supplier invoice was settled."""

    CASH = "cash"
    TRANSFER = "transfer"
    CREDIT = "credit"


class MovementType(str, Enum):
    """Direction of a stock ledger entry."""

    IN = "in"
    OUT = "out"
    ADJUSTMENT = "adjustment"


class ReferenceType(str, Enum):
    """What caused a stock ledger entry."""

    PURCHASE = "purchase"
    ADJUSTMENT = "adjustment"
    SALE = "sale"
    MANUAL = "manual"


class IntentStatus(str, Enum):
    """Progress of a reconciliation intent recorded in the outbox."""

    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"


class SummaryPeriod(str, Enum):
    """Windows supported by the movement summary."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"


SUMMARY_PERIOD_DAYS = {
    SummaryPeriod.DAY: 1,
    SummaryPeriod.WEEK: 7,
    SummaryPeriod.MONTH: 30,
}


__all__ = [
    "IntentStatus",
    "MovementType",
    "PaymentMethod",
    "PaymentStatus",
    "ReferenceType",
    "SUMMARY_PERIOD_DAYS",
    "SummaryPeriod",
]
