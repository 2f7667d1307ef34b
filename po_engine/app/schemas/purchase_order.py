from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from po_engine.app.db.models.core_types import POStatus, ReceiptCondition


# ---------- Requests ----------
class POLineCreate(BaseModel):
    product_id: int
    qty_ordered: int = Field(gt=0)
    unit_cost: Decimal = Field(ge=0)


class POCreate(BaseModel):
    supplier_id: int
    po_number: str | None = Field(default=None, min_length=1, max_length=64)
    expected_date: date | None = None
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    lines: list[POLineCreate] = Field(min_length=1)


class POLinesUpdate(BaseModel):
    lines: list[POLineCreate] = Field(min_length=1)


class ReasonPayload(BaseModel):
    reason: str | None = None


class GRLineCreate(BaseModel):
    product_id: int
    quantity: int
    condition: ReceiptCondition = ReceiptCondition.good
    previously_received: int | None = Field(default=None, ge=0)
    lot_code: str | None = Field(default=None, max_length=64)
    expiration_date: date | None = None


class GRCreate(BaseModel):
    notes: str | None = None
    lines: list[GRLineCreate] = Field(default_factory=list)


class BulkDecision(BaseModel):
    order_ids: list[int] = Field(min_length=1)
    reason: str | None = None


# ---------- Responses ----------
class POLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    qty_ordered: int
    unit_cost: Decimal
    line_total: Decimal
    qty_received: int
    qty_damaged: int


class PORead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    po_number: str
    supplier_id: int
    status: POStatus
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    expected_date: date | None
    created_by: str
    created_at: datetime
    submitted_at: datetime | None
    approved_at: datetime | None
    approved_by: str | None
    received_at: datetime | None
    closed_at: datetime | None
    approval_round: int
    version: int
    lines: list[POLineRead]


class POSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    po_number: str
    supplier_id: int
    status: POStatus
    total: Decimal
    created_at: datetime


class AuditRead(BaseModel):
    id: int | None
    entity_type: str
    entity_id: str
    action: str
    actor_id: str
    actor_name: str | None
    diff: dict[str, Any] | None
    reason: str | None
    metadata: dict[str, Any]
    ip_address: str | None
    user_agent: str | None
    timestamp: datetime | None
