from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Header, Query

from po_engine.app.api.deps import get_actor_id, get_engine, get_request_context
from po_engine.app.db.models.core_types import POStatus
from po_engine.app.schemas.purchase_order import (
    AuditRead,
    GRCreate,
    POCreate,
    POLinesUpdate,
    PORead,
    POSummary,
    ReasonPayload,
)
from po_engine.services.engine import OrderLineInput, PurchaseOrderEngine
from po_engine.services.receiving import ReceiptLine
from po_engine.services.workflow import RequestContext

router = APIRouter(prefix="/purchase-orders")


def _line_inputs(lines) -> list[OrderLineInput]:
    return [OrderLineInput(ln.product_id, ln.qty_ordered, ln.unit_cost) for ln in lines]


@router.get("", response_model=list[POSummary])
def list_pos(
    status: POStatus | None = None,
    limit: int = 100,
    engine: PurchaseOrderEngine = Depends(get_engine),
):
    return engine.list_orders(status=status, limit=limit)


@router.get("/{po_id}", response_model=PORead)
def get_po(po_id: int, engine: PurchaseOrderEngine = Depends(get_engine)):
    return engine.get_order(po_id)


@router.post("", response_model=PORead)
def create_po(
    payload: POCreate,
    engine: PurchaseOrderEngine = Depends(get_engine),
    actor_id: str | None = Depends(get_actor_id),
    ctx: RequestContext = Depends(get_request_context),
):
    return engine.create_order(
        payload.supplier_id,
        _line_inputs(payload.lines),
        actor_id,
        po_number=payload.po_number,
        expected_date=payload.expected_date,
        tax=payload.tax,
        context=ctx,
    )


@router.put("/{po_id}/lines", response_model=PORead)
def update_po_lines(
    po_id: int,
    payload: POLinesUpdate,
    engine: PurchaseOrderEngine = Depends(get_engine),
    actor_id: str | None = Depends(get_actor_id),
    ctx: RequestContext = Depends(get_request_context),
):
    return engine.update_lines(po_id, _line_inputs(payload.lines), actor_id, context=ctx)


# ---------- Actions ----------
@router.post("/{po_id}/submit", response_model=PORead)
def submit_po(
    po_id: int,
    engine: PurchaseOrderEngine = Depends(get_engine),
    actor_id: str | None = Depends(get_actor_id),
    ctx: RequestContext = Depends(get_request_context),
):
    return engine.submit_for_approval(po_id, actor_id, context=ctx)


@router.post("/{po_id}/approve", response_model=PORead)
def approve_po(
    po_id: int,
    payload: ReasonPayload | None = None,
    engine: PurchaseOrderEngine = Depends(get_engine),
    actor_id: str | None = Depends(get_actor_id),
    ctx: RequestContext = Depends(get_request_context),
):
    return engine.approve(po_id, actor_id, payload.reason if payload else None, context=ctx)


@router.post("/{po_id}/reject", response_model=PORead)
def reject_po(
    po_id: int,
    payload: ReasonPayload,
    engine: PurchaseOrderEngine = Depends(get_engine),
    actor_id: str | None = Depends(get_actor_id),
    ctx: RequestContext = Depends(get_request_context),
):
    return engine.reject(po_id, actor_id, payload.reason, context=ctx)


@router.post("/{po_id}/send", response_model=PORead)
def send_po(
    po_id: int,
    engine: PurchaseOrderEngine = Depends(get_engine),
    actor_id: str | None = Depends(get_actor_id),
    ctx: RequestContext = Depends(get_request_context),
):
    return engine.send_to_supplier(po_id, actor_id, context=ctx)


@router.post("/{po_id}/receive")
def receive_po(
    po_id: int,
    payload: GRCreate,
    engine: PurchaseOrderEngine = Depends(get_engine),
    actor_id: str | None = Depends(get_actor_id),
    ctx: RequestContext = Depends(get_request_context),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    lines = [
        ReceiptLine(
            product_id=ln.product_id,
            quantity=ln.quantity,
            condition=ln.condition,
            previously_received=ln.previously_received,
            lot_code=ln.lot_code,
            expiration_date=ln.expiration_date,
        )
        for ln in payload.lines
    ]
    result = engine.receive(
        po_id,
        lines,
        actor_id,
        notes=payload.notes,
        idempotency_key=idempotency_key,
        context=ctx,
    )
    return result.to_dict()


@router.post("/{po_id}/close", response_model=PORead)
def close_po(
    po_id: int,
    engine: PurchaseOrderEngine = Depends(get_engine),
    actor_id: str | None = Depends(get_actor_id),
    ctx: RequestContext = Depends(get_request_context),
):
    return engine.close(po_id, actor_id, context=ctx)


@router.post("/{po_id}/cancel", response_model=PORead)
def cancel_po(
    po_id: int,
    payload: ReasonPayload | None = None,
    engine: PurchaseOrderEngine = Depends(get_engine),
    actor_id: str | None = Depends(get_actor_id),
    ctx: RequestContext = Depends(get_request_context),
):
    return engine.cancel(po_id, actor_id, payload.reason if payload else None, context=ctx)


# ---------- Read-side ----------
@router.get("/{po_id}/transitions")
def list_transitions(po_id: int, engine: PurchaseOrderEngine = Depends(get_engine)):
    return {"po_id": po_id, "reachable": [s.value for s in engine.reachable_statuses(po_id)]}


@router.get("/{po_id}/history", response_model=list[AuditRead])
def get_history(
    po_id: int,
    action: list[str] | None = Query(default=None),
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int | None = None,
    engine: PurchaseOrderEngine = Depends(get_engine),
):
    records = engine.history(po_id, actions=action, since=since, until=until, limit=limit)
    return [r.model_dump(mode="json") for r in records]
