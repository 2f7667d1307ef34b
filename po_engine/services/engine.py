"""
Purchase order engine.

Single entry point for callers (HTTP layer, scripts, tests). Owns order creation
and line editing; everything that moves status goes through
ApprovalWorkflowService so each commit carries its audit record.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from po_engine.app.core.clock import utcnow
from po_engine.app.core.config import EngineSettings
from po_engine.app.db.models.core_types import AuditAction, EntityType, POStatus
from po_engine.app.db.models.models_v1 import Product, PurchaseOrder, PurchaseOrderLine, Supplier
from po_engine.services.approval_policy import PolicyStore
from po_engine.services.audit import AuditRecord, CreationDiff, LineEditDiff
from po_engine.services.directory import ActorDirectory
from po_engine.services.errors import InvalidOrder, OrderLocked, OrderNotFound
from po_engine.services.inventory import StockRepository
from po_engine.services.notifications import EventSink
from po_engine.services.receiving import ReceiptLine
from po_engine.services.state_machine import EDITABLE_STATUSES, valid_transitions
from po_engine.services.workflow import (
    ApprovalWorkflowService,
    BulkResult,
    ReceiveResult,
    RequestContext,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class OrderLineInput:
    product_id: int
    qty_ordered: int
    unit_cost: Decimal


def _line_snapshot(line: PurchaseOrderLine) -> dict:
    return {
        "product_id": line.product_id,
        "qty_ordered": line.qty_ordered,
        "unit_cost": str(line.unit_cost),
        "line_total": str(line.line_total),
    }


def generate_po_number(now: datetime) -> str:
    return f"PO-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


class PurchaseOrderEngine:
    def __init__(
        self,
        db: Session,
        *,
        policy_store: PolicyStore | None = None,
        directory: ActorDirectory | None = None,
        stock: StockRepository | None = None,
        events: EventSink | None = None,
        settings: EngineSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.clock = clock
        self.workflow = ApprovalWorkflowService(
            db,
            policy_store=policy_store,
            directory=directory,
            stock=stock,
            events=events,
            settings=settings,
            clock=clock,
        )

    @property
    def ledger(self):
        return self.workflow.ledger

    # ---------- reads ----------
    def get_order(self, order_id: int) -> PurchaseOrder:
        order = self.db.get(PurchaseOrder, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def list_orders(self, *, status: POStatus | None = None, limit: int = 100) -> list[PurchaseOrder]:
        stmt = select(PurchaseOrder).order_by(PurchaseOrder.id.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(PurchaseOrder.status == status)
        return list(self.db.execute(stmt).scalars().all())

    def history(self, order_id: int, **filters) -> list[AuditRecord]:
        self.get_order(order_id)
        return self.ledger.query(order_id, entity_type=EntityType.purchase_order.value, **filters)

    def reachable_statuses(self, order_id: int) -> list[POStatus]:
        order = self.get_order(order_id)
        return sorted(valid_transitions(order.status), key=lambda s: s.value)

    # ---------- creation / editing ----------
    def _validate_lines(self, lines: Sequence[OrderLineInput]) -> None:
        if not lines:
            raise InvalidOrder("A purchase order needs at least one line")
        seen: set[int] = set()
        for ln in lines:
            if ln.product_id in seen:
                raise InvalidOrder(f"Product {ln.product_id} appears more than once", details={"product_id": ln.product_id})
            seen.add(ln.product_id)
            if ln.qty_ordered <= 0:
                raise InvalidOrder(f"Ordered quantity for product {ln.product_id} must be positive")
            if Decimal(ln.unit_cost) < 0:
                raise InvalidOrder(f"Unit cost for product {ln.product_id} cannot be negative")
            product = self.db.get(Product, ln.product_id)
            if product is None:
                raise InvalidOrder(f"Invalid product_id {ln.product_id}", details={"product_id": ln.product_id})
            if not product.active:
                raise InvalidOrder(f"Product {product.sku} is inactive", details={"product_id": ln.product_id})

    @staticmethod
    def _recompute_totals(order: PurchaseOrder) -> None:
        subtotal = Decimal("0")
        for line in order.lines:
            line.line_total = (Decimal(line.qty_ordered) * Decimal(line.unit_cost)).quantize(CENTS)
            subtotal += line.line_total
        order.subtotal = subtotal.quantize(CENTS)
        order.total = (order.subtotal + Decimal(order.tax or 0)).quantize(CENTS)

    def create_order(
        self,
        supplier_id: int,
        lines: Sequence[OrderLineInput],
        actor_id: str | None,
        *,
        po_number: str | None = None,
        expected_date: date | None = None,
        tax: Decimal = Decimal("0"),
        context: RequestContext | None = None,
    ) -> PurchaseOrder:
        actor = self.workflow.resolve_actor(actor_id)
        wf = self.workflow

        with wf.unit_of_work("purchase order creation"):
            if not self.db.get(Supplier, supplier_id):
                raise InvalidOrder("Invalid supplier_id", details={"supplier_id": supplier_id})
            if Decimal(tax) < 0:
                raise InvalidOrder("Tax cannot be negative")
            self._validate_lines(lines)

            po_number = po_number or generate_po_number(self.clock())
            exists = self.db.execute(
                select(PurchaseOrder.id).where(PurchaseOrder.po_number == po_number)
            ).scalar_one_or_none()
            if exists:
                raise InvalidOrder("PO number already exists", details={"po_number": po_number})

            order = PurchaseOrder(
                po_number=po_number,
                supplier_id=supplier_id,
                status=POStatus.draft,
                expected_date=expected_date,
                created_by=actor.user_id,
                created_at=self.clock(),
                tax=Decimal(tax).quantize(CENTS),
                approval_round=0,
                lines=[
                    PurchaseOrderLine(
                        product_id=ln.product_id,
                        qty_ordered=ln.qty_ordered,
                        unit_cost=Decimal(ln.unit_cost),
                        qty_received=0,
                        qty_damaged=0,
                    )
                    for ln in lines
                ],
            )
            self._recompute_totals(order)
            self.db.add(order)
            self.db.flush()  # get order.id

            wf.append_audit(
                order,
                AuditAction.created,
                actor,
                diff=CreationDiff(
                    status=POStatus.draft.value,
                    total=str(order.total),
                    lines=[_line_snapshot(line) for line in order.lines],
                ),
                context=context,
            )

        logger.info("PO %s created by %s (total %s)", order.po_number, actor.user_id, order.total)
        return order

    def update_lines(
        self,
        order_id: int,
        lines: Sequence[OrderLineInput],
        actor_id: str | None,
        *,
        context: RequestContext | None = None,
    ) -> PurchaseOrder:
        actor = self.workflow.resolve_actor(actor_id)
        wf = self.workflow

        with wf.unit_of_work("line update"):
            order = wf.lock_order(order_id)
            if POStatus(order.status) not in EDITABLE_STATUSES:
                raise OrderLocked(
                    f"Purchase order {order.po_number} is {POStatus(order.status).value}; lines can only be edited in draft",
                    details={"status": POStatus(order.status).value},
                )
            self._validate_lines(lines)

            before = [_line_snapshot(line) for line in order.lines]
            old_total = order.total

            # edit in place: the (po_id, product_id) key must not be deleted and re-inserted in one flush
            wanted = {ln.product_id: ln for ln in lines}
            for line in list(order.lines):
                if line.product_id not in wanted:
                    order.lines.remove(line)
            current = {line.product_id: line for line in order.lines}
            for pid, ln in wanted.items():
                line = current.get(pid)
                if line is None:
                    order.lines.append(
                        PurchaseOrderLine(
                            product_id=pid,
                            qty_ordered=ln.qty_ordered,
                            unit_cost=Decimal(ln.unit_cost),
                            qty_received=0,
                            qty_damaged=0,
                        )
                    )
                else:
                    line.qty_ordered = ln.qty_ordered
                    line.unit_cost = Decimal(ln.unit_cost)
            self._recompute_totals(order)
            self.db.flush()

            wf.append_audit(
                order,
                AuditAction.lines_updated,
                actor,
                diff=LineEditDiff(
                    before=before,
                    after=[_line_snapshot(line) for line in order.lines],
                    old_total=str(old_total),
                    new_total=str(order.total),
                ),
                context=context,
            )

        return order

    # ---------- transitions ----------
    def submit_for_approval(self, order_id: int, actor_id: str | None, *, context: RequestContext | None = None) -> PurchaseOrder:
        def prepare(order: PurchaseOrder) -> None:
            if not order.lines:
                raise InvalidOrder(f"Purchase order {order.po_number} has no lines")
            if Decimal(order.total or 0) <= 0:
                raise InvalidOrder(f"Purchase order {order.po_number} total must be positive")
            order.submitted_at = self.clock()
            order.approval_round = (order.approval_round or 0) + 1

        return self.workflow.transition(
            order_id, POStatus.pending_approval, actor_id, AuditAction.submitted, context=context, prepare=prepare
        )

    def approve(
        self,
        order_id: int,
        actor_id: str | None,
        reason: str | None = None,
        *,
        context: RequestContext | None = None,
    ) -> PurchaseOrder:
        return self._single(self.workflow.approve([order_id], actor_id, reason, context), order_id)

    def reject(
        self,
        order_id: int,
        actor_id: str | None,
        reason: str | None,
        *,
        context: RequestContext | None = None,
    ) -> PurchaseOrder:
        return self._single(self.workflow.reject([order_id], actor_id, reason, context), order_id)

    def bulk_approve(self, order_ids: Iterable[int], actor_id: str | None, reason: str | None = None, *, context=None) -> BulkResult:
        return self.workflow.approve(order_ids, actor_id, reason, context)

    def bulk_reject(self, order_ids: Iterable[int], actor_id: str | None, reason: str | None, *, context=None) -> BulkResult:
        return self.workflow.reject(order_ids, actor_id, reason, context)

    def _single(self, result: BulkResult, order_id: int) -> PurchaseOrder:
        outcome = result.results[0]
        if not outcome.success:
            raise outcome.error
        return self.get_order(order_id)

    def send_to_supplier(self, order_id: int, actor_id: str | None, *, context: RequestContext | None = None) -> PurchaseOrder:
        return self.workflow.transition(
            order_id, POStatus.sent_to_supplier, actor_id, AuditAction.sent_to_supplier, context=context
        )

    def receive(
        self,
        order_id: int,
        receipt_lines: Sequence[ReceiptLine],
        actor_id: str | None,
        *,
        notes: str | None = None,
        idempotency_key: str | None = None,
        context: RequestContext | None = None,
    ) -> ReceiveResult:
        return self.workflow.receive(
            order_id,
            receipt_lines,
            actor_id,
            notes=notes,
            idempotency_key=idempotency_key,
            context=context,
        )

    def close(self, order_id: int, actor_id: str | None, *, context: RequestContext | None = None) -> PurchaseOrder:
        def prepare(order: PurchaseOrder) -> None:
            order.closed_at = self.clock()

        return self.workflow.transition(
            order_id, POStatus.closed, actor_id, AuditAction.closed, context=context, prepare=prepare
        )

    def cancel(
        self,
        order_id: int,
        actor_id: str | None,
        reason: str | None = None,
        *,
        context: RequestContext | None = None,
    ) -> PurchaseOrder:
        return self.workflow.transition(
            order_id, POStatus.cancelled, actor_id, AuditAction.cancelled, reason=reason, context=context
        )
