"""
Approval workflow service.

Orchestrates policy, state machine, receiving reconciler, stock repository and
audit ledger over one Session. Rules:

    - every committed mutation carries exactly one audit record, appended in the
      same transaction;
    - bulk approve/reject is best effort: each order runs in its own SAVEPOINT and
      reports its own outcome, but the batch is first validated as a whole and
      an invalid batch mutates nothing;
    - notifications are sent after commit and never undo anything.
"""

from __future__ import annotations

import hashlib
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from po_engine.app.core.clock import as_utc, utcnow
from po_engine.app.core.config import ApprovalPolicyConfig, EngineSettings, settings as default_settings
from po_engine.app.db.models.core_types import AuditAction, EntityType, POStatus, Role
from po_engine.app.db.models.models_v1 import (
    ApprovalDecision,
    GoodsReceipt,
    GoodsReceiptLine,
    PurchaseOrder,
)
from po_engine.services.approval_policy import (
    ApprovalPolicy,
    BatchRiskSummary,
    EscalationFlag,
    PolicyStore,
)
from po_engine.services.audit import (
    ApprovalVoteDiff,
    AuditLedger,
    AuditRecord,
    ReceiptDiff,
    StatusChangeDiff,
)
from po_engine.services.directory import Actor, ActorDirectory, SqlActorDirectory, resolve_or_fallback
from po_engine.services.errors import (
    OrderNotFound,
    PersistenceFailure,
    PolicyViolation,
    ProcurementError,
    QuantityViolation,
    TransitionDenied,
)
from po_engine.services.inventory import (
    ENGAGED_PO_STATUSES,
    SqlStockRepository,
    StockDeltaResult,
    StockRepository,
    rebuild_qty_on_order,
)
from po_engine.services.notifications import EventSink, LoggingEventSink, WorkflowEvent, emit_safely
from po_engine.services.receiving import ReceiptLine, Reconciliation, reconcile
from po_engine.services.state_machine import require_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class OrderOutcome:
    order_id: int
    success: bool
    old_status: str | None = None
    new_status: str | None = None
    error: ProcurementError | None = None
    audit_id: int | None = None
    votes: int | None = None
    required_votes: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "success": self.success,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "error": self.error.to_dict() if self.error else None,
            "audit_id": self.audit_id,
            "votes": self.votes,
            "required_votes": self.required_votes,
        }


@dataclass(frozen=True)
class BulkResult:
    action: str
    results: list[OrderOutcome]
    violations: list[str] = field(default_factory=list)
    escalations: list[EscalationFlag] = field(default_factory=list)
    risk: BatchRiskSummary | None = None
    policy_version: int | None = None

    @property
    def succeeded(self) -> list[OrderOutcome]:
        return [r for r in self.results if r.success]

    @property
    def failed(self) -> list[OrderOutcome]:
        return [r for r in self.results if not r.success]

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "success_count": len(self.succeeded),
            "failure_count": len(self.failed),
            "results": [r.to_dict() for r in self.results],
            "violations": self.violations,
            "escalations": [e.to_dict() for e in self.escalations],
            "risk": self.risk.to_dict() if self.risk else None,
            "policy_version": self.policy_version,
        }


@dataclass(frozen=True)
class BulkPreview:
    is_valid: bool
    violations: list[str]
    escalations: list[EscalationFlag]
    risk: BatchRiskSummary
    missing: list[int]
    policy_version: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "violations": self.violations,
            "escalations": [e.to_dict() for e in self.escalations],
            "risk": self.risk.to_dict(),
            "missing": self.missing,
            "policy_version": self.policy_version,
        }


@dataclass(frozen=True)
class ReceiveResult:
    order_id: int
    replayed: bool
    old_status: str
    new_status: str
    receipt_id: int | None = None
    audit_id: int | None = None
    entries: list[dict[str, Any]] = field(default_factory=list)
    deltas: list[StockDeltaResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "replayed": self.replayed,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "receipt_id": self.receipt_id,
            "audit_id": self.audit_id,
            "entries": self.entries,
            "deltas": [
                {"product_id": d.product_id, "delta": d.delta, "qty_after": d.qty_after, "applied": d.applied}
                for d in self.deltas
            ],
        }


@dataclass(frozen=True)
class ApprovalStats:
    pending_approvals: int
    total_approved: int
    total_rejected: int
    approval_rate: float
    average_approval_hours: float | None
    overdue_approvals: int
    high_value_pending: int
    votes_recorded: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending_approvals": self.pending_approvals,
            "total_approved": self.total_approved,
            "total_rejected": self.total_rejected,
            "approval_rate": self.approval_rate,
            "average_approval_hours": self.average_approval_hours,
            "overdue_approvals": self.overdue_approvals,
            "high_value_pending": self.high_value_pending,
            "votes_recorded": self.votes_recorded,
        }


def receipt_idempotency_key(
    order_id: int,
    lines: Sequence[ReceiptLine],
    provided: str | None,
    received_so_far: dict[int, int] | None = None,
) -> str:
    """
    1) Idempotency-Key fourni par le client -> stable et robuste.
    2) Sinon: clé dérivée du payload + snapshot (retry exact = même clé).
       Une ligne sans snapshot prend la quantité déjà reçue sur la commande,
       donc deux livraisons identiques successives restent deux receipts.
    """
    if provided and provided.strip():
        raw = f"GR-IDEMP:{order_id}:{provided.strip()}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    received_so_far = received_so_far or {}
    payload = sorted(
        (
            ln.product_id,
            ln.quantity,
            ln.previously_received if ln.previously_received is not None else received_so_far.get(ln.product_id, 0),
            str(getattr(ln.condition, "value", ln.condition)),
        )
        for ln in lines
    )
    raw = f"GR:{order_id}:{payload}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _status(value) -> str:
    return getattr(value, "value", value)


class ApprovalWorkflowService:
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
        self.policy_store = policy_store or PolicyStore()
        self.directory = directory or SqlActorDirectory(db)
        self.stock = stock or SqlStockRepository(db)
        self.events = events if events is not None else LoggingEventSink()
        self.settings = settings or default_settings
        self.clock = clock
        self.ledger = AuditLedger(db)

    # ---------- helpers ----------
    def resolve_actor(self, actor_id: str | None) -> Actor:
        return resolve_or_fallback(self.directory, actor_id, self.settings)

    def lock_order(self, order_id: int) -> PurchaseOrder:
        order = self.db.execute(
            select(PurchaseOrder).where(PurchaseOrder.id == order_id).with_for_update()
        ).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def _load_orders(self, order_ids: Sequence[int]) -> dict[int, PurchaseOrder]:
        rows = self.db.execute(
            select(PurchaseOrder)
            .where(PurchaseOrder.id.in_(order_ids))
            .order_by(PurchaseOrder.id)
            .with_for_update()
        ).scalars().all()
        return {int(po.id): po for po in rows}

    def append_audit(
        self,
        order: PurchaseOrder,
        action: AuditAction,
        actor: Actor,
        *,
        diff=None,
        reason: str | None = None,
        metadata: dict[str, Any] | None = None,
        context: RequestContext | None = None,
    ) -> int:
        meta = dict(metadata or {})
        meta["po_number"] = order.po_number
        if actor.is_fallback:
            meta["actor_fallback"] = True
        return self.ledger.append(
            AuditRecord(
                entity_type=EntityType.purchase_order.value,
                entity_id=str(order.id),
                action=action.value,
                actor_id=actor.user_id,
                actor_name=actor.display_name,
                diff=diff,
                reason=reason,
                metadata=meta,
                ip_address=context.ip_address if context else None,
                user_agent=context.user_agent if context else None,
                timestamp=self.clock(),
            )
        )

    def _set_status(self, order: PurchaseOrder, target: POStatus) -> POStatus:
        old = POStatus(order.status)
        order.status = target
        self.db.flush()
        if old in ENGAGED_PO_STATUSES or target in ENGAGED_PO_STATUSES:
            rebuild_qty_on_order(self.db, product_ids=[line.product_id for line in order.lines])
        return old

    def _event(self, order: PurchaseOrder, action: AuditAction, old: POStatus | None, actor: Actor, **payload) -> WorkflowEvent:
        return WorkflowEvent(
            order_id=int(order.id),
            po_number=order.po_number,
            action=action.value,
            old_status=_status(old) if old is not None else None,
            new_status=_status(order.status),
            actor_id=actor.user_id,
            occurred_at=self.clock(),
            payload=payload,
        )

    @contextmanager
    def unit_of_work(self, what: str):
        """Commit on success; roll back on any error, SQLAlchemy errors surface as PersistenceFailure."""
        try:
            yield
            self.db.commit()
        except ProcurementError:
            self.db.rollback()
            raise
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("Persistence failure during %s", what)
            raise PersistenceFailure(f"Could not persist {what}", details={"operation": what}) from e

    # ---------- single-order transitions ----------
    def transition(
        self,
        order_id: int,
        target: POStatus,
        actor_id: str | None,
        action: AuditAction,
        *,
        reason: str | None = None,
        context: RequestContext | None = None,
        prepare: Callable[[PurchaseOrder], None] | None = None,
    ) -> PurchaseOrder:
        """
        Move one order to `target`. `prepare` runs after the transition is known
        to be legal and before the status changes; it may raise to abort.
        """
        actor = self.resolve_actor(actor_id)
        with self.unit_of_work(action.value):
            order = self.lock_order(order_id)
            require_transition(order.status, target)
            if prepare is not None:
                prepare(order)
            old = self._set_status(order, target)
            self.append_audit(
                order,
                action,
                actor,
                diff=StatusChangeDiff(old_status=old.value, new_status=target.value),
                reason=reason,
                context=context,
            )
            event = self._event(order, action, old, actor)

        logger.info("PO %s: %s -> %s (%s)", order.po_number, old.value, target.value, actor.user_id)
        emit_safely(self.events, [event])
        return order

    # ---------- bulk approve / reject ----------
    def preview(self, order_ids: Iterable[int], actor_id: str | None) -> BulkPreview:
        version, policy = self.policy_store.current()
        actor = self.resolve_actor(actor_id)
        ids = list(dict.fromkeys(int(i) for i in order_ids))
        orders = self._load_orders(ids) if ids else {}
        found = [orders[i] for i in ids if i in orders]
        now = self.clock()
        validation = policy.validate(found, actor.role, now)
        self.db.rollback()
        return BulkPreview(
            is_valid=validation.is_valid,
            violations=validation.violations,
            escalations=validation.escalations,
            risk=policy.summarize(found, now),
            missing=[i for i in ids if i not in orders],
            policy_version=version,
        )

    def approve(
        self,
        order_ids: Iterable[int],
        actor_id: str | None,
        reason: str | None = None,
        context: RequestContext | None = None,
    ) -> BulkResult:
        return self._bulk(AuditAction.approved, order_ids, actor_id, reason, context)

    def reject(
        self,
        order_ids: Iterable[int],
        actor_id: str | None,
        reason: str | None,
        context: RequestContext | None = None,
    ) -> BulkResult:
        if not reason or not reason.strip():
            raise PolicyViolation("A reason is required to reject purchase orders")
        return self._bulk(AuditAction.rejected, order_ids, actor_id, reason.strip(), context)

    def _bulk(
        self,
        action: AuditAction,
        order_ids: Iterable[int],
        actor_id: str | None,
        reason: str | None,
        context: RequestContext | None,
    ) -> BulkResult:
        version, policy = self.policy_store.current()
        actor = self.resolve_actor(actor_id)
        ids = list(dict.fromkeys(int(i) for i in order_ids))
        orders = self._load_orders(ids) if ids else {}
        found = [orders[i] for i in ids if i in orders]
        now = self.clock()

        validation = policy.validate(found, actor.role, now)
        risk = policy.summarize(found, now)

        if not validation.is_valid:
            self.db.rollback()
            logger.warning(
                "Bulk %s by %s denied for %d order(s): %s",
                action.value,
                actor.user_id,
                len(ids),
                "; ".join(validation.violations),
            )
            denied = PolicyViolation("Batch does not satisfy approval policy", violations=validation.violations)
            return BulkResult(
                action=action.value,
                results=[
                    OrderOutcome(i, False, error=denied if i in orders else OrderNotFound(i))
                    for i in ids
                ],
                violations=validation.violations,
                escalations=validation.escalations,
                risk=risk,
                policy_version=version,
            )

        step = self._approve_one if action is AuditAction.approved else self._reject_one
        results: list[OrderOutcome] = []
        events: list[WorkflowEvent] = []
        for order_id in ids:
            order = orders.get(order_id)
            if order is None:
                results.append(OrderOutcome(order_id, False, error=OrderNotFound(order_id)))
                continue
            try:
                with self.db.begin_nested():
                    outcome, event = step(order, actor, policy, reason, context, version)
            except ProcurementError as e:
                logger.info("Bulk %s skipped PO %s: %s", action.value, order.po_number, e.message)
                results.append(OrderOutcome(order_id, False, old_status=_status(order.status), error=e))
                continue
            except SQLAlchemyError as e:
                logger.exception("Bulk %s failed to persist PO %s", action.value, order_id)
                results.append(OrderOutcome(order_id, False, error=PersistenceFailure(str(e.__class__.__name__))))
                continue
            results.append(outcome)
            if event is not None:
                events.append(event)

        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.exception("Bulk %s commit failed", action.value)
            raise PersistenceFailure(f"Could not commit bulk {action.value}") from e

        logger.info(
            "Bulk %s by %s: %d succeeded, %d failed (policy v%d)",
            action.value,
            actor.user_id,
            sum(1 for r in results if r.success),
            sum(1 for r in results if not r.success),
            version,
        )
        emit_safely(self.events, events)
        return BulkResult(
            action=action.value,
            results=results,
            violations=[],
            escalations=validation.escalations,
            risk=risk,
            policy_version=version,
        )

    def _approve_one(
        self,
        order: PurchaseOrder,
        actor: Actor,
        policy: ApprovalPolicy,
        reason: str | None,
        context: RequestContext | None,
        version: int,
    ) -> tuple[OrderOutcome, WorkflowEvent | None]:
        require_transition(order.status, POStatus.approved)
        threshold = policy.governing_threshold(order)

        voters = set(
            self.db.execute(
                select(ApprovalDecision.approver_id)
                .where(ApprovalDecision.po_id == order.id)
                .where(ApprovalDecision.approval_round == order.approval_round)
            ).scalars().all()
        )
        if actor.user_id in voters:
            raise PolicyViolation(f"{actor.user_id} has already approved {order.po_number} in this round")

        self.db.add(
            ApprovalDecision(
                po_id=order.id,
                approval_round=order.approval_round,
                approver_id=actor.user_id,
                approver_role=actor.role,
                threshold_id=threshold.id,
                reason=reason,
            )
        )
        self.db.flush()
        votes = len(voters) + 1
        required = threshold.required_approvers
        meta = {"threshold_id": threshold.id, "policy_version": version, "votes": votes, "required_votes": required}

        if votes < required:
            audit_id = self.append_audit(
                order,
                AuditAction.approval_recorded,
                actor,
                diff=ApprovalVoteDiff(threshold_id=threshold.id, votes=votes, required=required),
                reason=reason,
                metadata=meta,
                context=context,
            )
            status = _status(order.status)
            return OrderOutcome(int(order.id), True, status, status, None, audit_id, votes, required), None

        order.approved_at = self.clock()
        order.approved_by = actor.user_id
        old = self._set_status(order, POStatus.approved)
        audit_id = self.append_audit(
            order,
            AuditAction.approved,
            actor,
            diff=StatusChangeDiff(old_status=old.value, new_status=POStatus.approved.value),
            reason=reason,
            metadata=meta,
            context=context,
        )
        outcome = OrderOutcome(int(order.id), True, old.value, POStatus.approved.value, None, audit_id, votes, required)
        return outcome, self._event(order, AuditAction.approved, old, actor, threshold_id=threshold.id)

    def _reject_one(
        self,
        order: PurchaseOrder,
        actor: Actor,
        policy: ApprovalPolicy,
        reason: str | None,
        context: RequestContext | None,
        version: int,
    ) -> tuple[OrderOutcome, WorkflowEvent | None]:
        target = POStatus(policy.config.rejection_target)
        current = POStatus(order.status)
        if current is not POStatus.pending_approval:
            raise TransitionDenied(
                current.value,
                target.value,
                f"Only orders pending approval can be rejected; {order.po_number} is {current.value}",
            )
        require_transition(current, target)
        old = self._set_status(order, target)
        audit_id = self.append_audit(
            order,
            AuditAction.rejected,
            actor,
            diff=StatusChangeDiff(old_status=old.value, new_status=target.value),
            reason=reason,
            metadata={"policy_version": version, "rejection_target": target.value},
            context=context,
        )
        outcome = OrderOutcome(int(order.id), True, old.value, target.value, None, audit_id)
        return outcome, self._event(order, AuditAction.rejected, old, actor, reason=reason)

    # ---------- policy & stats ----------
    def swap_policy(
        self,
        config: ApprovalPolicyConfig,
        actor_id: str | None,
        *,
        reason: str | None = None,
        context: RequestContext | None = None,
    ) -> int:
        """Publish a new approval policy. Admins only; the swap is audited before it takes effect."""
        actor = self.resolve_actor(actor_id)
        if actor.is_fallback or actor.role != Role.admin.value:
            raise PolicyViolation(
                f"Role '{actor.role}' cannot change the approval policy",
                violations=["Only an identified admin can change the approval policy"],
            )

        old_version, _ = self.policy_store.current()
        with self.unit_of_work("policy swap"):
            self.ledger.append(
                AuditRecord(
                    entity_type=EntityType.approval_policy.value,
                    entity_id="active",
                    action=AuditAction.policy_swapped.value,
                    actor_id=actor.user_id,
                    actor_name=actor.display_name,
                    reason=reason,
                    metadata={
                        "old_version": old_version,
                        "new_version": old_version + 1,
                        "config": config.model_dump(mode="json"),
                    },
                    ip_address=context.ip_address if context else None,
                    user_agent=context.user_agent if context else None,
                    timestamp=self.clock(),
                )
            )
        version = self.policy_store.swap(config)
        if version != old_version + 1:
            logger.warning("Policy version moved concurrently: audited %d, published %d", old_version + 1, version)
        return version

    def approval_stats(self, since: datetime | None = None, until: datetime | None = None) -> ApprovalStats:
        _, policy = self.policy_store.current()
        now = self.clock()

        pending = self.db.execute(
            select(PurchaseOrder).where(PurchaseOrder.status == POStatus.pending_approval)
        ).scalars().all()
        risk = policy.summarize(pending, now)

        decided = self.ledger.count_by_action([AuditAction.approved, AuditAction.rejected], since=since, until=until)
        approved, rejected = decided[AuditAction.approved.value], decided[AuditAction.rejected.value]

        stmt = select(PurchaseOrder.submitted_at, PurchaseOrder.approved_at).where(
            PurchaseOrder.approved_at.is_not(None), PurchaseOrder.submitted_at.is_not(None)
        )
        votes = select(func.count(ApprovalDecision.id))
        if since is not None:
            stmt = stmt.where(PurchaseOrder.approved_at >= since)
            votes = votes.where(ApprovalDecision.created_at >= since)
        if until is not None:
            stmt = stmt.where(PurchaseOrder.approved_at <= until)
            votes = votes.where(ApprovalDecision.created_at <= until)
        waits = [
            (as_utc(approved_at) - as_utc(submitted_at)).total_seconds() / 3600
            for submitted_at, approved_at in self.db.execute(stmt).all()
        ]

        return ApprovalStats(
            pending_approvals=len(pending),
            total_approved=approved,
            total_rejected=rejected,
            approval_rate=round(approved / (approved + rejected), 4) if approved + rejected else 0.0,
            average_approval_hours=round(sum(waits) / len(waits), 2) if waits else None,
            overdue_approvals=risk.overdue_count,
            high_value_pending=risk.high_value_count,
            votes_recorded=int(self.db.execute(votes).scalar_one()),
        )

    # ---------- receiving ----------
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
        actor = self.resolve_actor(actor_id)
        applied: list[StockDeltaResult] = []

        # le commit fait partie de la tentative: s'il échoue, le stock hors transaction est compensé
        try:
            with self.unit_of_work("goods receipt"):
                order = self.lock_order(order_id)
                receipt_key = receipt_idempotency_key(
                    int(order.id),
                    receipt_lines,
                    idempotency_key,
                    {line.product_id: line.qty_received for line in order.lines},
                )

                # Fast path: receipt déjà enregistré -> pas de double stock
                existing = self._find_receipt(receipt_key)
                if existing is not None:
                    return self._replayed(order, existing)

                stock_reference = f"GR:{receipt_key[:24]}:{uuid.uuid4().hex[:12]}"
                rec = reconcile(order, receipt_lines, reference=stock_reference)
                if not rec.ok:
                    logger.info("Receipt for PO %s rejected: %d line error(s)", order.po_number, len(rec.errors))
                    raise QuantityViolation(rec.errors)
                if not rec.changed:
                    status = _status(order.status)
                    return ReceiveResult(
                        order_id=int(order.id),
                        replayed=any(e.replayed for e in rec.entries),
                        old_status=status,
                        new_status=status,
                        entries=[e.to_dict() for e in rec.entries],
                    )

                require_transition(rec.previous_status, rec.resulting_status)

                receipt = self._claim_receipt(order, rec, actor, receipt_key, stock_reference, notes)
                if receipt is None:
                    # Concurrence: même receipt posté en parallèle
                    existing = self._find_receipt(receipt_key)
                    if existing is None:
                        raise PersistenceFailure("Goods receipt could not be recorded")
                    return self._replayed(order, existing)

                for delta in rec.inventory_deltas:
                    applied.append(
                        self.stock.apply_delta(delta.product_id, delta.quantity, delta.reference_id, reason="GOODS_RECEIPT")
                    )

                lines = {line.product_id: line for line in order.lines}
                for upd in rec.updated_lines:
                    lines[upd.product_id].qty_received = upd.qty_received
                    lines[upd.product_id].qty_damaged = upd.qty_damaged
                order.received_at = self.clock()
                self._set_status(order, rec.resulting_status)

                audit_id = self.append_audit(
                    order,
                    AuditAction.received,
                    actor,
                    diff=ReceiptDiff(
                        old_status=rec.previous_status.value,
                        new_status=rec.resulting_status.value,
                        lines=[e.to_dict() for e in rec.entries],
                    ),
                    reason=notes,
                    metadata={
                        "receipt_id": int(receipt.id),
                        "idempotency_key": receipt_key,
                        "lines": [ln.to_dict() for ln in receipt_lines],
                        "inventory_deltas": [d.to_dict() for d in rec.inventory_deltas],
                    },
                    context=context,
                )
                event = self._event(order, AuditAction.received, rec.previous_status, actor, receipt_id=int(receipt.id))
        except Exception:
            self._compensate(applied)
            raise

        logger.info(
            "PO %s received (%s -> %s), %d stock delta(s)",
            order.po_number,
            rec.previous_status.value,
            rec.resulting_status.value,
            len(applied),
        )
        emit_safely(self.events, [event])
        return ReceiveResult(
            order_id=int(order.id),
            replayed=False,
            old_status=rec.previous_status.value,
            new_status=rec.resulting_status.value,
            receipt_id=int(receipt.id),
            audit_id=audit_id,
            entries=[e.to_dict() for e in rec.entries],
            deltas=applied,
        )

    def _find_receipt(self, receipt_key: str) -> GoodsReceipt | None:
        return self.db.execute(
            select(GoodsReceipt).where(GoodsReceipt.idempotency_key == receipt_key)
        ).scalar_one_or_none()

    def _replayed(self, order: PurchaseOrder, receipt: GoodsReceipt) -> ReceiveResult:
        logger.info("Receipt %s for PO %s already recorded, replaying", receipt.id, order.po_number)
        status = _status(order.status)
        return ReceiveResult(
            order_id=int(order.id),
            replayed=True,
            old_status=status,
            new_status=status,
            receipt_id=int(receipt.id),
        )

    def _claim_receipt(
        self,
        order: PurchaseOrder,
        rec: Reconciliation,
        actor: Actor,
        receipt_key: str,
        stock_reference: str,
        notes: str | None,
    ) -> GoodsReceipt | None:
        receipt = GoodsReceipt(
            po_id=order.id,
            received_at=self.clock(),
            received_by=actor.user_id,
            notes=notes,
            status_before=rec.previous_status,
            status_after=rec.resulting_status,
            idempotency_key=receipt_key,
            stock_reference=stock_reference,
            lines=[
                GoodsReceiptLine(
                    product_id=e.product_id,
                    qty_ordered=e.qty_ordered,
                    qty_previously_received=e.previously_received,
                    qty_received=e.received_now,
                    qty_total_received=e.total_received,
                    condition=e.condition,
                    lot_code=e.lot_code,
                    expiration_date=e.expiration_date,
                )
                for e in rec.entries
                if e.received_now > 0 and not e.replayed
            ],
        )
        try:
            with self.db.begin_nested():
                self.db.add(receipt)
        except IntegrityError:
            return None
        return receipt

    def _compensate(self, applied: list[StockDeltaResult]) -> None:
        if self.stock.transactional:
            return
        for res in reversed(applied):
            if not res.applied:
                continue
            try:
                self.stock.apply_delta(
                    res.product_id,
                    -res.delta,
                    f"{res.reference_id}:compensate",
                    reason="GOODS_RECEIPT_COMPENSATION",
                )
            except Exception:
                logger.exception("Compensation failed for stock delta %s", res.reference_id)
