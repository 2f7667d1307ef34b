from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends

from po_engine.app.api.deps import get_actor_id, get_engine, get_policy_store, get_request_context
from po_engine.app.core.config import ApprovalPolicyConfig
from po_engine.app.schemas.purchase_order import BulkDecision
from po_engine.services.approval_policy import PolicyStore
from po_engine.services.engine import PurchaseOrderEngine
from po_engine.services.workflow import RequestContext

router = APIRouter(prefix="/approvals")


@router.post("/approve")
def bulk_approve(
    payload: BulkDecision,
    engine: PurchaseOrderEngine = Depends(get_engine),
    actor_id: str | None = Depends(get_actor_id),
    ctx: RequestContext = Depends(get_request_context),
):
    return engine.bulk_approve(payload.order_ids, actor_id, payload.reason, context=ctx).to_dict()


@router.post("/reject")
def bulk_reject(
    payload: BulkDecision,
    engine: PurchaseOrderEngine = Depends(get_engine),
    actor_id: str | None = Depends(get_actor_id),
    ctx: RequestContext = Depends(get_request_context),
):
    return engine.bulk_reject(payload.order_ids, actor_id, payload.reason, context=ctx).to_dict()


@router.post("/preview")
def preview(
    payload: BulkDecision,
    engine: PurchaseOrderEngine = Depends(get_engine),
    actor_id: str | None = Depends(get_actor_id),
):
    return engine.workflow.preview(payload.order_ids, actor_id).to_dict()


# ---------- Policy ----------
@router.get("/policy")
def get_policy(store: PolicyStore = Depends(get_policy_store)):
    version, policy = store.current()
    return {"version": version, "config": policy.config.model_dump(mode="json")}


@router.put("/policy")
def swap_policy(
    cfg: ApprovalPolicyConfig,
    engine: PurchaseOrderEngine = Depends(get_engine),
    actor_id: str | None = Depends(get_actor_id),
    ctx: RequestContext = Depends(get_request_context),
):
    version = engine.workflow.swap_policy(cfg, actor_id, context=ctx)
    return {"version": version, "config": cfg.model_dump(mode="json")}


@router.get("/stats")
def approval_stats(
    since: datetime | None = None,
    until: datetime | None = None,
    engine: PurchaseOrderEngine = Depends(get_engine),
):
    return engine.workflow.approval_stats(since, until).to_dict()
