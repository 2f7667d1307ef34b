from __future__ import annotations

from typing import Generator

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from po_engine.app.core.config import load_policy_config, settings
from po_engine.app.db.session import SessionLocal
from po_engine.services.approval_policy import PolicyStore
from po_engine.services.engine import PurchaseOrderEngine
from po_engine.services.notifications import LoggingEventSink
from po_engine.services.workflow import RequestContext

# one policy pointer per process; PUT /approvals/policy swaps it
policy_store = PolicyStore(load_policy_config(settings.approval_config_path))
event_sink = LoggingEventSink()


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_policy_store() -> PolicyStore:
    return policy_store


def get_engine(
    db: Session = Depends(get_db),
    store: PolicyStore = Depends(get_policy_store),
) -> PurchaseOrderEngine:
    return PurchaseOrderEngine(db, policy_store=store, events=event_sink, settings=settings)


def get_actor_id(x_actor_id: str | None = Header(default=None, alias="X-Actor-Id")) -> str | None:
    return x_actor_id.strip() if x_actor_id and x_actor_id.strip() else None


def get_request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
