from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from po_engine.app.api.deps import get_db, get_policy_store
from po_engine.services.approval_policy import PolicyStore

router = APIRouter(prefix="/health")


@router.get("")
def health(db: Session = Depends(get_db), store: PolicyStore = Depends(get_policy_store)):
    db.execute(text("SELECT 1"))
    version, _ = store.current()
    return {"status": "ok", "policy_version": version}
