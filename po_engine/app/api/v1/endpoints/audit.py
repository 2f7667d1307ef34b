from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from po_engine.app.api.deps import get_db
from po_engine.app.schemas.purchase_order import AuditRead
from po_engine.services.audit import AuditLedger

router = APIRouter(prefix="/audit")


@router.get("", response_model=list[AuditRead])
def query_audit(
    actor_id: str | None = None,
    entity_type: str | None = None,
    action: list[str] | None = Query(default=None),
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    """
    Audit trail (READ ONLY)
    - par acteur, ou par fenêtre de temps (since + until)
    - historique d'un PO : /purchase-orders/{id}/history
    """
    ledger = AuditLedger(db)
    if actor_id:
        records = ledger.query_by_actor(actor_id, actions=action, since=since, until=until, limit=limit)
    elif since is not None and until is not None:
        records = ledger.query_by_time_range(since, until, entity_type=entity_type, limit=limit)
    else:
        raise HTTPException(status_code=400, detail="Provide actor_id, or both since and until")
    return [r.model_dump(mode="json") for r in records]


@router.get("/{entity_type}/{entity_id}/count")
def count_records(entity_type: str, entity_id: str, db: Session = Depends(get_db)):
    return {"entity_type": entity_type, "entity_id": entity_id, "count": AuditLedger(db).count(entity_type, entity_id)}
