"""
Audit ledger.

Append-only record of every persisted purchase order mutation. Rows are never
updated or deleted: the ORM refuses both (see the mapper listeners below), and
the ledger exposes no path to do it.

`append` only flushes. The record commits or rolls back with the mutation it
describes, so a mutation without its audit record cannot be observed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated, Any, Iterable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from sqlalchemy import event, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from po_engine.app.core.clock import as_utc, utcnow
from po_engine.app.db.models.core_types import AuditAction, EntityType
from po_engine.app.db.models.models_v1 import AuditLog
from po_engine.services.errors import AuditAppendFailure, ImmutableRecordError

logger = logging.getLogger(__name__)


# ---------- DIFFS ----------
class StatusChangeDiff(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["status_change"] = "status_change"
    old_status: str
    new_status: str


class CreationDiff(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["creation"] = "creation"
    status: str
    total: str
    lines: list[dict[str, Any]] = Field(default_factory=list)


class LineEditDiff(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["line_edit"] = "line_edit"
    before: list[dict[str, Any]] = Field(default_factory=list)
    after: list[dict[str, Any]] = Field(default_factory=list)
    old_total: str
    new_total: str


class ReceiptDiff(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["receipt"] = "receipt"
    old_status: str
    new_status: str
    lines: list[dict[str, Any]] = Field(default_factory=list)


class ApprovalVoteDiff(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["approval_vote"] = "approval_vote"
    threshold_id: str
    votes: int
    required: int


AuditDiff = Annotated[
    Union[StatusChangeDiff, CreationDiff, LineEditDiff, ReceiptDiff, ApprovalVoteDiff],
    Field(discriminator="kind"),
]
_diff_adapter: TypeAdapter[AuditDiff] = TypeAdapter(AuditDiff)


def parse_diff(raw: dict[str, Any] | None):
    if raw is None:
        return None
    return _diff_adapter.validate_python(raw)


# ---------- RECORD ----------
class AuditRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int | None = None
    entity_type: str = EntityType.purchase_order.value
    entity_id: str
    action: str
    actor_id: str
    actor_name: str | None = None
    diff: AuditDiff | None = None
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    timestamp: datetime | None = None

    @classmethod
    def from_row(cls, row: AuditLog) -> "AuditRecord":
        return cls(
            id=row.id,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            action=row.action,
            actor_id=row.actor_id,
            actor_name=row.actor_name,
            diff=parse_diff(row.diff),
            reason=row.reason,
            metadata=row.meta or {},
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            timestamp=as_utc(row.created_at),
        )


# ---------- IMMUTABILITY ----------
@event.listens_for(AuditLog, "before_update")
def _refuse_update(mapper, connection, target):
    raise ImmutableRecordError(f"Audit record {target.id} is append-only")


@event.listens_for(AuditLog, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise ImmutableRecordError(f"Audit record {target.id} is append-only")


# ---------- LEDGER ----------
def _action_value(action) -> str:
    return getattr(action, "value", action)


class AuditLedger:
    def __init__(self, db: Session):
        self.db = db

    def append(self, record: AuditRecord) -> int:
        """Stage one record in the current transaction. Raises AuditAppendFailure."""
        row = AuditLog(
            entity_type=record.entity_type,
            entity_id=str(record.entity_id),
            action=_action_value(record.action),
            actor_id=record.actor_id,
            actor_name=record.actor_name,
            diff=record.diff.model_dump(mode="json") if record.diff is not None else None,
            reason=record.reason,
            meta=record.metadata or None,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            created_at=record.timestamp or utcnow(),
        )
        try:
            self.db.add(row)
            self.db.flush()
        except SQLAlchemyError as e:
            logger.error("Audit append failed for %s %s (%s): %s", record.entity_type, record.entity_id, record.action, e)
            raise AuditAppendFailure(
                f"Could not append audit record for {record.entity_type} {record.entity_id}",
                details={"action": _action_value(record.action)},
            ) from e
        return int(row.id)

    def _run(self, stmt, limit: int | None) -> list[AuditRecord]:
        stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return [AuditRecord.from_row(r) for r in self.db.execute(stmt).scalars().all()]

    @staticmethod
    def _filter(stmt, *, actions: Iterable[AuditAction | str] | None, since: datetime | None, until: datetime | None):
        if actions:
            stmt = stmt.where(AuditLog.action.in_([_action_value(a) for a in actions]))
        if since is not None:
            stmt = stmt.where(AuditLog.created_at >= since)
        if until is not None:
            stmt = stmt.where(AuditLog.created_at <= until)
        return stmt

    def query(
        self,
        entity_id: Any,
        *,
        entity_type: str | None = EntityType.purchase_order.value,
        actions: Iterable[AuditAction | str] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[AuditRecord]:
        stmt = select(AuditLog).where(AuditLog.entity_id == str(entity_id))
        if entity_type is not None:
            stmt = stmt.where(AuditLog.entity_type == entity_type)
        return self._run(self._filter(stmt, actions=actions, since=since, until=until), limit)

    def query_by_actor(
        self,
        actor_id: str,
        *,
        actions: Iterable[AuditAction | str] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[AuditRecord]:
        stmt = select(AuditLog).where(AuditLog.actor_id == actor_id)
        return self._run(self._filter(stmt, actions=actions, since=since, until=until), limit)

    def query_by_time_range(
        self,
        start: datetime,
        end: datetime,
        *,
        entity_type: str | None = None,
        limit: int | None = None,
    ) -> list[AuditRecord]:
        stmt = self._filter(select(AuditLog), actions=None, since=start, until=end)
        if entity_type is not None:
            stmt = stmt.where(AuditLog.entity_type == entity_type)
        return self._run(stmt, limit)

    def count(self, entity_type: str, entity_id: Any) -> int:
        return int(
            self.db.execute(
                select(func.count(AuditLog.id))
                .where(AuditLog.entity_type == entity_type)
                .where(AuditLog.entity_id == str(entity_id))
            ).scalar_one()
        )

    def count_by_action(
        self,
        actions: Iterable[AuditAction | str],
        *,
        entity_type: str | None = EntityType.purchase_order.value,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> dict[str, int]:
        wanted = [_action_value(a) for a in actions]
        stmt = self._filter(
            select(AuditLog.action, func.count(AuditLog.id)), actions=wanted, since=since, until=until
        ).group_by(AuditLog.action)
        if entity_type is not None:
            stmt = stmt.where(AuditLog.entity_type == entity_type)
        counts = {action: 0 for action in wanted}
        counts.update({action: int(n) for action, n in self.db.execute(stmt).all()})
        return counts
