"""
Workflow event sinks.

Events go out after the transition they describe has committed. A sink that
fails is logged and ignored: the transition stands.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Protocol

from po_engine.app.core.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkflowEvent:
    order_id: int
    po_number: str
    action: str
    old_status: str | None
    new_status: str
    actor_id: str
    occurred_at: datetime = field(default_factory=utcnow)
    payload: dict[str, Any] = field(default_factory=dict)


class EventSink(Protocol):
    def emit(self, event: WorkflowEvent) -> None: ...


class LoggingEventSink:
    def emit(self, event: WorkflowEvent) -> None:
        logger.info(
            "PO %s %s: %s -> %s by %s",
            event.po_number,
            event.action,
            event.old_status,
            event.new_status,
            event.actor_id,
        )


class InMemoryEventSink:
    def __init__(self):
        self.events: list[WorkflowEvent] = []

    def emit(self, event: WorkflowEvent) -> None:
        self.events.append(event)


def emit_safely(sink: EventSink | None, events: Iterable[WorkflowEvent]) -> int:
    """Emit each event; returns how many failed."""
    if sink is None:
        return 0
    failed = 0
    for ev in events:
        try:
            sink.emit(ev)
        except Exception:
            failed += 1
            logger.exception("Event sink failed for PO %s (%s)", ev.po_number, ev.action)
    return failed
