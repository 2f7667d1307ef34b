"""
Purchase order state machine.

Pure transition logic over POStatus: no I/O, no session, no clock. The graph is
total (every status has an entry, terminal ones map to an empty set), so a
missing edge always means "denied".
"""

from __future__ import annotations

from types import MappingProxyType

from po_engine.app.db.models.core_types import POStatus
from po_engine.services.errors import TransitionDenied

S = POStatus

TRANSITIONS = MappingProxyType({
    S.draft: frozenset({S.pending_approval, S.cancelled}),
    # draft = returned for revision (rejection_target="draft")
    S.pending_approval: frozenset({S.approved, S.draft, S.cancelled}),
    S.approved: frozenset({S.sent_to_supplier, S.cancelled}),
    S.sent_to_supplier: frozenset({S.partially_received, S.fully_received, S.cancelled}),
    S.partially_received: frozenset({S.partially_received, S.fully_received, S.cancelled}),
    S.fully_received: frozenset({S.closed}),
    S.cancelled: frozenset(),
    S.closed: frozenset(),
})

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

# statuses in which line items may still be edited
EDITABLE_STATUSES = frozenset({S.draft})


def can_transition(current: POStatus | str, proposed: POStatus | str) -> bool:
    return POStatus(proposed) in TRANSITIONS[POStatus(current)]


def valid_transitions(current: POStatus | str) -> frozenset[POStatus]:
    return TRANSITIONS[POStatus(current)]


def is_terminal(status: POStatus | str) -> bool:
    return POStatus(status) in TERMINAL_STATUSES


def require_transition(current: POStatus | str, proposed: POStatus | str) -> None:
    current, proposed = POStatus(current), POStatus(proposed)
    if proposed in TRANSITIONS[current]:
        return
    if current in TERMINAL_STATUSES:
        raise TransitionDenied(
            current.value,
            proposed.value,
            f"Purchase order is {current.value}; no further status changes are allowed",
        )
    raise TransitionDenied(current.value, proposed.value)
