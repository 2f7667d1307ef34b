import itertools

import pytest

from po_engine.app.db.models.core_types import POStatus as S
from po_engine.services.errors import TransitionDenied
from po_engine.services.state_machine import (
    TERMINAL_STATUSES,
    can_transition,
    is_terminal,
    require_transition,
    valid_transitions,
)

EXPECTED = {
    S.draft: {S.pending_approval, S.cancelled},
    S.pending_approval: {S.approved, S.draft, S.cancelled},
    S.approved: {S.sent_to_supplier, S.cancelled},
    S.sent_to_supplier: {S.partially_received, S.fully_received, S.cancelled},
    S.partially_received: {S.partially_received, S.fully_received, S.cancelled},
    S.fully_received: {S.closed},
    S.cancelled: set(),
    S.closed: set(),
}


@pytest.mark.parametrize("current,proposed", list(itertools.product(S, S)))
def test_can_transition_matches_graph(current, proposed):
    assert can_transition(current, proposed) is (proposed in EXPECTED[current])


def test_every_status_has_an_entry():
    for status in S:
        assert set(valid_transitions(status)) == EXPECTED[status]


def test_terminal_statuses():
    assert TERMINAL_STATUSES == {S.cancelled, S.closed}
    assert is_terminal("closed")
    assert not is_terminal(S.fully_received)


def test_accepts_string_values():
    assert can_transition("draft", "pending_approval")
    assert not can_transition("draft", "approved")


def test_require_transition_denies_with_both_statuses():
    with pytest.raises(TransitionDenied) as exc:
        require_transition(S.draft, S.approved)
    assert exc.value.current == "draft"
    assert exc.value.proposed == "approved"
    assert exc.value.code == "TRANSITION_DENIED"


def test_require_transition_from_terminal_explains_why():
    with pytest.raises(TransitionDenied) as exc:
        require_transition(S.closed, S.draft)
    assert "no further status changes" in exc.value.message
