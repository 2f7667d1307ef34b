from decimal import Decimal

import pytest

from po_engine.app.db.models.core_types import POStatus
from po_engine.services.audit import CreationDiff, LineEditDiff
from po_engine.services.engine import OrderLineInput, PurchaseOrderEngine
from po_engine.services.errors import (
    AuditAppendFailure,
    InvalidOrder,
    OrderLocked,
    OrderNotFound,
    TransitionDenied,
)
from po_engine.services.receiving import ReceiptLine
from po_engine.services.workflow import RequestContext


def test_create_order_computes_totals_and_audits(po, supplier, products, users):
    order = po.create_order(
        supplier.id,
        [OrderLineInput(products[0].id, 3, Decimal("19.99")), OrderLineInput(products[1].id, 2, Decimal("5"))],
        str(users["purchaser"].id),
        tax=Decimal("4.20"),
        context=RequestContext(ip_address="10.0.0.1", user_agent="pytest"),
    )

    assert order.status == POStatus.draft
    assert order.po_number.startswith("PO-")
    assert order.subtotal == Decimal("69.97")
    assert order.total == Decimal("74.17")

    (rec,) = po.history(order.id)
    assert rec.action == "created"
    assert rec.actor_id == str(users["purchaser"].id)
    assert rec.actor_name == "PURCHASER"
    assert isinstance(rec.diff, CreationDiff)
    assert rec.ip_address == "10.0.0.1"
    assert rec.user_agent == "pytest"


def test_create_order_rejects_bad_input(po, supplier, products, users):
    uid = str(users["purchaser"].id)
    with pytest.raises(InvalidOrder):
        po.create_order(supplier.id, [], uid)
    with pytest.raises(InvalidOrder):
        po.create_order(9999, [OrderLineInput(products[0].id, 1, Decimal("1"))], uid)
    with pytest.raises(InvalidOrder):
        po.create_order(supplier.id, [OrderLineInput(9999, 1, Decimal("1"))], uid)
    with pytest.raises(InvalidOrder):
        po.create_order(
            supplier.id,
            [OrderLineInput(products[0].id, 1, Decimal("1")), OrderLineInput(products[0].id, 2, Decimal("1"))],
            uid,
        )

    po.create_order(supplier.id, [OrderLineInput(products[0].id, 1, Decimal("1"))], uid, po_number="PO-DUP")
    with pytest.raises(InvalidOrder):
        po.create_order(supplier.id, [OrderLineInput(products[0].id, 1, Decimal("1"))], uid, po_number="PO-DUP")


def test_update_lines_in_draft(po, make_order, products, users):
    order = make_order([(products[0], 2, 10), (products[1], 1, 50)], submit=False)

    order = po.update_lines(
        order.id,
        [OrderLineInput(products[1].id, 4, Decimal("50")), OrderLineInput(products[2].id, 1, Decimal("7.5"))],
        str(users["purchaser"].id),
    )

    assert {(ln.product_id, ln.qty_ordered) for ln in order.lines} == {(products[1].id, 4), (products[2].id, 1)}
    assert order.total == Decimal("207.50")

    latest = po.history(order.id)[0]
    assert latest.action == "lines_updated"
    assert isinstance(latest.diff, LineEditDiff)
    assert latest.diff.old_total == "70.00"
    assert latest.diff.new_total == "207.50"


def test_update_lines_after_submit_is_locked(po, make_order, products, users):
    order = make_order([(products[0], 2, 10)])
    with pytest.raises(OrderLocked):
        po.update_lines(order.id, [OrderLineInput(products[0].id, 5, Decimal("10"))], str(users["purchaser"].id))
    assert po.get_order(order.id).lines[0].qty_ordered == 2


def test_submit_sets_round_and_timestamp(po, make_order, products):
    order = make_order([(products[0], 1, 100)])
    assert order.status == POStatus.pending_approval
    assert order.approval_round == 1
    assert order.submitted_at is not None
    assert [r.action for r in po.history(order.id)] == ["submitted", "created"]


def test_submit_requires_positive_total(po, make_order, products, users):
    order = make_order([(products[0], 1, 0)], submit=False)
    with pytest.raises(InvalidOrder):
        po.submit_for_approval(order.id, str(users["purchaser"].id))
    assert po.get_order(order.id).status == POStatus.draft
    assert po.ledger.count("purchase_order", order.id) == 1


def test_invalid_single_transition_raises(po, make_order, products, users):
    order = make_order([(products[0], 1, 100)], submit=False)
    with pytest.raises(TransitionDenied):
        po.send_to_supplier(order.id, str(users["purchaser"].id))
    with pytest.raises(TransitionDenied):
        po.close(order.id, str(users["purchaser"].id))


def test_cancel_is_terminal(po, make_order, products, users):
    order = make_order([(products[0], 1, 100)])
    uid = str(users["purchaser"].id)
    po.cancel(order.id, uid, "supplier out of business")

    assert po.reachable_statuses(order.id) == []
    with pytest.raises(TransitionDenied):
        po.submit_for_approval(order.id, uid)
    assert po.history(order.id)[0].reason == "supplier out of business"


def test_reachable_statuses(po, make_order, products):
    order = make_order([(products[0], 1, 100)])
    assert po.reachable_statuses(order.id) == [POStatus.approved, POStatus.cancelled, POStatus.draft]


def test_unknown_order(po):
    with pytest.raises(OrderNotFound):
        po.get_order(424242)
    with pytest.raises(OrderNotFound):
        po.cancel(424242, "1")


def test_unresolvable_actor_falls_back_to_system(po, make_order, products):
    """
    GIVEN an actor id the directory does not know
    THEN the mutation is attributed to the system actor and flagged
    """
    order = make_order([(products[0], 1, 100)], submit=False)
    po.submit_for_approval(order.id, "ghost-42")

    rec = po.history(order.id)[0]
    assert rec.actor_id == "system"
    assert rec.metadata["actor_fallback"] is True


def test_event_emitted_after_commit(po, make_order, products, sink):
    order = make_order([(products[0], 1, 100)])
    assert [(e.action, e.old_status, e.new_status) for e in sink.events] == [("submitted", "draft", "pending_approval")]
    assert sink.events[0].order_id == order.id


def test_sink_failure_does_not_roll_back(db_session, policy_store, make_order, products, users):
    class BrokenSink:
        def emit(self, event):
            raise RuntimeError("smtp down")

    order = make_order([(products[0], 1, 100)], submit=False)
    engine = PurchaseOrderEngine(db_session, policy_store=policy_store, events=BrokenSink())
    engine.submit_for_approval(order.id, str(users["purchaser"].id))

    db_session.expire_all()
    assert engine.get_order(order.id).status == POStatus.pending_approval


def test_audit_failure_rolls_back_mutation(po, make_order, products, users, monkeypatch):
    order = make_order([(products[0], 1, 100)], submit=False)

    def boom(record):
        raise AuditAppendFailure("ledger unavailable")

    monkeypatch.setattr(po.workflow.ledger, "append", boom)
    with pytest.raises(AuditAppendFailure) as exc:
        po.submit_for_approval(order.id, str(users["purchaser"].id))
    assert exc.value.retryable

    monkeypatch.undo()
    po.db.expire_all()
    fresh = po.get_order(order.id)
    assert fresh.status == POStatus.draft
    assert fresh.approval_round == 0
    assert po.ledger.count("purchase_order", order.id) == 1


def test_close_after_full_receipt(po, make_order, products, users):
    order = make_order([(products[0], 2, 100)])
    po.approve(order.id, str(users["manager"].id))
    po.send_to_supplier(order.id, str(users["purchaser"].id))

    po.receive(order.id, [ReceiptLine(products[0].id, 2)], str(users["warehouse"].id))
    closed = po.close(order.id, str(users["purchaser"].id))
    assert closed.status == POStatus.closed
    assert closed.closed_at is not None
    # created, submitted, approved, sent, received, closed
    assert po.ledger.count("purchase_order", order.id) == 6
