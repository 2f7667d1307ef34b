from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from pydantic import ValidationError

from po_engine.app.core.config import ApprovalPolicyConfig, ApprovalThreshold
from po_engine.app.db.models.core_types import POStatus
from po_engine.services.approval_policy import ApprovalPolicy, PolicyStore

UTC = timezone.utc
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)  # Monday


def order(total, status=POStatus.pending_approval, *, oid=1, submitted_at=NOW, supplier_id=1, lines=1):
    return SimpleNamespace(
        id=oid,
        po_number=f"PO-{oid}",
        total=Decimal(str(total)),
        status=status,
        submitted_at=submitted_at,
        created_at=submitted_at,
        supplier_id=supplier_id,
        lines=[object()] * lines,
    )


def two_band_policy(**kw) -> ApprovalPolicy:
    return ApprovalPolicy(
        ApprovalPolicyConfig(
            thresholds=(
                ApprovalThreshold(id="low", name="Low", min_amount=0, max_amount=50000, required_roles=("manager",)),
                ApprovalThreshold(id="high", name="High", min_amount=50000, required_roles=("admin",)),
            ),
            **kw,
        )
    )


def test_manager_denied_admin_allowed_at_60000():
    """
    GIVEN thresholds [0-50000 manager, 50000+ admin] and a PHP 60,000 order
    THEN manager is denied, admin passes
    """
    policy = two_band_policy()
    po = order(60000)

    denied = policy.validate([po], "manager", NOW)
    assert not denied.is_valid
    assert "admin" in denied.violations[0]

    allowed = policy.validate([po], "admin", NOW)
    assert allowed.is_valid
    assert allowed.governing_threshold.id == "high"


def test_band_bounds_are_min_inclusive_max_exclusive():
    policy = two_band_policy()
    assert [t.id for t in policy.evaluate_thresholds(order(50000))] == ["high"]
    assert [t.id for t in policy.evaluate_thresholds(order("49999.99"))] == ["low"]
    assert [t.id for t in policy.evaluate_thresholds(order(0))] == ["low"]


def test_empty_batch_is_invalid():
    result = two_band_policy().validate([], "admin", NOW)
    assert not result.is_valid
    assert result.violations == ["No purchase orders to evaluate"]


def test_batch_governed_by_highest_total():
    """A manager may approve each small order alone, but not a batch holding a large one."""
    policy = two_band_policy()
    small, large = order(1000, oid=1), order(75000, oid=2)

    assert policy.validate([small], "manager", NOW).is_valid
    assert not policy.validate([small, large], "manager", NOW).is_valid


def test_every_order_in_a_batch_is_role_checked():
    """An admin cleared for the large order still cannot carry a manager-only order along."""
    policy = two_band_policy()
    small, large = order(1000, oid=1), order(75000, oid=2)

    assert not policy.validate([small], "admin", NOW).is_valid
    result = policy.validate([small, large], "admin", NOW)
    assert not result.is_valid
    assert len(result.violations) == 1
    assert "PO-1" in result.violations[0]
    assert result.governing_threshold.id == "high"


def test_terminal_orders_reported_one_violation_each():
    policy = two_band_policy()
    batch = [order(10, POStatus.closed, oid=1), order(10, POStatus.cancelled, oid=2), order(10, oid=3)]
    result = policy.validate(batch, "admin", NOW)
    assert not result.is_valid
    assert len(result.violations) == 2
    assert "PO-1" in result.violations[0] and "PO-2" in result.violations[1]


def test_order_outside_every_threshold_is_a_violation():
    policy = ApprovalPolicy(
        ApprovalPolicyConfig(
            thresholds=(ApprovalThreshold(id="mid", name="Mid", min_amount=100, max_amount=1000, required_roles=("admin",)),)
        )
    )
    result = policy.validate([order(5000)], "admin", NOW)
    assert not result.is_valid
    assert "matches no active approval threshold" in result.violations[0]


def test_inactive_thresholds_are_ignored():
    policy = ApprovalPolicy(
        ApprovalPolicyConfig(
            thresholds=(
                ApprovalThreshold(id="off", name="Off", min_amount=0, required_roles=("employee",), is_active=False),
                ApprovalThreshold(id="on", name="On", min_amount=0, required_roles=("admin",)),
            )
        )
    )
    assert [t.id for t in policy.thresholds] == ["on"]
    assert not policy.validate([order(10)], "employee", NOW).is_valid


def test_escalation_is_advisory():
    """
    GIVEN an order submitted 3 days ago under a 24h threshold
    THEN it is flagged, and validation still passes
    """
    policy = ApprovalPolicy(
        ApprovalPolicyConfig(
            thresholds=(ApprovalThreshold(id="t", name="T", min_amount=0, required_roles=("admin",), escalation_hours=24),)
        )
    )
    stale = order(100, submitted_at=NOW - timedelta(days=3))
    result = policy.validate([stale], "admin", NOW)
    assert result.is_valid
    assert len(result.escalations) == 1
    assert result.escalations[0].hours_overdue == pytest.approx(48)


def test_escalation_deadline_skips_weekend_and_holidays():
    threshold = ApprovalThreshold(
        id="t", name="T", min_amount=0, required_roles=("admin",),
        escalation_hours=24, skip_weekends=True, skip_holidays=True,
    )
    policy = ApprovalPolicy(ApprovalPolicyConfig(thresholds=(threshold,), holidays=(date(2026, 10, 19),)))
    friday = datetime(2026, 10, 16, 10, 0, tzinfo=UTC)

    # Saturday -> Monday (holiday) -> Tuesday
    assert policy.escalation_deadline(threshold, friday) == datetime(2026, 10, 20, 10, 0, tzinfo=UTC)


def test_escalation_without_hours_never_fires():
    threshold = ApprovalThreshold(id="t", name="T", min_amount=0, required_roles=("admin",))
    assert ApprovalPolicy().escalation_deadline(threshold, NOW) is None


def test_summarize_risk_levels():
    policy = two_band_policy()

    low = policy.summarize([order(100, oid=1), order(300, oid=2, supplier_id=2)], NOW)
    assert low.risk_level == "low"
    assert low.count == 2 and low.total_amount == Decimal("400")
    assert low.average_amount == Decimal("200.00")
    assert low.unique_suppliers == 2

    high = policy.summarize([order(60000)], NOW)
    assert high.risk_level == "high" and high.high_value_count == 1

    overdue = policy.summarize([order(100, submitted_at=NOW - timedelta(days=5))], NOW)
    assert overdue.risk_level == "high" and overdue.overdue_count == 1

    medium = policy.summarize([order(40000, oid=i) for i in range(3)], NOW)
    assert medium.risk_level == "medium"


def test_threshold_band_must_be_ordered():
    with pytest.raises(ValidationError):
        ApprovalThreshold(id="bad", name="Bad", min_amount=100, max_amount=100, required_roles=("admin",))


def test_policy_store_swap_bumps_version_and_keeps_old_snapshot():
    store = PolicyStore()
    v1, p1 = store.current()

    v2 = store.swap(ApprovalPolicyConfig(rejection_target="draft"))
    assert v2 == v1 + 1

    _, p2 = store.current()
    assert p2.config.rejection_target == "draft"
    assert p1.config.rejection_target == "cancelled"
