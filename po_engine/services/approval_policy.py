"""
Approval policy.

Evaluates monetary approval thresholds against purchase orders, alone or in a
bulk batch. A batch is only as permissive as its strictest member: the actor's
role is checked against the threshold governing the highest-total order.

Escalation deadlines are advisory. An overdue order is reported, never blocked.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Sequence

from po_engine.app.core.clock import as_utc, utcnow
from po_engine.app.core.config import ApprovalPolicyConfig, ApprovalThreshold
from po_engine.services.state_machine import is_terminal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscalationFlag:
    order_id: int | None
    po_number: str
    threshold_id: str
    deadline: datetime
    hours_overdue: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "po_number": self.po_number,
            "threshold_id": self.threshold_id,
            "deadline": self.deadline.isoformat(),
            "hours_overdue": round(self.hours_overdue, 2),
        }


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    violations: list[str] = field(default_factory=list)
    escalations: list[EscalationFlag] = field(default_factory=list)
    governing_threshold: ApprovalThreshold | None = None


@dataclass(frozen=True)
class BatchRiskSummary:
    count: int
    total_amount: Decimal
    average_amount: Decimal
    total_lines: int
    unique_suppliers: int
    high_value_count: int
    overdue_count: int
    risk_level: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "count": self.count,
            "total_amount": str(self.total_amount),
            "average_amount": str(self.average_amount),
            "total_lines": self.total_lines,
            "unique_suppliers": self.unique_suppliers,
            "high_value_count": self.high_value_count,
            "overdue_count": self.overdue_count,
            "risk_level": self.risk_level,
        }


def _status_value(order) -> str:
    return getattr(order.status, "value", order.status)


def _label(order) -> str:
    return order.po_number or f"#{order.id}"


def _age_start(order) -> datetime | None:
    return as_utc(order.submitted_at) or as_utc(order.created_at)


class ApprovalPolicy:
    def __init__(self, config: ApprovalPolicyConfig | None = None):
        self.config = config or ApprovalPolicyConfig()
        self._thresholds = tuple(
            sorted((t for t in self.config.thresholds if t.is_active), key=lambda t: t.min_amount)
        )

    @property
    def thresholds(self) -> tuple[ApprovalThreshold, ...]:
        return self._thresholds

    def evaluate_thresholds(self, order) -> list[ApprovalThreshold]:
        """Active thresholds whose [min, max) band contains the order total, ascending by min."""
        total = Decimal(order.total or 0)
        return [t for t in self._thresholds if t.contains(total)]

    def governing_threshold(self, order) -> ApprovalThreshold | None:
        matches = self.evaluate_thresholds(order)
        return matches[-1] if matches else None

    def escalation_deadline(self, threshold: ApprovalThreshold, start: datetime) -> datetime | None:
        if not threshold.escalation_hours:
            return None
        deadline = start + timedelta(hours=threshold.escalation_hours)
        holidays = set(self.config.holidays) if threshold.skip_holidays else set()
        while True:
            if threshold.skip_weekends and deadline.weekday() >= 5:
                deadline += timedelta(days=7 - deadline.weekday())
                continue
            if deadline.date() in holidays:
                deadline += timedelta(days=1)
                continue
            return deadline

    def escalation_for(self, order, now: datetime) -> EscalationFlag | None:
        threshold = self.governing_threshold(order)
        start = _age_start(order)
        if threshold is None or start is None:
            return None
        deadline = self.escalation_deadline(threshold, start)
        if deadline is None or now <= deadline:
            return None
        return EscalationFlag(
            order_id=order.id,
            po_number=_label(order),
            threshold_id=threshold.id,
            deadline=deadline,
            hours_overdue=(now - deadline).total_seconds() / 3600,
        )

    def validate(self, orders: Sequence, actor_role: str, now: datetime | None = None) -> ValidationResult:
        now = now or utcnow()
        role = getattr(actor_role, "value", actor_role)

        if not orders:
            return ValidationResult(False, ["No purchase orders to evaluate"])

        violations: list[str] = []
        for order in orders:
            if is_terminal(order.status):
                violations.append(
                    f"Order {_label(order)} is {_status_value(order)}; terminal orders cannot be approved or rejected"
                )
            elif not self.evaluate_thresholds(order):
                violations.append(
                    f"Order {_label(order)} total {order.total} matches no active approval threshold"
                )
        if violations:
            return ValidationResult(False, violations)

        highest = max(orders, key=lambda o: Decimal(o.total or 0))
        governing = self.governing_threshold(highest)
        for order in sorted(orders, key=lambda o: Decimal(o.total or 0), reverse=True):
            threshold = self.governing_threshold(order)
            if role not in threshold.required_roles:
                violations.append(
                    f"Role '{role}' cannot approve {_label(order)} (total {order.total}): "
                    f"threshold '{threshold.name}' requires one of {', '.join(threshold.required_roles)}"
                )

        escalations = [flag for flag in (self.escalation_for(o, now) for o in orders) if flag]
        for flag in escalations:
            logger.info(
                "Approval overdue for %s: %.1fh past %s deadline",
                flag.po_number,
                flag.hours_overdue,
                flag.threshold_id,
            )

        return ValidationResult(
            is_valid=not violations,
            violations=violations,
            escalations=escalations,
            governing_threshold=governing,
        )

    def summarize(self, orders: Sequence, now: datetime | None = None) -> BatchRiskSummary:
        now = now or utcnow()
        cfg = self.config
        count = len(orders)
        total = sum((Decimal(o.total or 0) for o in orders), Decimal("0"))
        average = (total / count).quantize(Decimal("0.01")) if count else Decimal("0.00")

        high_value = sum(1 for o in orders if Decimal(o.total or 0) > cfg.high_value_amount)
        overdue_cutoff = now - timedelta(days=cfg.overdue_days)
        overdue = sum(1 for o in orders if (_age_start(o) or now) < overdue_cutoff)

        if high_value or overdue:
            level = "high"
        elif total > cfg.medium_risk_total or count > cfg.medium_risk_count:
            level = "medium"
        else:
            level = "low"

        return BatchRiskSummary(
            count=count,
            total_amount=total,
            average_amount=average,
            total_lines=sum(len(o.lines) for o in orders),
            unique_suppliers=len({o.supplier_id for o in orders}),
            high_value_count=high_value,
            overdue_count=overdue,
            risk_level=level,
        )


class PolicyStore:
    """
    Versioned pointer to the active ApprovalPolicy.

    Readers take a (version, policy) snapshot and use it for a whole operation;
    swap() publishes a new immutable policy without touching in-flight readers.
    """

    def __init__(self, config: ApprovalPolicyConfig | None = None):
        self._lock = threading.Lock()
        self._version = 1
        self._policy = ApprovalPolicy(config)

    def current(self) -> tuple[int, ApprovalPolicy]:
        with self._lock:
            return self._version, self._policy

    def swap(self, config: ApprovalPolicyConfig) -> int:
        policy = ApprovalPolicy(config)
        with self._lock:
            self._version += 1
            self._policy = policy
            version = self._version
        logger.info("Approval policy swapped to version %d (%d active thresholds)", version, len(policy.thresholds))
        return version

