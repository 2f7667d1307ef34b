"""
Procurement error taxonomy.

Every failure the engine reports derives from ProcurementError so the HTTP layer
maps them in one place (see app.main). `retryable` tells the caller whether
sending the same request again can succeed without changing it.
"""

from __future__ import annotations

from typing import Any, Iterable


class ProcurementError(Exception):
    code = "PROCUREMENT_ERROR"
    retryable = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class PolicyViolation(ProcurementError):
    """Denied before any mutation: wrong role, no threshold, terminal order, bad input."""

    code = "POLICY_VIOLATION"

    def __init__(self, message: str, *, violations: Iterable[str] = (), details: dict[str, Any] | None = None):
        self.violations = list(violations) or [message]
        super().__init__(message, details={**(details or {}), "violations": self.violations})


class TransitionDenied(ProcurementError):
    code = "TRANSITION_DENIED"

    def __init__(self, current: str, proposed: str, message: str | None = None):
        self.current = current
        self.proposed = proposed
        super().__init__(
            message or f"Invalid transition from {current} to {proposed}",
            details={"current": current, "proposed": proposed},
        )


class QuantityViolation(ProcurementError):
    code = "QUANTITY_VIOLATION"

    def __init__(self, errors: Iterable[Any]):
        self.errors = list(errors)
        super().__init__(
            f"{len(self.errors)} receipt line(s) rejected",
            details={"errors": [e.to_dict() for e in self.errors]},
        )


class PersistenceFailure(ProcurementError):
    code = "PERSISTENCE_FAILURE"
    retryable = True


class AuditAppendFailure(ProcurementError):
    """The mutation is not committed when its audit record could not be written."""

    code = "AUDIT_APPEND_FAILURE"
    retryable = True


class OrderNotFound(ProcurementError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: Any):
        super().__init__(f"Purchase order '{order_id}' not found.", details={"order_id": order_id})


class OrderLocked(ProcurementError):
    code = "ORDER_LOCKED"


class InvalidOrder(ProcurementError):
    code = "INVALID_ORDER"


class StockUnavailable(ProcurementError):
    code = "STOCK_UNAVAILABLE"


class ImmutableRecordError(ProcurementError):
    code = "IMMUTABLE_RECORD"
