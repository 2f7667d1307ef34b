"""
Receiving reconciler.

Computes the post-receipt state of a purchase order from ordered, previously
received and newly received quantities. Pure: reads the order's lines, never
writes them and never touches stock. The caller applies `inventory_deltas`
through the stock repository and `updated_lines` to the order.

Idempotence:
    A receipt line may carry the `previously_received` snapshot the caller saw.
    If the line already holds snapshot + received_now, that receipt was applied
    before and the line reconciles to nothing (no delta, no update). Without a
    snapshot the line's current received quantity is used, so the caller gets
    plain cumulative receiving.

Errors are collected across all lines; any error means nothing is applied.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Sequence

from po_engine.app.db.models.core_types import POStatus, ReceiptCondition

# per-line error codes
NEGATIVE_QUANTITY = "NEGATIVE_QUANTITY"
OVER_RECEIPT = "OVER_RECEIPT"
UNKNOWN_PRODUCT = "UNKNOWN_PRODUCT"
DUPLICATE_PRODUCT = "DUPLICATE_PRODUCT"
INVALID_CONDITION = "INVALID_CONDITION"
STALE_RECEIPT = "STALE_RECEIPT"
EMPTY_RECEIPT = "EMPTY_RECEIPT"


@dataclass(frozen=True)
class ReceiptLine:
    product_id: int
    quantity: int
    condition: ReceiptCondition | str = ReceiptCondition.good
    previously_received: int | None = None
    lot_code: str | None = None
    expiration_date: date | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "condition": getattr(self.condition, "value", self.condition),
            "previously_received": self.previously_received,
            "lot_code": self.lot_code,
            "expiration_date": self.expiration_date.isoformat() if self.expiration_date else None,
        }


@dataclass(frozen=True)
class ReceiptLineError:
    index: int
    product_id: int | None
    code: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "product_id": self.product_id, "code": self.code, "message": self.message}


@dataclass(frozen=True)
class ReceivingEntry:
    product_id: int
    qty_ordered: int
    received_now: int
    previously_received: int
    total_received: int
    condition: ReceiptCondition
    lot_code: str | None = None
    expiration_date: date | None = None
    replayed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "qty_ordered": self.qty_ordered,
            "received_now": self.received_now,
            "previously_received": self.previously_received,
            "total_received": self.total_received,
            "condition": self.condition.value,
            "replayed": self.replayed,
        }


@dataclass(frozen=True)
class LineUpdate:
    product_id: int
    qty_received: int
    qty_damaged: int


@dataclass(frozen=True)
class InventoryDelta:
    product_id: int
    quantity: int
    reference_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"product_id": self.product_id, "quantity": self.quantity, "reference_id": self.reference_id}


@dataclass(frozen=True)
class Reconciliation:
    previous_status: POStatus
    resulting_status: POStatus
    entries: list[ReceivingEntry] = field(default_factory=list)
    updated_lines: list[LineUpdate] = field(default_factory=list)
    inventory_deltas: list[InventoryDelta] = field(default_factory=list)
    errors: list[ReceiptLineError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def changed(self) -> bool:
        return bool(self.updated_lines)


def _parse_condition(value) -> ReceiptCondition | None:
    try:
        return ReceiptCondition(value)
    except ValueError:
        return None


def reconcile(order, receipt_lines: Sequence[ReceiptLine], *, reference: str) -> Reconciliation:
    """
    Reconcile one receipt event against `order`.

    `reference` identifies the receipt event; each delta gets
    "<reference>:<product_id>" so the stock repository can dedupe retries.
    """
    status = POStatus(order.status)
    lines_by_product = {line.product_id: line for line in order.lines}

    errors: list[ReceiptLineError] = []
    entries: list[ReceivingEntry] = []
    updates: list[LineUpdate] = []
    deltas: list[InventoryDelta] = []

    if not receipt_lines:
        errors.append(ReceiptLineError(-1, None, EMPTY_RECEIPT, "At least one receipt line is required"))

    seen: set[int] = set()
    for idx, rl in enumerate(receipt_lines):
        line = lines_by_product.get(rl.product_id)
        if line is None:
            errors.append(ReceiptLineError(
                idx, rl.product_id, UNKNOWN_PRODUCT,
                f"Product {rl.product_id} is not on purchase order {order.po_number}",
            ))
            continue
        if rl.product_id in seen:
            errors.append(ReceiptLineError(
                idx, rl.product_id, DUPLICATE_PRODUCT,
                f"Product {rl.product_id} appears more than once in this receipt",
            ))
            continue
        seen.add(rl.product_id)

        condition = _parse_condition(rl.condition)
        if condition is None:
            errors.append(ReceiptLineError(idx, rl.product_id, INVALID_CONDITION, f"Invalid condition code: {rl.condition}"))
            continue

        if rl.quantity < 0:
            errors.append(ReceiptLineError(
                idx, rl.product_id, NEGATIVE_QUANTITY,
                f"Received quantity {rl.quantity} for product {rl.product_id} is negative",
            ))
            continue

        ordered = line.qty_ordered
        current = line.qty_received or 0
        previously = current if rl.previously_received is None else rl.previously_received

        if previously != current:
            if rl.quantity > 0 and previously + rl.quantity == current:
                # already applied
                entries.append(ReceivingEntry(
                    rl.product_id, ordered, rl.quantity, previously, current, condition,
                    rl.lot_code, rl.expiration_date, replayed=True,
                ))
                continue
            errors.append(ReceiptLineError(
                idx, rl.product_id, STALE_RECEIPT,
                f"Product {rl.product_id}: receipt was prepared against {previously} received, "
                f"but {current} are now recorded",
            ))
            continue

        total = previously + rl.quantity
        if total > ordered:
            errors.append(ReceiptLineError(
                idx, rl.product_id, OVER_RECEIPT,
                f"Total received quantity {total} for product {rl.product_id} exceeds ordered quantity {ordered}",
            ))
            continue

        entries.append(ReceivingEntry(
            rl.product_id, ordered, rl.quantity, previously, total, condition,
            rl.lot_code, rl.expiration_date,
        ))
        if rl.quantity == 0:
            continue

        damaged = (line.qty_damaged or 0) + (rl.quantity if condition is not ReceiptCondition.good else 0)
        updates.append(LineUpdate(rl.product_id, total, damaged))
        if condition is ReceiptCondition.good:
            deltas.append(InventoryDelta(rl.product_id, rl.quantity, f"{reference}:{rl.product_id}"))

    if errors:
        return Reconciliation(status, status, entries=entries, errors=errors)

    if not updates:
        return Reconciliation(status, status, entries=entries)

    return Reconciliation(
        previous_status=status,
        resulting_status=_resulting_status(order.lines, updates),
        entries=entries,
        updated_lines=updates,
        inventory_deltas=deltas,
    )


def _resulting_status(lines: Iterable, updates: Iterable[LineUpdate]) -> POStatus:
    received = {line.product_id: line.qty_received or 0 for line in lines}
    received.update({u.product_id: u.qty_received for u in updates})
    if all(received[line.product_id] == line.qty_ordered for line in lines):
        return POStatus.fully_received
    return POStatus.partially_received
