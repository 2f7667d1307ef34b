from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Iterable, Protocol

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from po_engine.app.db.models.models_v1 import (
    StockLevel,
    StockMovement,
    PurchaseOrder,
    PurchaseOrderLine,
)
from po_engine.app.db.models.core_types import MovementType, POStatus
from po_engine.services.errors import StockUnavailable

logger = logging.getLogger(__name__)


# PO réellement engagés dans le "on order"
ENGAGED_PO_STATUSES = {
    POStatus.approved,
    POStatus.sent_to_supplier,
    POStatus.partially_received,
}


@dataclass(frozen=True)
class StockDeltaResult:
    product_id: int
    reference_id: str
    delta: int
    qty_before: int
    qty_after: int
    applied: bool  # False when reference_id was already applied


class StockRepository(Protocol):
    """
    Stock collaborator. `apply_delta` must be idempotent per reference_id.

    `transactional` repositories write through the caller's session, so a
    rollback undoes their deltas. Others get a compensating delta instead.
    """

    transactional: bool

    def get_current_quantity(self, product_id: int) -> int: ...

    def apply_delta(self, product_id: int, delta: int, reference_id: str, *, reason: str | None = None) -> StockDeltaResult: ...


def movement_idempotency_key(reference_id: str) -> str:
    raw = f"STOCKMOVE:{reference_id}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _get_or_create_stock_level(db: Session, product_id: int) -> StockLevel:
    sl = (
        db.execute(
            select(StockLevel)
            .where(StockLevel.product_id == product_id)
            .with_for_update()
        )
        .scalar_one_or_none()
    )
    if sl:
        return sl

    sl = StockLevel(product_id=product_id, qty_on_hand=0, qty_on_order=0)
    db.add(sl)
    db.flush()
    return sl


class SqlStockRepository:
    """
    Stock levels in the engine's own database.

    Row lock (FOR UPDATE) on the stock level, plus the level's version column
    for backends without row locks. Each applied delta leaves one StockMovement
    whose unique idempotency_key is derived from the reference id.
    """

    transactional = True

    def __init__(self, db: Session, *, actor_id: str | None = None):
        self.db = db
        self.actor_id = actor_id

    def _find_existing_movement(self, idem: str) -> StockMovement | None:
        return self.db.execute(
            select(StockMovement).where(StockMovement.idempotency_key == idem)
        ).scalar_one_or_none()

    @staticmethod
    def _replay(mv: StockMovement, reference_id: str) -> StockDeltaResult:
        sign = 1 if mv.movement_type == MovementType.receipt else -1
        return StockDeltaResult(mv.product_id, reference_id, sign * mv.quantity, mv.qty_before, mv.qty_after, applied=False)

    def get_current_quantity(self, product_id: int) -> int:
        qty = self.db.execute(
            select(StockLevel.qty_on_hand).where(StockLevel.product_id == product_id)
        ).scalar_one_or_none()
        return int(qty or 0)

    def apply_delta(self, product_id: int, delta: int, reference_id: str, *, reason: str | None = None) -> StockDeltaResult:
        if delta == 0:
            qty = self.get_current_quantity(product_id)
            return StockDeltaResult(product_id, reference_id, 0, qty, qty, applied=False)

        idem = movement_idempotency_key(reference_id)

        # idempotent replay
        existing = self._find_existing_movement(idem)
        if existing:
            logger.info("Stock delta %s already applied, skipping", reference_id)
            return self._replay(existing, reference_id)

        sl = _get_or_create_stock_level(self.db, product_id)
        before = sl.qty_on_hand
        after = before + delta
        if after < 0:
            raise StockUnavailable(
                f"Insufficient stock for product {product_id} (on_hand={before}, delta={delta})",
                details={"product_id": product_id, "on_hand": before, "delta": delta},
            )

        mv = StockMovement(
            product_id=product_id,
            movement_type=MovementType.receipt if delta > 0 else MovementType.adjustment,
            quantity=abs(delta),
            qty_before=before,
            qty_after=after,
            reason=reason,
            reference_id=reference_id,
            created_by=self.actor_id,
            idempotency_key=idem,
        )

        # Concurrence: même reference appliquée en parallèle
        try:
            with self.db.begin_nested():
                self.db.add(mv)
        except IntegrityError:
            existing = self._find_existing_movement(idem)
            if existing is None:
                raise
            return self._replay(existing, reference_id)

        sl.qty_on_hand = after
        self.db.flush()
        return StockDeltaResult(product_id, reference_id, delta, before, after, applied=True)


def rebuild_qty_on_order(
    db: Session,
    *,
    product_ids: Iterable[int],
) -> None:
    """
    Rebuild qty_on_order à partir des sources de vérité.

    Règle métier :
        qty_on_order =
            SUM(qty_ordered - qty_received sur les lignes des PO engagés)

    Propriétés :
    - déterministe
    - idempotent
    - transaction-safe
    - verrouillage SQL (FOR UPDATE)
    """

    product_ids = sorted({int(pid) for pid in product_ids if pid is not None})
    if not product_ids:
        return

    # ---------- RESTANT À RECEVOIR ----------
    outstanding_rows = db.execute(
        select(
            PurchaseOrderLine.product_id,
            func.coalesce(
                func.sum(PurchaseOrderLine.qty_ordered - PurchaseOrderLine.qty_received),
                0,
            ).label("outstanding_qty"),
        )
        .join(PurchaseOrder, PurchaseOrder.id == PurchaseOrderLine.po_id)
        .where(PurchaseOrder.status.in_(ENGAGED_PO_STATUSES))
        .where(PurchaseOrderLine.product_id.in_(product_ids))
        .group_by(PurchaseOrderLine.product_id)
    ).all()

    outstanding = {int(pid): int(qty) for pid, qty in outstanding_rows}

    # ---------- UPSERT STOCK LEVEL ----------
    for pid in product_ids:
        sl = _get_or_create_stock_level(db, pid)
        qty = max(outstanding.get(pid, 0), 0)
        if sl.qty_on_order != qty:
            sl.qty_on_order = qty
    db.flush()
