from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from po_engine.app.api.deps import get_db
from po_engine.app.db.models.models_v1 import Product, StockLevel, StockMovement
from po_engine.app.schemas.stock_level import StockLevelRead, StockMovementRead

router = APIRouter(prefix="/stock")


@router.get(
    "",
    response_model=list[StockLevelRead],
)
def get_stock(
    product_id: int | None = None,
    db: Session = Depends(get_db),
):
    """
    Stock (READ ONLY)
    - qty_on_hand ne bouge que via les réceptions de PO
    - qty_on_order est calculé, jamais modifiable
    """

    stmt = (
        select(StockLevel)
        .join(Product, Product.id == StockLevel.product_id)
        .order_by(Product.sku)
    )

    if product_id is not None:
        stmt = stmt.where(StockLevel.product_id == product_id)

    stock_levels = db.execute(stmt).scalars().all()
    return stock_levels


@router.get("/movements", response_model=list[StockMovementRead])
def list_movements(
    product_id: int | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    """Mouvements de stock (READ ONLY), plus récents d'abord."""
    stmt = select(StockMovement).order_by(StockMovement.happened_at.desc(), StockMovement.id.desc())
    if product_id is not None:
        stmt = stmt.where(StockMovement.product_id == product_id)
    return db.execute(stmt.limit(limit)).scalars().all()
