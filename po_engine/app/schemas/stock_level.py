from datetime import datetime

from pydantic import BaseModel, ConfigDict

from po_engine.app.db.models.core_types import MovementType


class StockLevelRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int

    qty_on_hand: int
    qty_on_order: int  # READ ONLY: calculé, jamais écrit
    version: int
    updated_at: datetime


class StockMovementRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    movement_type: MovementType
    quantity: int
    qty_before: int
    qty_after: int
    reason: str | None
    reference_id: str
    happened_at: datetime
    created_by: str | None
