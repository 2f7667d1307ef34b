from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from po_engine.app.api.deps import get_db
from po_engine.app.db.models.models_v1 import Product
from po_engine.app.schemas.master_data import ProductCreate, ProductRead

router = APIRouter(prefix="/products")


@router.get("", response_model=list[ProductRead])
def list_products(active_only: bool = False, db: Session = Depends(get_db)):
    stmt = select(Product).order_by(Product.sku)
    if active_only:
        stmt = stmt.where(Product.active.is_(True))
    return db.execute(stmt).scalars().all()


@router.post("", response_model=ProductRead, status_code=201)
def create_product(payload: ProductCreate, db: Session = Depends(get_db)):
    product = Product(**payload.model_dump())
    db.add(product)
    try:
        db.commit()
    except IntegrityError:
        # sku unique
        db.rollback()
        raise HTTPException(status_code=409, detail=f"SKU {payload.sku} already exists")
    return product


@router.post("/{product_id}/deactivate", response_model=ProductRead)
def deactivate_product(product_id: int, db: Session = Depends(get_db)):
    """Les PO existants gardent la ligne ; seuls les nouveaux PO refusent le produit."""
    product = db.get(Product, product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    product.active = False
    db.commit()
    return product
