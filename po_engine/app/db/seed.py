from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from po_engine.app.db.session import SessionLocal
from po_engine.app.db.models.models_v1 import Product, Supplier, User
from po_engine.app.db.models.core_types import Role

logger = logging.getLogger(__name__)

SEED_USERS = [
    ("ADMIN", Role.admin),
    ("MANAGER", Role.manager),
    ("PURCHASER", Role.purchaser),
    ("WAREHOUSE", Role.warehouse),
]


def run_seed(db: Session | None = None):
    """Idempotent: safe to run on every deploy."""
    owns_session = db is None
    if owns_session:
        db = SessionLocal()
    try:
        # 1) Users (un par rôle du workflow)
        for name, role in SEED_USERS:
            if not db.scalar(select(User).where(User.name == name)):
                db.add(User(name=name, role=role, active=True))

        # 2) Supplier + product de démo
        if not db.scalar(select(Supplier).where(Supplier.name == "DEMO SUPPLIER")):
            db.add(Supplier(name="DEMO SUPPLIER", lead_time_days=7))
        if not db.scalar(select(Product).where(Product.sku == "DEMO-001")):
            db.add(Product(sku="DEMO-001", name="Demo product", uom="unit", active=True))

        db.commit()
        logger.info("SEED OK: users=%s", ", ".join(name for name, _ in SEED_USERS))
    finally:
        if owns_session:
            db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_seed()
