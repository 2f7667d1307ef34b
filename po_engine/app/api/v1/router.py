from fastapi import APIRouter

from po_engine.app.api.v1.endpoints.health import router as health_router
from po_engine.app.api.v1.endpoints.products import router as products_router
from po_engine.app.api.v1.endpoints.suppliers import router as suppliers_router
from po_engine.app.api.v1.endpoints.purchase_orders import router as purchase_orders_router
from po_engine.app.api.v1.endpoints.approvals import router as approvals_router
from po_engine.app.api.v1.endpoints.audit import router as audit_router
from po_engine.app.api.v1.endpoints.stock import router as stock_router

router = APIRouter()
router.include_router(health_router, tags=["health"])
router.include_router(products_router, tags=["products"])
router.include_router(suppliers_router, tags=["suppliers"])
router.include_router(purchase_orders_router, tags=["purchase_orders"])
router.include_router(approvals_router, tags=["approvals"])
router.include_router(audit_router, tags=["audit"])
router.include_router(stock_router, tags=["stock"])
