import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from po_engine.app.api.v1.router import router as v1_router
from po_engine.app.core.config import settings
from po_engine.services.errors import (
    AuditAppendFailure,
    ImmutableRecordError,
    InvalidOrder,
    OrderLocked,
    OrderNotFound,
    PersistenceFailure,
    PolicyViolation,
    ProcurementError,
    QuantityViolation,
    StockUnavailable,
    TransitionDenied,
)

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

STATUS_CODES = {
    PolicyViolation: 403,
    TransitionDenied: 409,
    QuantityViolation: 422,
    InvalidOrder: 422,
    OrderNotFound: 404,
    OrderLocked: 409,
    StockUnavailable: 409,
    ImmutableRecordError: 409,
    PersistenceFailure: 503,
    AuditAppendFailure: 503,
}


def status_code_for(exc: ProcurementError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 400


app = FastAPI(title="PO ENGINE", version="0.1.0")
app.include_router(v1_router, prefix="/v1")


@app.exception_handler(ProcurementError)
def procurement_error_handler(request: Request, exc: ProcurementError):
    status = status_code_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status, content={"detail": exc.to_dict()})
