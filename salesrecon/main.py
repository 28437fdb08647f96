"""
main.py — FastAPI boundary for the reconciliation engine

Mounts the reconciliation router, installs logging, rate limiting and the
error handlers that translate the domain taxonomy into HTTP responses.

Business Rules:
- ValidationError → 400, NotFoundError → 404, ConflictError → 409,
  TransactionError / IntegrityError → 500
- Request body validation failures are reported as 400 invalid_input
- Every response carries X-Request-ID

Called by: uvicorn (salesrecon.main:app)
Depends on: routers/reconciliation.py, exceptions.py, schemas/errors.py
"""

import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from . import __version__
from .exceptions import ReconciliationError
from .logging_config import setup_logging
from .rate_limit import limiter
from .routers.reconciliation import router as reconciliation_router
from .schemas.errors import ErrorResponse

setup_logging()

app = FastAPI(title="Sales Reconciliation Engine", version=__version__)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = uuid.uuid4().hex[:8]
    request.state.request_id = request_id
    with logger.contextualize(request_id=request_id):
        response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "")


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    if exc.status_code >= 500:
        logger.error("{} on {}: {}", exc.code, request.url.path, exc.message)
    else:
        logger.info("{} on {}: {}", exc.code, request.url.path, exc.message)
    body = ErrorResponse(
        error=exc.message,
        status_code=exc.status_code,
        code=exc.code,
        request_id=_request_id(request),
        detail=exc.detail or None,
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
    body = ErrorResponse(
        error="Invalid request",
        status_code=400,
        code="invalid_input",
        request_id=_request_id(request),
        detail=errors,
    )
    return JSONResponse(status_code=400, content=body.model_dump())


@app.get("/health")
async def health():
    return {"status": "ok", "version": __version__}


app.include_router(reconciliation_router)
