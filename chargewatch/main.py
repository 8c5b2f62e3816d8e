"""
FastAPI application entry point for the ChargeWatch API.

Registers the routers, the startup lifespan and the exception handlers
that turn every failure into the ``{"ok": false, "error": {...}}``
envelope.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-101)
- 2026-10-03: Register ingest router, error envelope handlers (STORY-102)
- 2026-10-04: Register subscriptions and stations routers (STORY-103)
- 2026-10-06: Register polling router (STORY-104)
- 2026-10-07: Register dispatch router (STORY-105)
- 2026-10-08: Register watch router (STORY-106)

TODO:
- None
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from chargewatch.api.deps import init_bearer_auth
from chargewatch.api.dispatch import router as dispatch_router
from chargewatch.api.health import router as health_router
from chargewatch.api.ingest import router as ingest_router
from chargewatch.api.polling import router as polling_router
from chargewatch.api.stations import router as stations_router
from chargewatch.api.subscriptions import router as subscriptions_router
from chargewatch.api.watch import router as watch_router
from chargewatch.config import get_settings
from chargewatch.db.session import dispose_engine
from chargewatch.errors import ErrorCode, ServiceError, error_body
from chargewatch.logging_config import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: configure logging and validate auth config."""
    setup_logging(get_settings().LOG_LEVEL)
    init_bearer_auth()
    logger.info("SERVICE_TOKENS validated at startup")
    yield
    await dispose_engine()


app = FastAPI(
    title="ChargeWatch API",
    description="Charging-station availability watches with Web Push notifications.",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(ingest_router)
app.include_router(stations_router)
app.include_router(subscriptions_router)
app.include_router(watch_router)
app.include_router(polling_router)
app.include_router(dispatch_router)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    """Map a ServiceError onto its code and status."""
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.code, exc.message))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(
    request: Request, exc: RequestValidationError,
) -> JSONResponse:
    """Malformed request bodies are VALIDATION_ERROR (400)."""
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}"
        for err in errors
    ) or "Invalid request"
    return JSONResponse(status_code=400, content=error_body(ErrorCode.VALIDATION_ERROR, message))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Wrap framework HTTP errors (401, 404 routes, 405) in the envelope."""
    if exc.status_code == 401:
        code = ErrorCode.UNAUTHORIZED
    elif exc.status_code == 404:
        code = ErrorCode.NOT_FOUND
    elif exc.status_code < 500:
        code = ErrorCode.VALIDATION_ERROR
    else:
        code = ErrorCode.INTERNAL_ERROR
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Backing store failures are RPC_ERROR (500)."""
    logger.error(
        "Store error on %s %s", request.method, request.url.path,
        exc_info=exc,
        extra={"operation": request.url.path},
    )
    return JSONResponse(
        status_code=500, content=error_body(ErrorCode.RPC_ERROR, "Backing store error"),
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything else is INTERNAL_ERROR (500) and logged with its path."""
    logger.error(
        "Unhandled error on %s %s", request.method, request.url.path,
        exc_info=exc,
        extra={"operation": request.url.path},
    )
    return JSONResponse(
        status_code=500, content=error_body(ErrorCode.INTERNAL_ERROR, "Internal error"),
    )


@app.get("/")
async def liveness() -> dict:
    """Liveness endpoint.

    Returns:
        dict: JSON object with application status.
    """
    return {"status": "ok"}
