"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chatdesk.api import admin, chat
from chatdesk.core.config import load_config
from chatdesk.logging import configure_logging, get_request_id
from chatdesk.middleware.request_context import RequestContextMiddleware
from chatdesk.storage import call_logs
from chatdesk.storage.catalog import sync_catalog
from chatdesk.storage.database import init_db
from chatdesk.telemetry.events import record_event

configure_logging()

logger = logging.getLogger("chatdesk.app")


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    sync_catalog(load_config())
    logger.info("Application started", extra={"event": "startup"})
    yield


app = FastAPI(
    title="chatdesk",
    version="0.1.0",
    docs_url="/api/docs",
    redoc_url=None,
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)
app.include_router(chat.router)
app.include_router(admin.router)
app.add_middleware(RequestContextMiddleware)


@app.exception_handler(Exception)
async def unexpected_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled error",
        extra={
            "event": "request_error",
            "path": request.url.path,
            "request_id": get_request_id(),
        },
    )
    call_logs.record_error_log(
        call_logs.GENERAL_ERROR,
        str(exc) or type(exc).__name__,
        source=request.url.path,
        details=repr(exc),
    )
    record_event(
        "request_error",
        "ERROR",
        message=str(exc),
        meta={
            "path": request.url.path,
        },
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "message": "Internal server error",
                "code": "internal_error",
            }
        },
    )
