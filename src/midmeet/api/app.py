# src/midmeet/api/app.py
"""
FastAPI application wiring.

This file creates the `FastAPI` instance, installs CORS and the domain error handler,
and mounts the routes. Session logic lives in `midmeet.engine.service`.
"""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from midmeet.core.logging import configure_logging
from midmeet.domain.errors import DomainError, ErrorCode

from .routes import router

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[ErrorCode, int] = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.LOCKED: 409,
    ErrorCode.FULL: 409,
    ErrorCode.CONFLICT: 409,
    ErrorCode.INVALID_ARGUMENT: 400,
    ErrorCode.PERMISSION_DENIED: 403,
    ErrorCode.UPSTREAM_UNAVAILABLE: 503,
}

configure_logging()

app = FastAPI(title="MidMeet API", version="0.1.0")

# CORS (dev-friendly): allow a local frontend to call this API.
# Configure via env:
# - MIDMEET_CORS_ORIGINS="http://localhost:5173,http://127.0.0.1:5173"
# - MIDMEET_CORS_ALLOW_LOCAL=0 to disable the default localhost allowance
cors_origins = [s.strip() for s in os.getenv("MIDMEET_CORS_ORIGINS", "").split(",") if s.strip()]
cors_allow_local = os.getenv("MIDMEET_CORS_ALLOW_LOCAL", "1").strip().lower() in {"1", "true", "yes", "y"}
cors_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$" if cors_allow_local and not cors_origins else ""
if cors_origins or cors_origin_regex:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_origin_regex=cors_origin_regex or None,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    status = ERROR_STATUS.get(exc.code, 400)
    if status >= 500:
        logger.warning("%s %s failed upstream: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status,
        content={"detail": {"code": exc.code.value, "message": exc.message}},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": {"code": "INTERNAL_ERROR", "message": "Something went wrong. Please try again."}},
    )


app.include_router(router)
