"""
Custom exception handlers for FastAPI.
Domain errors become structured JSON telling the client whether to retry
or act; validation and unexpected errors keep a clear, actionable shape.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exception_handlers import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.status import HTTP_422_UNPROCESSABLE_ENTITY, HTTP_500_INTERNAL_SERVER_ERROR

from receiptsync.core.errors import ReceiptSyncError
from receiptsync.core.observability import sentry_capture, sentry_metric_inc

logger = logging.getLogger(__name__)


def receiptsync_exception_handler(request: Request, exc: ReceiptSyncError):
    sentry_metric_inc("api.domain_error", tags={"code": exc.code})
    if exc.status_code >= 500:
        sentry_capture(exc, tags={"code": exc.code})
    logger.info("[api] %s %s -> %s %s", request.method, request.url.path, exc.status_code, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "code": "validation_error",
            "action": "action_required",
            "details": jsonable_encoder(exc.errors()),
        },
    )


def generic_exception_handler(request: Request, exc: Exception):
    sentry_capture(exc)
    logger.exception("[api] unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "details": str(exc),
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ReceiptSyncError, receiptsync_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
