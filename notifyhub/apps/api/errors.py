from __future__ import annotations

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from notifyhub.apps.api.response import error_response
from notifyhub.core.errors import (
    BrokerUnavailableError,
    DeliveryFailedError,
    InvalidRequestError,
    InvalidStatusTransitionError,
    NoDeliveryTargetError,
    NotFoundError,
    NotifyHubError,
    QueueManagerNotConnectedError,
    StoreUnavailableError,
    UnknownQueueError,
)


logger = logging.getLogger(__name__)


_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific classes first; the first isinstance match wins.
_ERROR_MAP: tuple[tuple[type[NotifyHubError], int, str], ...] = (
    (InvalidRequestError, 400, "BAD_REQUEST"),
    (NoDeliveryTargetError, 404, "NO_DELIVERY_TARGET"),
    (UnknownQueueError, 404, "UNKNOWN_QUEUE"),
    (NotFoundError, 404, "NOT_FOUND"),
    (InvalidStatusTransitionError, 409, "INVALID_STATUS_TRANSITION"),
    (DeliveryFailedError, 500, "DELIVERY_FAILED"),
    (BrokerUnavailableError, 503, "BROKER_UNAVAILABLE"),
    (QueueManagerNotConnectedError, 503, "BROKER_UNAVAILABLE"),
    (StoreUnavailableError, 503, "STORE_UNAVAILABLE"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def status_for(exc: NotifyHubError) -> tuple[int, str]:
    for error_type, status_code, code in _ERROR_MAP:
        if isinstance(exc, error_type):
            return status_code, code
    return 500, "INTERNAL_ERROR"


async def notifyhub_exception_handler(request: Request, exc: NotifyHubError) -> JSONResponse:
    status_code, code = status_for(exc)
    details = None
    if isinstance(exc, DeliveryFailedError):
        details = {"notificationId": exc.notification_id, "attempts": exc.attempts}
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    return JSONResponse(
        content=error_response(code=code, message=str(exc), details=details),
        status_code=status_code,
    )


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        content=error_response(code=_default_code(exc.status_code), message=message),
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed bodies are client errors like missing fields; report 400.
    return JSONResponse(
        content=error_response(
            code="VALIDATION_ERROR",
            message="Invalid request payload",
            details={"errors": [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]},
        ),
        status_code=400,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error body.
    logger.exception("unhandled_error path=%s", request.url.path)
    return JSONResponse(
        content=error_response(code="INTERNAL_ERROR", message="Internal server error"),
        status_code=500,
    )
