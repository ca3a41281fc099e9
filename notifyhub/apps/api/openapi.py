from __future__ import annotations

from typing import Any

from notifyhub.apps.api.response import ErrorResponse


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {"success": False, "error": code, "message": message}


def _entry(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorResponse,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _entry("Bad request", "BAD_REQUEST", "title is required"),
    404: _entry("Not found", "NOT_FOUND", "notification not found"),
    409: _entry("Conflict", "INVALID_STATUS_TRANSITION", "cannot move notification from sent to failed"),
    500: _entry("Delivery failure", "DELIVERY_FAILED", "delivery failed after retries"),
    503: _entry("Dependency unavailable", "SERVICE_UNAVAILABLE", "broker is not connected"),
}
