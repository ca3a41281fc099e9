from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: str
    details: dict[str, Any] | None = None


def error_response(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Keep the failure shape identical across handlers so clients branch on `error` only.
    payload: dict[str, Any] = {"success": False, "error": code, "message": message}
    if details:
        payload["details"] = details
    return payload
