from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from notifyhub.apps.api.deps import get_runtime
from notifyhub.services.runtime import Runtime

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(runtime: Runtime = Depends(get_runtime)) -> JSONResponse:
    # Degraded stays 200 so load balancers keep routing while delivery runs inline.
    payload: dict[str, Any] = await runtime.health()
    status_code = 503 if payload["status"] == "unhealthy" else 200
    return JSONResponse(content=payload, status_code=status_code)
