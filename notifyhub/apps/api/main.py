from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from notifyhub.apps.api.errors import (
    notifyhub_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from notifyhub.apps.api.routes.health import router as health_router
from notifyhub.apps.api.routes.notifications import router as notifications_router
from notifyhub.apps.api.routes.ops import router as ops_router
from notifyhub.core.errors import NotifyHubError
from notifyhub.core.logging import configure_logging
from notifyhub.services.runtime import Runtime


logger = logging.getLogger(__name__)


def create_app(runtime: Runtime | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Build handles lazily so importing the module never opens connections.
        active = runtime or Runtime()
        app.state.runtime = active
        await active.start()
        try:
            yield
        finally:
            await active.stop()

    app = FastAPI(title="notifyhub API", lifespan=lifespan)
    if runtime is not None:
        # Tests drive the runtime directly without running the lifespan.
        app.state.runtime = runtime

    @app.middleware("http")
    async def log_requests(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        logger.info(
            "http_request method=%s path=%s status=%s elapsed_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(NotifyHubError, notifyhub_exception_handler)
    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(notifications_router)
    # Operator-only queue introspection and dead-letter replay.
    app.include_router(ops_router)

    return app


app = create_app()
