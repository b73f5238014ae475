from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from newsletter_tracker.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from newsletter_tracker.apps.api.response import get_request_id
from newsletter_tracker.apps.api.routes.admin import router as admin_router
from newsletter_tracker.apps.api.routes.health import router as health_router
from newsletter_tracker.apps.api.routes.newsletter import router as newsletter_router
from newsletter_tracker.apps.api.routes.tracking import router as tracking_router
from newsletter_tracker.core.config import get_settings
from newsletter_tracker.core.errors import NewsletterError
from newsletter_tracker.core.logging import configure_logging
from newsletter_tracker.persistence.base import SubscriberStore
from newsletter_tracker.persistence.factory import get_store
from newsletter_tracker.services.directory import DirectoryClient, get_directory


logger = logging.getLogger(__name__)


def create_app(
    *,
    store: SubscriberStore | None = None,
    directory: DirectoryClient | None = None,
) -> FastAPI:
    configure_logging()
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Backend and directory are resolved once per process from settings.
        if app.state.store is None:
            app.state.store = get_store(settings)
        if app.state.directory is None:
            app.state.directory = get_directory(settings)
        await app.state.store.connect()
        logger.info("app_started storage_backend=%s", settings.storage_backend)
        try:
            yield
        finally:
            await app.state.directory.aclose()
            await app.state.store.close()

    app = FastAPI(title="Newsletter Tracker API", lifespan=lifespan)
    app.state.store = store
    app.state.directory = directory

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = get_request_id(request)
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed path=%s status=%s latency_ms=%.1f",
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(NewsletterError)
    async def _domain_exception_handler(request: Request, exc: NewsletterError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(newsletter_router)
    app.include_router(tracking_router)
    app.include_router(admin_router)
    app.include_router(health_router)
    return app


app = create_app()
