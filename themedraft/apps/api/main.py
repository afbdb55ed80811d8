from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from themedraft.apps.api.errors import (
    admission_denied_handler,
    http_exception_handler,
    invalid_submission_handler,
    job_dispatch_handler,
    job_not_found_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from themedraft.apps.api.response import API_VERSION
from themedraft.apps.api.routes.generations import router as generations_router
from themedraft.apps.api.routes.health import router as health_router
from themedraft.apps.api.routes.ops import router as ops_router
from themedraft.apps.api.routes.quota import router as quota_router
from themedraft.core.config import get_settings
from themedraft.core.errors import (
    AdmissionDeniedError,
    InvalidSubmissionError,
    JobDispatchError,
    JobNotFoundError,
)
from themedraft.core.logging import configure_logging
from themedraft.persistence.db import create_schema
from themedraft.persistence.resources import AppResources, open_resources
from themedraft.services.wiring import GenerationServices, build_services


logger = logging.getLogger(__name__)


def create_app(
    resources: AppResources | None = None,
    services: GenerationServices | None = None,
) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Injected resources belong to the caller; only close what we opened.
        owned = app.state.resources is None
        if owned:
            settings = get_settings()
            app.state.resources = await open_resources(settings)
            if settings.db_auto_create_schema:
                await create_schema(app.state.resources.engine)
        if app.state.services is None:
            app.state.services = build_services(app.state.resources)
        logger.info("api_resources_ready owned=%s", owned)
        try:
            yield
        finally:
            if owned:
                await app.state.resources.aclose()
                app.state.resources = None
                app.state.services = None

    app = FastAPI(title="ThemeDraft API", lifespan=lifespan)
    app.state.resources = resources
    app.state.services = services
    if resources is not None and services is None:
        app.state.services = build_services(resources)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(InvalidSubmissionError, invalid_submission_handler)
    app.add_exception_handler(AdmissionDeniedError, admission_denied_handler)
    app.add_exception_handler(JobNotFoundError, job_not_found_handler)
    app.add_exception_handler(JobDispatchError, job_dispatch_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(generations_router, prefix=f"/{API_VERSION}")
    app.include_router(quota_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router)
    app.include_router(health_router)
    return app
