from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bastion.api.error_handling import register_exception_handlers
from bastion.api.routes import router
from bastion.config import Settings
from bastion.logging import get_logger, set_correlation_id
from bastion.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def create_app(settings: Optional[Settings] = None, *, runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the HTTP application.

    Settings are validated here, before anything listens; the store is opened
    by the lifespan so a broken backend stops startup instead of failing
    requests one by one. Run with ``uvicorn --factory bastion.app:create_app``.
    """
    if runtime is None:
        runtime = Runtime(settings or Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.init()
        logger.info("application_started", version=__version__)
        try:
            yield
        finally:
            await runtime.shutdown()

    app = FastAPI(title="Bastion", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    if runtime.settings.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=runtime.settings.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
            expose_headers=["X-Request-ID", "X-Refresh-Token"],
            max_age=3600,
        )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag every log line of a request with its X-Request-ID."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)
    return app
