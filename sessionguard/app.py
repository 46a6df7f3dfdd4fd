from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sessionguard.api.error_handling import register_exception_handlers
from sessionguard.api.routes import router
from sessionguard.config import Settings, get_settings
from sessionguard.logging import get_logger, set_correlation_id
from sessionguard.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_origins:
        return settings.cors_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


def create_app(runtime: Optional[Runtime] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Build the HTTP app.

    When ``runtime`` is omitted one is constructed during startup from
    ``settings`` (or the environment) and closed on shutdown. A supplied
    runtime is started and stopped but left open for the caller.
    """
    settings = settings or (runtime.settings if runtime else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = runtime is None
        app.state.runtime = runtime or Runtime(settings)
        await app.state.runtime.start()
        logger.info("app_started", owned_runtime=owned)
        try:
            yield
        finally:
            if owned:
                await app.state.runtime.close()
            else:
                await app.state.runtime.janitor.stop()
            logger.info("app_stopped")

    app = FastAPI(title="sessionguard", version=__version__, lifespan=lifespan)
    if runtime is not None:
        # Usable before lifespan runs, e.g. TestClient without a context manager
        app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag each request with X-Request-ID, taking the client's when sent."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)
    return app
