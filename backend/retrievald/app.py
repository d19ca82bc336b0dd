"""FastAPI application setup for the retrieval daemon."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from retrievald.api.dependencies import get_app_settings, get_service
from retrievald.api.routes import router
from retrievald.core.logging import configure_logging
from retrievald.service import DAEMON_VERSION


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the service singleton with the server and stop it on shutdown."""
    service = get_service()
    service.start()
    try:
        yield
    finally:
        service.stop()


def create_app() -> FastAPI:
    settings = get_app_settings()
    configure_logging(
        settings.log_level,
        use_json=settings.log_json,
        log_file=settings.paths.logs_dir / "retrievald.log" if settings.log_to_file else None,
    )
    app = FastAPI(
        title="retrievald",
        version=DAEMON_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.include_router(router, prefix="", tags=["retrieval"])
    return app


__all__ = ["create_app", "lifespan"]
