"""FastAPI application for static-engine."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from static_engine import __version__
from static_engine.api.routers import generation
from static_engine.api.schemas import HealthResponse
from static_engine.container import ServiceContainer, build_container
from static_engine.services.asset_store import LocalAssetStore
from static_engine.utils.config import load_config

logger = logging.getLogger(__name__)


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the API around a service container.

    The container is started and stopped with the application lifespan.
    With ``run_workers=False`` the process only accepts requests and a
    separate ``static-engine worker`` process drains the queue.

    Args:
        container: Pre-built container; built from the environment if omitted

    Returns:
        Configured FastAPI application
    """
    if container is None:
        container = build_container(load_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await container.start()
        try:
            yield
        finally:
            await container.stop()

    app = FastAPI(title="static-engine API", version=__version__, lifespan=lifespan)
    app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=container.config.get("cors_origins", []),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if isinstance(container.asset_store, LocalAssetStore):
        uploads_dir = Path(container.asset_store.root_dir)
        uploads_dir.mkdir(parents=True, exist_ok=True)
        app.mount("/uploads", StaticFiles(directory=str(uploads_dir)), name="uploads")

    app.include_router(generation.router)
    app.include_router(generation.ws_router)

    @app.get("/api/health", response_model=HealthResponse)
    async def health(request: Request) -> dict:
        counts = await request.app.state.container.queue.counts()
        return {"status": "healthy", "version": __version__, "queue": counts}

    return app
