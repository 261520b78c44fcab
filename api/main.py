"""
Activation Pool API - Main Application.

FastAPI application with CORS enabled for the chat bot and dashboard.
The PoolRuntime (services + background loops) lives for the lifetime of the
application.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import __version__
from api.routers import panel, requests, stock, waitlist
from services.runtime import PoolRuntime
from settings import Settings

logger = logging.getLogger(__name__)


def create_app(runtime: Optional[PoolRuntime] = None, *, start_background: bool = True) -> FastAPI:
    """
    Build the application.

    Without a runtime, settings are read from the environment at startup and
    a runtime is built for the configured backend.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        pool = runtime
        if pool is None:
            settings = Settings.from_env()
            logging.basicConfig(
                level=settings.log_level,
                format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            )
            pool = await PoolRuntime.from_settings(settings)
        app.state.runtime = pool
        if start_background:
            await pool.start()
        try:
            yield
        finally:
            await pool.stop()
            app.state.runtime = None

    app = FastAPI(
        title="Activation Pool API",
        description="Shared activation stock, request lifecycle, restocks and waitlists",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # TODO: Restrict origins once the dashboard has a fixed domain
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["Health"])
    def health_check():
        """
        Health check endpoint.

        Returns the API status, version and whether the background loops run.
        """
        pool = getattr(app.state, "runtime", None)
        return {
            "status": "healthy",
            "version": __version__,
            "service": "activation-pool-api",
            "scheduler_running": bool(pool is not None and pool.running),
        }

    @app.get("/", tags=["Root"])
    def root():
        return {
            "message": "Activation Pool API",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    app.include_router(requests.router, prefix="/api/v1", tags=["Requests"])
    app.include_router(stock.router, prefix="/api/v1", tags=["Stock"])
    app.include_router(waitlist.router, prefix="/api/v1", tags=["Waitlist"])
    app.include_router(panel.router, prefix="/api/v1", tags=["Panel"])
    return app


app = create_app()
