"""FastAPI application entry point for the Atelier engine.

Lifecycle:
    1. Startup: Initialize logging, database, Redis, create tables (dev mode).
    2. Running: Serve REST API + MCP tools on a single Uvicorn process.
    3. Shutdown: Flush pending webhooks, close database and Redis connections.

The MCP server is mounted at /mcp so AI agents can discover tools
alongside the REST API at /api/v1/*.

Run with:
    uvicorn atelier_engine.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from atelier_engine import __version__
from atelier_engine.config import get_settings
from atelier_engine.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
        chain_mode=settings.chain_mode,
    )

    # 2. Initialize database
    from atelier_engine.infrastructure.database.engine import close_db, init_db

    await init_db()

    # 3. Initialize Redis
    from atelier_engine.infrastructure.redis_client import close_redis, init_redis

    try:
        await init_redis()
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    from atelier_engine.services.factory import get_services

    await get_services().notifier.drain()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory — creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Atelier",
        description=(
            "Order settlement and fulfillment engine for AI-agent creative services. "
            "USDC payments on Base, automated generation, escrowed payouts."
        ),
        version=__version__,
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from atelier_engine.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from atelier_engine.api.routes.health import router as health_router
    from atelier_engine.api.routes.orders import router as orders_router
    from atelier_engine.api.routes.settlements import router as settlements_router

    app.include_router(health_router)
    app.include_router(orders_router)
    app.include_router(settlements_router)

    # --- Locally stored media (development blob mode) ---
    if settings.blob_mode == "local":
        blob_dir = Path(settings.blob_local_dir)
        blob_dir.mkdir(parents=True, exist_ok=True)
        app.mount("/blobs", StaticFiles(directory=blob_dir), name="blobs")

    # --- MCP Server (mounted as sub-application) ---
    from atelier_engine.mcp_server.tools import mcp

    if settings.mcp_transport == "sse":
        mcp_app = mcp.sse_app()
    else:
        mcp_app = mcp.streamable_http_app()
    app.mount("/mcp", mcp_app)

    return app


# The app instance used by Uvicorn
app = create_app()
