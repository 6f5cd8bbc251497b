"""FastAPI application entry point for the sandbox runtime backend.

This module initializes the FastAPI application with all middleware,
routers, exception handlers and lifespan hooks configured.

Usage:
    uv run uvicorn main:app --reload
"""

import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.errors import register_exception_handlers
from api.routes import health_router, router, set_sandbox_service
from config import configure_logging, settings
from sandbox import (
    DockerEngine,
    FileSyncBridge,
    ImageBuilder,
    PortAllocator,
    SandboxRuntimeManager,
)
from sandbox_service import SandboxService

# Configure structured logging
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events.

    Wires the engine, port allocator, image builder, runtime manager and
    file sync bridge into one SandboxService, and runs the stale-sandbox
    reaper in the background. Sandboxes themselves outlive the process.

    Args:
        app: The FastAPI application instance.

    Yields:
        None during application runtime.
    """
    # Startup
    logger.info(
        "application_starting",
        backend_port=settings.backend_port,
        log_level=settings.log_level,
        project_label=settings.project_label,
        base_port=settings.sandbox_base_port,
    )

    engine = DockerEngine()
    allocator = PortAllocator(engine)
    runtime = SandboxRuntimeManager(engine, allocator)
    sandbox_service = SandboxService(
        runtime,
        ImageBuilder(engine),
        FileSyncBridge(engine),
    )

    if not await engine.ping():
        # Keep the API available; requests fail until the daemon comes up.
        logger.warning("docker_unavailable_at_startup")

    # Register sandbox service with routes
    set_sandbox_service(sandbox_service)

    # Store on app.state for access
    app.state.sandbox_service = sandbox_service

    reaper_task = await sandbox_service.start_reaper_loop(
        interval_seconds=settings.sandbox_reap_interval_seconds
    )
    app.state.reaper_task = reaper_task

    logger.info("application_started")

    yield

    # Shutdown
    logger.info("application_shutting_down")

    reaper_task = app.state.reaper_task
    if reaper_task and not reaper_task.done():
        reaper_task.cancel()
        with contextlib.suppress(Exception):
            await reaper_task

    logger.info("application_shutdown_complete")


# Create FastAPI application
app = FastAPI(
    title="December Sandbox Runtime",
    description="Backend API that builds, runs and manages containerized "
    "Next.js development sandboxes.",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Configure CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["*"],
)

register_exception_handlers(app)

# Include HTTP routes
app.include_router(router)
app.include_router(health_router, tags=["health"])


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint that points to API documentation.

    Returns:
        A welcome message with documentation URL.
    """
    return {
        "message": "December Sandbox Runtime API",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.backend_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
