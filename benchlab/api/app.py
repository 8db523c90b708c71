"""FastAPI application — wires the run orchestration core into app state."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from benchlab import __version__
from benchlab.api.routes import router
from benchlab.catalog import ScriptCatalog
from benchlab.config import Settings, settings as default_settings
from benchlab.runs.broadcaster import EventBroadcaster
from benchlab.runs.coordinator import RunCoordinator
from benchlab.runs.errors import InvalidRequest
from benchlab.runs.executor import ProcessExecutor
from benchlab.runs.store import RunStore

logger = logging.getLogger(__name__)


# ── Error handlers ───────────────────────────────────────────────────────────


async def invalid_request_handler(_req: Request, exc: InvalidRequest) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body", "details": exc.errors},
    )


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    # Malformed bodies (e.g. not JSON) use the same envelope as InvalidRequest.
    return await invalid_request_handler(_req, InvalidRequest.from_validation_error(exc))  # type: ignore[arg-type]


# ── Wiring ───────────────────────────────────────────────────────────────────


def build_coordinator(settings: Settings) -> RunCoordinator:
    """Assemble the orchestration core from settings."""
    return RunCoordinator(
        store=RunStore(settings.artifacts_dir),
        executor=ProcessExecutor(kill_grace_ms=settings.kill_grace_ms),
        broadcaster=EventBroadcaster(queue_size=settings.subscriber_queue_size),
        catalog=ScriptCatalog(settings.experiments_dir, extension=settings.script_extension),
        settings=settings,
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create the FastAPI application."""
    cfg = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Start the run worker on startup, stop it on shutdown."""
        coordinator = build_coordinator(cfg)
        coordinator.catalog.load()
        app.state.coordinator = coordinator
        await coordinator.start()
        try:
            yield
        finally:
            await coordinator.stop()

    app = FastAPI(
        title="benchlab — Benchmark Run Orchestrator",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_exception_handler(InvalidRequest, invalid_request_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    return app
