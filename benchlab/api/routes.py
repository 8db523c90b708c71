"""HTTP endpoints — health, run submission, queries, live stream, artifacts."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any, Literal

from fastapi import APIRouter, Body, HTTPException, Request
from fastapi.responses import FileResponse, PlainTextResponse, StreamingResponse

from benchlab import __version__
from benchlab.runs.coordinator import RunCoordinator
from benchlab.runs.errors import RunNotFoundError
from benchlab.runs.models import Run

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Helpers ──────────────────────────────────────────────────────────────────


def _get_coordinator(request: Request) -> RunCoordinator:
    """Get the RunCoordinator from app state."""
    return request.app.state.coordinator  # type: ignore[no-any-return]


def _get_run(coordinator: RunCoordinator, run_id: str) -> Run:
    try:
        return coordinator.get(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Service health endpoint."""
    return {
        "ok": True,
        "name": "benchlab",
        "version": __version__,
        "platform": sys.platform,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/api/runs", status_code=201)
async def create_run(request: Request, payload: Any = Body(...)) -> dict[str, str]:
    """Queue a benchmark run. Validation errors surface as 400 via InvalidRequest."""
    coordinator = _get_coordinator(request)
    run_id = coordinator.submit(payload)
    return {"id": run_id, "status": "queued"}


@router.get("/api/runs", response_model=list[Run])
async def list_runs(request: Request) -> list[Run]:
    """All runs, newest submission first."""
    return _get_coordinator(request).list()


@router.get("/api/runs/queue")
async def queue_status(request: Request) -> dict[str, Any]:
    """Queue length and the run currently executing."""
    return _get_coordinator(request).queue_status()


@router.get("/api/runs/{run_id}", response_model=Run)
async def get_run(run_id: str, request: Request) -> Run:
    return _get_run(_get_coordinator(request), run_id)


@router.get("/api/runs/{run_id}/artifacts/{kind}")
async def get_artifact(
    run_id: str, kind: Literal["stdout", "stderr", "profile"], request: Request,
) -> Any:
    """Serve a persisted artifact. Historical output lives here, not on the stream."""
    coordinator = _get_coordinator(request)
    run = _get_run(coordinator, run_id)

    relative = {
        "stdout": run.artifacts.stdoutPath,
        "stderr": run.artifacts.stderrPath,
        "profile": run.artifacts.profilePath,
    }[kind]
    if not relative:
        raise HTTPException(status_code=404, detail=f"Run {run_id} has no {kind} artifact")

    path = coordinator.store.resolve(relative)
    if path is None or not path.is_file():
        raise HTTPException(status_code=404, detail=f"Artifact missing on disk: {relative}")

    if kind == "profile":
        return FileResponse(path, media_type="application/json", filename=path.name)
    return PlainTextResponse(path.read_text(encoding="utf-8", errors="replace"))


# ── SSE stream ───────────────────────────────────────────────────────────────


@router.get("/api/runs/{run_id}/stream")
async def stream_run(run_id: str, request: Request) -> StreamingResponse:
    """Server-Sent Events: stdout/stderr chunks, then one ``complete`` event."""
    coordinator = _get_coordinator(request)
    try:
        subscription = coordinator.subscribe(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")

    keepalive = coordinator.settings.sse_keepalive_seconds

    async def event_generator() -> AsyncIterator[str]:
        try:
            while True:
                # Check if client disconnected
                if await request.is_disconnected():
                    logger.debug("Stream client for run %s disconnected", run_id)
                    break

                try:
                    event = await subscription.get(timeout=keepalive)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue

                yield f"data: {json.dumps(event.to_payload())}\n\n"
                if event.is_complete:
                    break
        finally:
            subscription.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
