"""Pydantic models for run requests, run records and live events."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt

# Exit code recorded when no real exit status exists (spawn failure, interruption)
RESERVED_EXIT_CODE = -1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    return uuid.uuid4().hex


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


# ── Requests ─────────────────────────────────────────────────────────────────


class RunOptions(BaseModel):
    """Recognized options; anything else is rejected.

    Types are strict: ``"10"``, ``true`` or ``10.0`` is not an iteration
    count and ``"yes"`` or ``1`` is not a flag.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    trace: StrictBool = False
    profile: StrictBool = False
    warmupIterations: StrictInt = Field(default=1000, ge=0, le=100_000)
    measuredIterations: StrictInt = Field(default=100_000, ge=1, le=1_000_000)


class RunRequest(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    script: str = Field(min_length=1, max_length=100, pattern=r"^[\w-]+$")
    variant: Literal["baseline", "deopt", "fixed"]
    options: RunOptions = Field(default_factory=RunOptions)


# ── Run record ───────────────────────────────────────────────────────────────


class RunTimestamps(BaseModel):
    queued: datetime
    started: datetime | None = None
    completed: datetime | None = None


class RunResult(BaseModel):
    exitCode: int
    durationMs: int
    timedOut: bool = False
    error: str | None = None


class RunArtifacts(BaseModel):
    stdoutPath: str | None = None
    stderrPath: str | None = None
    profilePath: str | None = None


class Run(BaseModel):
    """A single benchmark run: the unit of work and of persistence."""

    id: str = Field(default_factory=new_run_id)
    request: RunRequest
    status: RunStatus = RunStatus.QUEUED
    timestamps: RunTimestamps = Field(default_factory=lambda: RunTimestamps(queued=utcnow()))
    environment: dict[str, Any] = Field(default_factory=dict)
    result: RunResult | None = None
    artifacts: RunArtifacts = Field(default_factory=RunArtifacts)

    @property
    def is_terminal(self) -> bool:
        return self.status.terminal


# ── Live events ──────────────────────────────────────────────────────────────


class RunEvent(BaseModel):
    """Tagged event delivered to live subscribers of a run."""

    kind: Literal["stdout", "stderr", "complete"]
    text: str | None = None
    run: Run | None = None

    @classmethod
    def output(cls, stream: str, text: str) -> "RunEvent":
        return cls(kind=stream, text=text)  # type: ignore[arg-type]

    @classmethod
    def complete(cls, run: Run) -> "RunEvent":
        return cls(kind="complete", run=run.model_copy(deep=True))

    @property
    def is_complete(self) -> bool:
        return self.kind == "complete"

    def to_payload(self) -> dict[str, Any]:
        """JSON-ready dict with only the fields relevant to this kind."""
        if self.is_complete:
            return {"kind": self.kind, "run": self.run.model_dump(mode="json") if self.run else None}
        return {"kind": self.kind, "text": self.text}
