"""Run coordinator — admission queue and the single execution worker.

Submissions are validated and persisted synchronously, then handed to one
background task that executes them strictly one at a time in FIFO order.
That task is the only writer of run status and the only place processes are
spawned, so "at most one run is running" holds without any locking.

Nothing that happens while executing a run (spawn failure, timeout,
non-zero exit, an unexpected exception) stops the worker: every outcome is
normalized into a terminal run record and the loop moves on.
"""

from __future__ import annotations

import asyncio
import logging
import platform
import sys
import time
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from benchlab.catalog import ScriptCatalog
from benchlab.config import Settings
from benchlab.runs.broadcaster import EventBroadcaster, Subscription
from benchlab.runs.errors import InvalidRequest, RunNotFoundError
from benchlab.runs.executor import OutputChunk, ProcessExecutor, ProcessExit
from benchlab.runs.invocation import build_invocation
from benchlab.runs.models import (
    RESERVED_EXIT_CODE,
    Run,
    RunArtifacts,
    RunEvent,
    RunRequest,
    RunResult,
    RunStatus,
    RunTimestamps,
    utcnow,
)
from benchlab.runs.store import RunStore

logger = logging.getLogger(__name__)

INTERRUPTED = "interrupted"


class RunCoordinator:
    """Owns the run queue and drives execution, persistence and live events."""

    def __init__(
        self,
        store: RunStore,
        executor: ProcessExecutor,
        broadcaster: EventBroadcaster,
        catalog: ScriptCatalog,
        settings: Settings,
    ) -> None:
        self.store = store
        self.executor = executor
        self.broadcaster = broadcaster
        self.catalog = catalog
        self.settings = settings
        self._queue: asyncio.Queue[Run] = asyncio.Queue()
        self._current: Run | None = None
        self._worker: asyncio.Task[None] | None = None
        self._last_queued: datetime | None = None
        self._interpreter_version: str | None = None
        self._enqueued: set[str] = set()
        self._reconciled = False

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Recover leftovers from a previous process, then start the worker."""
        if self.running:
            return
        self.reconcile()
        self._interpreter_version = await self.executor.probe_version(self.settings.script_interpreter)
        if self._interpreter_version is None:
            logger.warning("Could not determine %s version", self.settings.script_interpreter)
        self._worker = asyncio.create_task(self._worker_loop(), name="benchlab-run-worker")
        logger.info(
            "Run worker started (interpreter=%s %s, timeout=%dms)",
            self.settings.script_interpreter,
            self._interpreter_version or "?",
            self.settings.max_run_timeout_ms,
        )

    async def stop(self) -> None:
        """Stop the worker; an in-flight run is killed and marked failed."""
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Run worker stopped (%d runs left queued)", self._queue.qsize())

    def reconcile(self) -> int:
        """Resolve records left non-terminal by a previous process.

        Runs that were executing are failed (measurements are never retried);
        runs that never started are queued again in their original order.
        """
        if self._reconciled:
            return 0
        self._reconciled = True
        touched = 0
        for run in reversed(self.store.list()):
            if run.id in self._enqueued:
                continue
            if self._last_queued is None or run.timestamps.queued > self._last_queued:
                self._last_queued = run.timestamps.queued
            if run.status == RunStatus.RUNNING:
                started = run.timestamps.started or run.timestamps.queued
                duration_ms = int((utcnow() - started).total_seconds() * 1000)
                run.status = RunStatus.FAILED
                run.timestamps.completed = utcnow()
                run.result = RunResult(exitCode=RESERVED_EXIT_CODE, durationMs=max(duration_ms, 0), error=INTERRUPTED)
                self.store.save(run)
                logger.warning("Run %s was interrupted by a restart, marked failed", run.id)
                touched += 1
            elif run.status == RunStatus.QUEUED:
                self._enqueue(run)
                logger.info("Run %s re-queued after restart", run.id)
                touched += 1
        return touched

    # ── Entry points ──────────────────────────────────────────────────────

    def submit(self, request: RunRequest | Mapping[str, Any]) -> str:
        """Validate, persist and enqueue a run. Returns its id immediately."""
        request = self._validate(request)
        run = Run(request=request, timestamps=RunTimestamps(queued=self._admission_time()))
        self.store.save(run)
        self._enqueue(run)
        logger.info(
            "Run %s queued: %s/%s (position %d)",
            run.id, request.script, request.variant, self._queue.qsize(),
        )
        return run.id

    def get(self, run_id: str) -> Run:
        run = self.store.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def list(self) -> list[Run]:
        return self.store.list()

    def subscribe(self, run_id: str) -> Subscription:
        """Open a live event stream for a run.

        Terminal runs yield a single ``complete`` event; earlier output is
        only available from the persisted artifacts.
        """
        run = self.get(run_id)
        final = RunEvent.complete(run) if run.is_terminal else None
        return self.broadcaster.subscribe(run_id, final=final)

    def queue_status(self) -> dict[str, Any]:
        return {
            "queueLength": self._queue.qsize(),
            "currentRun": self._current.id if self._current else None,
            "processing": self._current is not None,
        }

    def _validate(self, request: RunRequest | Mapping[str, Any]) -> RunRequest:
        if not isinstance(request, RunRequest):
            try:
                request = RunRequest.model_validate(request)
            except ValidationError as e:
                raise InvalidRequest.from_validation_error(e) from e

        entry = self.catalog.get(request.script)
        if entry is None:
            raise InvalidRequest([{"field": "script", "message": f"Unknown script: {request.script}"}])
        if entry.script_for(request.variant) is None:
            raise InvalidRequest([{
                "field": "variant",
                "message": f"Script {request.script} has no {request.variant} variant",
            }])
        return request

    def _enqueue(self, run: Run) -> None:
        self._enqueued.add(run.id)
        self._queue.put_nowait(run)

    def _admission_time(self) -> datetime:
        """Current time, strictly after the previous admission."""
        now = utcnow()
        if self._last_queued is not None and now <= self._last_queued:
            now = self._last_queued + timedelta(microseconds=1)
        self._last_queued = now
        return now

    # ── Worker ────────────────────────────────────────────────────────────

    async def _worker_loop(self) -> None:
        while True:
            run = await self._queue.get()
            try:
                await self._execute(run)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Unhandled error executing run %s", run.id)
                try:
                    self._finish(run, RESERVED_EXIT_CODE, 0, [], [], error=f"{type(e).__name__}: {e}")
                except Exception:
                    logger.exception("Could not finalize run %s", run.id)
            finally:
                self._current = None
                self._enqueued.discard(run.id)
                self._queue.task_done()

    async def _execute(self, run: Run) -> None:
        self._current = run
        request = run.request

        run.status = RunStatus.RUNNING
        run.timestamps.started = utcnow()
        run.environment = self._environment()
        self.store.save(run)
        logger.info("Run %s started: %s/%s", run.id, request.script, request.variant)

        artifact_dir = self.store.artifact_dir(run.id)
        artifact_dir.mkdir(parents=True, exist_ok=True)
        invocation = build_invocation(
            request,
            self.catalog.script_path(request.script, request.variant),
            artifact_dir,
            self.settings,
        )

        stdout: list[str] = []
        stderr: list[str] = []
        outcome: ProcessExit | None = None
        t0 = time.perf_counter()
        try:
            handle = self.executor.run(
                invocation.command,
                invocation.args,
                env=invocation.env,
                timeout_ms=self.settings.max_run_timeout_ms,
                cwd=invocation.cwd,
            )
            async for event in handle:
                if isinstance(event, OutputChunk):
                    (stdout if event.stream == "stdout" else stderr).append(event.text)
                    self.broadcaster.publish(run.id, RunEvent.output(event.stream, event.text))
                else:
                    outcome = event
        except asyncio.CancelledError:
            duration_ms = int((time.perf_counter() - t0) * 1000)
            self._finish(run, RESERVED_EXIT_CODE, duration_ms, stdout, stderr, error=INTERRUPTED)
            raise
        duration_ms = int((time.perf_counter() - t0) * 1000)

        if outcome is None:
            self._finish(run, RESERVED_EXIT_CODE, duration_ms, stdout, stderr, error="no exit status reported")
            return

        error: str | None = None
        if outcome.spawn_failed:
            error = outcome.spawn_error
        elif outcome.timed_out:
            error = f"Timed out after {self.settings.max_run_timeout_ms}ms"
        self._finish(
            run, outcome.exit_code, duration_ms, stdout, stderr,
            timed_out=outcome.timed_out, error=error,
        )

    def _finish(
        self,
        run: Run,
        exit_code: int,
        duration_ms: int,
        stdout: list[str],
        stderr: list[str],
        *,
        timed_out: bool = False,
        error: str | None = None,
    ) -> None:
        """Write artifacts and the terminal record, then publish ``complete``."""
        if run.is_terminal:
            return

        ok = exit_code == 0 and not timed_out and error is None
        run.status = RunStatus.COMPLETED if ok else RunStatus.FAILED
        run.timestamps.completed = utcnow()
        run.result = RunResult(exitCode=exit_code, durationMs=duration_ms, timedOut=timed_out, error=error)
        run.artifacts = self._write_artifacts(run, stdout, stderr)

        try:
            self.store.save(run)
        except Exception:
            # The record on disk stays non-terminal; keep the real outcome in the log.
            logger.exception(
                "Failed to persist terminal record for run %s (status=%s exit=%d duration=%dms timedOut=%s error=%r)",
                run.id, run.status.value, exit_code, duration_ms, timed_out, error,
            )

        self.broadcaster.publish(run.id, RunEvent.complete(run))
        logger.info(
            "Run %s %s: exit=%d duration=%dms%s",
            run.id, run.status.value, exit_code, duration_ms, " (timed out)" if timed_out else "",
        )

    def _write_artifacts(self, run: Run, stdout: list[str], stderr: list[str]) -> RunArtifacts:
        artifacts = RunArtifacts()
        options = run.request.options
        try:
            artifact_dir = self.store.artifact_dir(run.id)
            artifact_dir.mkdir(parents=True, exist_ok=True)

            stdout_path = artifact_dir / "stdout.log"
            stdout_path.write_text("".join(stdout), encoding="utf-8")
            artifacts.stdoutPath = self.store.relative(stdout_path)

            if options.trace:
                stderr_path = artifact_dir / "stderr.log"
                stderr_path.write_text("".join(stderr), encoding="utf-8")
                artifacts.stderrPath = self.store.relative(stderr_path)

            if options.profile:
                profiles = sorted(artifact_dir.glob(self.settings.profile_glob))
                if profiles:
                    artifacts.profilePath = self.store.relative(profiles[0])
                else:
                    logger.warning("Run %s requested a profile but none was written", run.id)
        except OSError:
            logger.exception("Failed to write artifacts for run %s", run.id)
        return artifacts

    def _environment(self) -> dict[str, Any]:
        return {
            "pythonVersion": platform.python_version(),
            "platform": sys.platform,
            "arch": platform.machine(),
            "hostname": platform.node(),
            "interpreter": self.settings.script_interpreter,
            "interpreterVersion": self._interpreter_version,
        }
