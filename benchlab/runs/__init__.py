from benchlab.runs.broadcaster import EventBroadcaster, Subscription
from benchlab.runs.coordinator import RunCoordinator
from benchlab.runs.errors import InvalidRequest, RunNotFoundError, RunStoreError
from benchlab.runs.executor import ExecutionHandle, OutputChunk, ProcessExecutor, ProcessExit
from benchlab.runs.models import (
    Run,
    RunArtifacts,
    RunEvent,
    RunOptions,
    RunRequest,
    RunResult,
    RunStatus,
)
from benchlab.runs.store import RunStore

__all__ = [
    "EventBroadcaster",
    "ExecutionHandle",
    "InvalidRequest",
    "OutputChunk",
    "ProcessExecutor",
    "ProcessExit",
    "Run",
    "RunArtifacts",
    "RunCoordinator",
    "RunEvent",
    "RunNotFoundError",
    "RunOptions",
    "RunRequest",
    "RunResult",
    "RunStatus",
    "RunStore",
    "RunStoreError",
    "Subscription",
]
