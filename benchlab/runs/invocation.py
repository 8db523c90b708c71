"""Translate a run request into the benchmark script's invocation contract.

Scripts read their iteration counts from ``WARMUP`` / ``REPEAT`` and may
write extra artifacts (CPU profiles) into ``ARTIFACT_DIR``. Diagnostic and
profiling switches are interpreter flags taken from settings; ``{artifact_dir}``
in a profile flag is replaced with the run's artifact directory.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from benchlab.config import Settings
from benchlab.runs.models import RunRequest


@dataclass(frozen=True)
class Invocation:
    command: str
    args: list[str]
    env: dict[str, str]
    cwd: Path


def build_invocation(
    request: RunRequest,
    script_path: Path,
    artifact_dir: Path,
    settings: Settings,
) -> Invocation:
    opts = request.options
    args: list[str] = []
    if opts.trace:
        args.extend(settings.trace_flags)
    if opts.profile:
        args.extend(flag.replace("{artifact_dir}", str(artifact_dir)) for flag in settings.profile_flags)
    args.append(str(script_path))

    env = dict(os.environ)
    env.update({
        "WARMUP": str(opts.warmupIterations),
        "REPEAT": str(opts.measuredIterations),
        "ARTIFACT_DIR": str(artifact_dir),
    })

    return Invocation(
        command=settings.script_interpreter,
        args=args,
        env=env,
        cwd=settings.experiments_dir,
    )
