"""Shared test fixtures."""

from __future__ import annotations

import sys
import textwrap
from pathlib import Path

import pytest

from benchlab.api.app import build_coordinator
from benchlab.config import Settings
from benchlab.runs.coordinator import RunCoordinator

# Experiment scripts, keyed by "<experiment>/<variant>". They run under the
# current Python interpreter and follow the same WARMUP / REPEAT /
# ARTIFACT_DIR contract as real benchmark scripts.
SCRIPTS: dict[str, str] = {
    "hello/baseline": """
        import os
        print(f"warmup={os.environ['WARMUP']} repeat={os.environ['REPEAT']}", flush=True)
        print("done", flush=True)
    """,
    "hello/deopt": """
        import sys
        print("partial result", flush=True)
        print("boom", file=sys.stderr, flush=True)
        sys.exit(3)
    """,
    "hello/fixed": """
        import os
        from pathlib import Path
        Path(os.environ["ARTIFACT_DIR"], "run.cpuprofile").write_text("{}")
        print("profiled", flush=True)
    """,
    "ticker/baseline": """
        import sys, time
        for i in range(5):
            print(f"tick {i}", flush=True)
            print(f"err {i}", file=sys.stderr, flush=True)
            time.sleep(0.05)
    """,
    "forever/baseline": """
        import time
        print("started", flush=True)
        while True:
            time.sleep(0.05)
    """,
    "stubborn/baseline": """
        import signal, time
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        print("ignoring SIGTERM", flush=True)
        while True:
            time.sleep(0.05)
    """,
}


def write_experiments(root: Path) -> Path:
    for key, source in SCRIPTS.items():
        experiment, variant = key.split("/")
        path = root / experiment / f"{variant}.py"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(source).lstrip(), encoding="utf-8")
    return root


@pytest.fixture
def experiments_dir(tmp_path: Path) -> Path:
    return write_experiments(tmp_path / "experiments")


@pytest.fixture
def settings(tmp_path: Path, experiments_dir: Path) -> Settings:
    """Settings pointing at temp dirs and running scripts with this interpreter."""
    return Settings(
        artifacts_dir=tmp_path / "artifacts",
        experiments_dir=experiments_dir,
        script_interpreter=sys.executable,
        script_extension=".py",
        trace_flags=["-X", "dev"],
        profile_flags=[],
        max_run_timeout_ms=10_000,
        kill_grace_ms=500,
        sse_keepalive_seconds=0.2,
        log_level="DEBUG",
    )


@pytest.fixture
def coordinator(settings: Settings) -> RunCoordinator:
    return build_coordinator(settings)
