"""Service configuration — loaded from environment / .env file."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings for the run orchestration service."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    # Bind address
    host: str = "127.0.0.1"
    port: int = 4000

    # Storage
    artifacts_dir: Path = Path("artifacts")
    experiments_dir: Path = Path("experiments")

    # Execution
    max_run_timeout_ms: int = 600_000  # 10 min wall-clock ceiling per run
    kill_grace_ms: int = 5_000  # SIGTERM → SIGKILL grace period

    # Invocation contract
    script_interpreter: str = "node"
    script_extension: str = ".js"
    trace_flags: list[str] = ["--trace-opt", "--trace-deopt"]
    profile_flags: list[str] = ["--cpu-prof", "--cpu-prof-dir={artifact_dir}"]
    profile_glob: str = "*.cpuprofile"

    # Live streaming
    subscriber_queue_size: int = 1000
    sse_keepalive_seconds: float = 15.0

    # Logging
    log_level: str = "INFO"


settings = Settings()
