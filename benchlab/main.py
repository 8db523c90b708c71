"""Entry point for the run orchestration service (`benchlab-server` console script)."""

from __future__ import annotations

import logging
import sys

import uvicorn
from rich.console import Console
from rich.panel import Panel

from benchlab.config import settings

console = Console()


def main() -> None:
    """Start the benchmark run service."""
    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    console.print(
        Panel.fit(
            f"[bold]benchlab run service[/bold]\n"
            f"Bind:        {settings.host}:{settings.port}\n"
            f"Experiments: {settings.experiments_dir}\n"
            f"Artifacts:   {settings.artifacts_dir}\n"
            f"Interpreter: {settings.script_interpreter}\n"
            f"Timeout:     {settings.max_run_timeout_ms / 1000:.0f}s per run\n"
            f"Platform:    {sys.platform}",
            title="benchlab-server",
            border_style="green",
        )
    )

    if not settings.experiments_dir.is_dir():
        console.print(
            f"[yellow]WARNING: experiments directory {settings.experiments_dir} does not exist. "
            "Every submission will be rejected as an unknown script.[/yellow]\n"
        )

    uvicorn.run(
        "benchlab.api.app:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
