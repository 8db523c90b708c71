"""Run storage — one JSON file per run under ``<artifacts_dir>/runs``.

Each run also owns an artifact directory (``runs/<id>/``) that receives the
captured stdout, the trace log and any CPU profiles. Paths recorded on the
run are relative to the artifacts root so the tree can be moved as a whole.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path

from pydantic import ValidationError

from benchlab.runs.errors import RunStoreError
from benchlab.runs.models import Run

logger = logging.getLogger(__name__)

_RUN_ID = re.compile(r"^[0-9a-f]{32}$")


class RunStore:
    """File-per-run storage with atomic replace semantics."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)
        self._runs_dir = self._root / "runs"
        self._runs_dir.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _record_path(self, run_id: str) -> Path:
        if not _RUN_ID.match(run_id):
            raise RunStoreError(f"Malformed run id: {run_id!r}")
        return self._runs_dir / f"{run_id}.json"

    # ── Records ───────────────────────────────────────────────────────────

    def save(self, run: Run) -> None:
        """Write the full snapshot for ``run.id``, replacing any prior one."""
        path = self._record_path(run.id)
        existing = self._read(path)
        if existing is not None and existing.is_terminal:
            raise RunStoreError(f"Run {run.id} is {existing.status.value}; record is immutable")

        payload = run.model_dump_json(indent=2)
        fd, tmp = tempfile.mkstemp(dir=self._runs_dir, prefix=f".{run.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def get(self, run_id: str) -> Run | None:
        """Return the run record, or None if unknown."""
        try:
            path = self._record_path(run_id)
        except RunStoreError:
            return None
        return self._read(path)

    def list(self) -> list[Run]:
        """All readable runs, newest submission first."""
        runs: list[Run] = []
        for path in self._runs_dir.glob("*.json"):
            run = self._read(path)
            if run is not None:
                runs.append(run)
        runs.sort(key=lambda r: r.timestamps.queued, reverse=True)
        return runs

    def _read(self, path: Path) -> Run | None:
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Error reading run file %s: %s", path.name, e)
            return None
        try:
            return Run.model_validate_json(content)
        except ValidationError as e:
            logger.warning("Skipping unparsable run file %s: %s", path.name, e.error_count())
            return None

    # ── Artifacts ─────────────────────────────────────────────────────────

    def artifact_dir(self, run_id: str) -> Path:
        """Directory that holds this run's artifacts (not created)."""
        return self._record_path(run_id).with_suffix("")

    def artifact_path(self, run_id: str, name: str) -> Path:
        return self.artifact_dir(run_id) / name

    def relative(self, path: Path) -> str:
        """Path relative to the artifacts root, as stored on the run record."""
        return path.relative_to(self._root).as_posix()

    def resolve(self, relative_path: str) -> Path | None:
        """Absolute path for a stored artifact path, or None if it escapes the root."""
        root = self._root.resolve()
        candidate = (root / relative_path).resolve()
        if root not in candidate.parents:
            return None
        return candidate
