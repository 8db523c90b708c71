"""Script catalog — which benchmark scripts exist and which variants they ship.

An experiment is a sub-directory of the experiments root that contains one
file per variant (``baseline.js``, ``deopt.js``, ``fixed.js`` by default).
Directories starting with ``_`` or ``.`` are ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

VARIANTS = ("baseline", "deopt", "fixed")

logger = logging.getLogger(__name__)


@dataclass
class ScriptEntry:
    """A runnable experiment and the variant files it provides."""

    id: str
    path: Path
    variants: dict[str, Path] = field(default_factory=dict)

    def script_for(self, variant: str) -> Path | None:
        return self.variants.get(variant)


class ScriptCatalog:
    """Scans the experiments directory and caches the result."""

    def __init__(self, root: Path | str, extension: str = ".js") -> None:
        self._root = Path(root)
        self._extension = extension
        self._entries: dict[str, ScriptEntry] = {}
        self._loaded = False

    @property
    def root(self) -> Path:
        return self._root

    def load(self, force: bool = False) -> list[ScriptEntry]:
        """Scan the experiments root and return all entries, sorted by id."""
        if self._loaded and not force:
            return list(self._entries.values())

        self._entries = {}
        if not self._root.is_dir():
            logger.warning("Experiments directory not found: %s", self._root)
            self._loaded = True
            return []

        for child in sorted(self._root.iterdir()):
            if not child.is_dir() or child.name.startswith(("_", ".")):
                continue
            variants = {
                v: child / f"{v}{self._extension}"
                for v in VARIANTS
                if (child / f"{v}{self._extension}").is_file()
            }
            if not variants:
                continue
            self._entries[child.name] = ScriptEntry(id=child.name, path=child, variants=variants)

        self._loaded = True
        logger.info("Script catalog loaded: %d experiments from %s", len(self._entries), self._root)
        return list(self._entries.values())

    def get(self, script_id: str) -> ScriptEntry | None:
        self.load()
        entry = self._entries.get(script_id)
        if entry is None:
            # Experiments added after startup are picked up on demand.
            candidate = self._root / script_id
            if candidate.is_dir():
                self.load(force=True)
                entry = self._entries.get(script_id)
        return entry

    def script_path(self, script_id: str, variant: str) -> Path:
        """Location of a variant file, whether or not it exists yet."""
        return self._root / script_id / f"{variant}{self._extension}"
