"""Error types raised at the run orchestration boundary."""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError


class InvalidRequest(Exception):
    """Raised when a submission is malformed, out of bounds, or names an unknown script.

    ``errors`` lists every offending field as ``{"field": ..., "message": ...}``.
    """

    def __init__(self, errors: list[dict[str, str]]) -> None:
        self.errors = errors
        fields = ", ".join(e["field"] for e in errors) or "request"
        super().__init__(f"Invalid run request: {fields}")

    @classmethod
    def from_validation_error(cls, exc: ValidationError) -> "InvalidRequest":
        errors: list[dict[str, str]] = []
        for err in exc.errors():
            loc: tuple[Any, ...] = err.get("loc", ())
            field = ".".join(str(part) for part in loc) or "request"
            errors.append({"field": field, "message": err.get("msg", "invalid value")})
        return cls(errors)


class RunNotFoundError(KeyError):
    """Raised when a run id is unknown."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(run_id)

    def __str__(self) -> str:
        return f"Run not found: {self.run_id}"


class RunStoreError(Exception):
    """Raised on persistence misuse (malformed id, rewriting a terminal record)."""
