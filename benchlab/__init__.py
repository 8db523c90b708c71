"""benchlab — run orchestration for benchmark experiment scripts."""

__version__ = "0.1.0"
