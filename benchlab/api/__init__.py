from benchlab.api.app import build_coordinator, create_app

__all__ = ["build_coordinator", "create_app"]
