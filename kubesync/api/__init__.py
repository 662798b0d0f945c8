"""REST API: operator controls, status and metrics."""

from kubesync.api.app import build_app, create_app

__all__ = ["build_app", "create_app"]
