"""HTTP layer: FastAPI app factory and dependencies."""

from codexmcp.api.app import create_app

__all__ = ["create_app"]
