"""HTTP service (FastAPI)."""

from lodestone.api.app import create_app

__all__ = ["create_app"]
