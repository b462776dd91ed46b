"""Router modules for FastAPI web API."""

from web.routers import apps, artifacts, builds, config, health

__all__ = ["apps", "artifacts", "builds", "config", "health"]
