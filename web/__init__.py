"""FastAPI web application for the App Build Engine.

This module provides the HTTP API that mirrors the build services.

All business logic is delegated to core modules in appbuilder/.
"""

from web.app import app, create_app

__all__ = ["app", "create_app"]
