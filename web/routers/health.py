"""Service liveness endpoints.

- GET /health - Liveness with the number of running builds
- GET / - API name, version and resource prefixes
"""

from typing import Any

from fastapi import APIRouter, Depends

from appbuilder import __version__
from appbuilder.builds.service import BuildOrchestrator
from web.deps import get_orchestrator

router = APIRouter()

API_NAME = "App Build Engine API"


@router.get("/health")
def health(
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Report that the service is up and how many builds are running."""
    return {
        "status": "ok",
        "version": __version__,
        "active_builds": len(orchestrator.get_active_builds()),
    }


@router.get("/")
def root() -> dict[str, Any]:
    return {
        "name": API_NAME,
        "version": __version__,
        "resources": ["/apps", "/builds", "/artifacts", "/config"],
    }
