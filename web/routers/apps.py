"""Per-app build endpoints.

- POST /apps/{app_id}/builds - Start a build
- GET /apps/{app_id}/builds - List an app's builds
"""

from typing import Any

from fastapi import APIRouter, Depends, Header, Query
from fastapi import status as http_status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from appbuilder.builds.service import BuildOrchestrator, list_build_records
from appbuilder.errors import BuildEngineError
from web.deps import get_db, get_orchestrator, http_error

router = APIRouter()


class StartBuildRequest(BaseModel):
    """Request body for starting a build.

    Values are validated by the orchestrator so that unsupported build
    types and modes are reported as validation errors.
    """

    build_type: str
    build_mode: str = "release"
    target_platform: str | None = None
    build_config: dict[str, Any] = Field(default_factory=dict)


@router.post("/{app_id}/builds", status_code=http_status.HTTP_202_ACCEPTED)
def start_build_endpoint(
    app_id: str,
    body: StartBuildRequest,
    x_user_id: str = Header("anonymous", description="Requesting user"),
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Start a build for an app.

    A cache hit returns an already completed build with its download URL.

    Args:
        app_id: App to build.
        body: Build parameters.
        x_user_id: Requesting user (X-User-Id header).
        orchestrator: Build orchestrator.

    Returns:
        The new build's id, status and download URL.
    """
    request = {"app_id": app_id, **body.model_dump()}
    try:
        build_id = orchestrator.start_build(request, user_id=x_user_id)
        record = orchestrator.get_build_status(build_id)
    except BuildEngineError as e:
        raise http_error(e) from None

    return {
        "build_id": build_id,
        "status": record.status,
        "cached": record.cached_from_build_id is not None,
        "download_url": record.download_url,
    }


@router.get("/{app_id}/builds")
def list_app_builds_endpoint(
    app_id: str,
    limit: int = Query(20, ge=1, le=100, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List an app's builds, newest first."""
    return [b.to_dict() for b in list_build_records(db, app_id=app_id, limit=limit)]
