"""Build management endpoints.

- GET /builds/{id} - Get build by ID
- GET /builds/{id}/progress - Get best-effort build progress
- GET /builds/{id}/download - Redirect to the signed download URL
- DELETE /builds/{id} - Cancel a build
- POST /builds/cleanup - Expire old builds
- GET /builds/queue/status - Caller's unfinished builds and queue counts
- GET /builds/storage/stats - Artifact storage usage
"""

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi import status as http_status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from appbuilder.builds.service import BuildOrchestrator, get_build_record
from appbuilder.errors import BuildEngineError
from web.deps import get_db, get_orchestrator, http_error

router = APIRouter()


@router.post("/cleanup")
def cleanup_builds_endpoint(
    app_id: str | None = Query(None, description="Only clean up this app"),
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Expire completed builds past the retention window and keep count.

    The response includes storage usage after the cleanup.
    """
    expired = orchestrator.cleanup_old_builds(app_id=app_id)
    stats = orchestrator.artifact_store.get_storage_stats()
    return {
        "expired": expired,
        "app_id": app_id,
        "storage_stats": {
            "total_files": stats.total_files,
            "total_size_bytes": stats.total_size,
            "apps": len(stats.apps),
        },
    }


@router.get("/queue/status")
def queue_status_endpoint(
    x_user_id: str = Header("anonymous", description="Requesting user"),
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Get the caller's unfinished builds and global queue counts."""
    return orchestrator.get_queue_status(x_user_id)


@router.get("/storage/stats")
def storage_stats_endpoint(
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Get artifact storage usage, in total and per app."""
    return orchestrator.artifact_store.get_storage_stats().to_dict()


@router.get("/{build_id}")
def get_build_endpoint(
    build_id: str,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a build record by ID.

    Raises:
        HTTPException: 404 if build not found.
    """
    try:
        return get_build_record(db, build_id).to_dict()
    except BuildEngineError as e:
        raise http_error(e) from None


@router.get("/{build_id}/progress")
def get_build_progress_endpoint(
    build_id: str,
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Get the latest progress of a build."""
    try:
        return asdict(orchestrator.get_build_progress(build_id))
    except BuildEngineError as e:
        raise http_error(e) from None


@router.get("/{build_id}/download")
def download_build_endpoint(
    build_id: str,
    db: Session = Depends(get_db),
) -> RedirectResponse:
    """Redirect to a completed build's signed download URL.

    Raises:
        HTTPException: 404 if build not found, 409 if it has no artifact.
    """
    try:
        record = get_build_record(db, build_id)
    except BuildEngineError as e:
        raise http_error(e) from None
    if not record.download_url:
        raise HTTPException(
            status_code=http_status.HTTP_409_CONFLICT,
            detail={
                "code": "not_available",
                "message": f"Build {build_id} has no downloadable artifact "
                f"(status: {record.status})",
            },
        )
    return RedirectResponse(record.download_url, status_code=http_status.HTTP_302_FOUND)


@router.delete("/{build_id}")
def cancel_build_endpoint(
    build_id: str,
    reason: str = Query("cancelled by user", description="Cancellation reason"),
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Cancel a queued or running build.

    Cancelling a finished build is a no-op that returns its record.
    """
    try:
        return orchestrator.cancel_build(build_id, reason).to_dict()
    except BuildEngineError as e:
        raise http_error(e) from None
