"""Signed artifact downloads.

- GET /artifacts/{file_path}?expires=..&signature=.. - Serve a stored artifact
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from fastapi.responses import FileResponse

from appbuilder.builds.service import BuildOrchestrator
from appbuilder.builds.storage import LocalArtifactStore
from web.deps import get_orchestrator

router = APIRouter()


@router.get("/{file_path:path}")
def download_artifact_endpoint(
    file_path: str,
    expires: int = Query(..., description="Expiry timestamp"),
    signature: str = Query(..., description="URL signature"),
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> FileResponse:
    """Serve an artifact from the local store after checking its signature.

    Raises:
        HTTPException: 403 for a bad or expired signature, 404 if missing.
    """
    store = orchestrator.artifact_store
    if not isinstance(store, LocalArtifactStore):
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={"code": "not_found", "message": "Artifacts are not served here"},
        )
    if not store.verify_download(file_path, expires, signature):
        raise HTTPException(
            status_code=http_status.HTTP_403_FORBIDDEN,
            detail={"code": "invalid_signature", "message": "Invalid or expired URL"},
        )
    if not store.exists(file_path):
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={"code": "artifact_missing", "message": f"Missing: {file_path}"},
        )
    path = store.resolve(file_path)
    return FileResponse(path, filename=path.name)
