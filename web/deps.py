"""Dependencies for FastAPI route handlers.

Provides a database session and the shared build orchestrator to route
handlers via FastAPI dependency injection.

Transaction boundaries for ``get_db`` are managed here:
- Session is created at request start
- On success (no exception): session is committed automatically
- On exception: session is rolled back automatically
- Session is closed after request completes
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

from fastapi import Depends, HTTPException, Request
from fastapi import status as http_status
from sqlalchemy.orm import Session, sessionmaker

from appbuilder.builds.service import BuildOrchestrator
from appbuilder.errors import BuildEngineError, NotFoundError, ValidationError


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Get session factory from app state.

    Args:
        request: FastAPI request object.

    Returns:
        SQLAlchemy session factory.
    """
    factory: Any = request.app.state.session_factory
    return factory  # type: ignore[no-any-return]


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Provide a database session for a request.

    Yields:
        Database session.
    """
    session = session_factory()
    try:
        yield session
        # Commit on success - only reached if no exception was raised
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_orchestrator(request: Request) -> BuildOrchestrator:
    """Get the shared build orchestrator from app state."""
    orchestrator: Any = request.app.state.orchestrator
    return orchestrator  # type: ignore[no-any-return]


def http_error(error: BuildEngineError) -> HTTPException:
    """Map a build engine error to an HTTP error with a code/message body.

    Args:
        error: Error raised by a core service.

    Returns:
        HTTPException to raise from the route handler.
    """
    if isinstance(error, ValidationError):
        status_code = http_status.HTTP_400_BAD_REQUEST
    elif isinstance(error, NotFoundError):
        status_code = http_status.HTTP_404_NOT_FOUND
    else:
        status_code = http_status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(
        status_code=status_code,
        detail={"code": error.code, "message": str(error)},
    )
