"""Error types for the build engine.

Every error carries a stable ``code`` that HTTP and CLI frontends
surface to clients alongside the human-readable message.
"""

# Stable error codes
VALIDATION_ERROR = "validation"
NOT_FOUND = "not_found"
ARTIFACT_MISSING = "artifact_missing"
SPAWN_ERROR = "spawn_error"
BUILD_FAILED = "build_failed"
BUILD_TIMEOUT = "build_timeout"
BUILD_CANCELLED = "build_cancelled"
INTERNAL_ERROR = "internal_error"


class BuildEngineError(Exception):
    """Base error for build engine operations."""

    def __init__(self, message: str, code: str = INTERNAL_ERROR) -> None:
        super().__init__(message)
        self.code = code


class ValidationError(BuildEngineError):
    """Raised when a build request is malformed or unsupported."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message, code=VALIDATION_ERROR)
        self.field = field


class NotFoundError(BuildEngineError):
    """Raised when an app or build does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind.capitalize()} not found: {identifier}", code=NOT_FOUND)
        self.kind = kind
        self.identifier = identifier


class ArtifactMissingError(BuildEngineError):
    """Raised when the stored file backing a build is gone."""

    def __init__(self, file_path: str) -> None:
        super().__init__(f"Artifact missing: {file_path}", code=ARTIFACT_MISSING)
        self.file_path = file_path


class ProcessSpawnError(BuildEngineError):
    """Raised when the build engine process cannot be started."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=SPAWN_ERROR)


class BuildFailureError(BuildEngineError):
    """Raised when a build process fails."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message, code=BUILD_FAILED)
        self.exit_code = exit_code


class BuildTimeoutError(BuildEngineError):
    """Raised when a build exceeds its wall-clock timeout."""

    def __init__(self, message: str, timeout: float | None = None) -> None:
        super().__init__(message, code=BUILD_TIMEOUT)
        self.timeout = timeout


class BuildCancelledError(BuildEngineError):
    """Raised when a build is cancelled."""

    def __init__(self, message: str, reason: str = "cancelled") -> None:
        super().__init__(message, code=BUILD_CANCELLED)
        self.reason = reason


__all__ = [
    "ARTIFACT_MISSING",
    "BUILD_CANCELLED",
    "BUILD_FAILED",
    "BUILD_TIMEOUT",
    "INTERNAL_ERROR",
    "NOT_FOUND",
    "SPAWN_ERROR",
    "VALIDATION_ERROR",
    "ArtifactMissingError",
    "BuildCancelledError",
    "BuildEngineError",
    "BuildFailureError",
    "BuildTimeoutError",
    "NotFoundError",
    "ProcessSpawnError",
    "ValidationError",
]
