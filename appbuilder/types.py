"""Shared type definitions for appbuilder.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class BuildStatus(str, Enum):
    """Status of a build record."""

    QUEUED = "queued"
    BUILDING = "building"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class BuildType(str, Enum):
    """Kind of artifact a build produces."""

    APK = "apk"
    AAB = "aab"
    IPA = "ipa"
    SOURCE_CODE = "source_code"


class BuildMode(str, Enum):
    """Compilation mode of a build."""

    DEBUG = "debug"
    RELEASE = "release"


class TargetPlatform(str, Enum):
    """Android ABI targets accepted for Android builds."""

    ANDROID_ARM = "android-arm"
    ANDROID_ARM64 = "android-arm64"
    ANDROID_X64 = "android-x64"


# Legal status transitions; clone inserts directly into COMPLETED.
STATUS_TRANSITIONS: dict[BuildStatus, frozenset[BuildStatus]] = {
    BuildStatus.QUEUED: frozenset({BuildStatus.BUILDING, BuildStatus.FAILED}),
    BuildStatus.BUILDING: frozenset({BuildStatus.COMPLETED, BuildStatus.FAILED}),
    BuildStatus.COMPLETED: frozenset({BuildStatus.EXPIRED, BuildStatus.FAILED}),
    BuildStatus.FAILED: frozenset(),
    BuildStatus.EXPIRED: frozenset(),
}

# Statuses of builds that have not finished yet
ACTIVE_STATUSES = frozenset({BuildStatus.QUEUED, BuildStatus.BUILDING})


@dataclass
class BuildProgress:
    """Best-effort progress report for a running build.

    Progress is telemetry only and never drives status transitions.
    """

    build_id: str
    status: str
    progress: int
    message: str
    error: str | None = None


@dataclass
class BuildOutcome:
    """Result a platform build manager reports through its callback."""

    build_id: str
    success: bool
    output_file: Path | None = None
    error: str | None = None
    error_code: str | None = None


@dataclass
class BuildEvent:
    """Completion event handed to the notification collaborator."""

    build_id: str
    status: str
    download_url: str | None = None
    error: str | None = None


__all__ = [
    "ACTIVE_STATUSES",
    "STATUS_TRANSITIONS",
    "BuildEvent",
    "BuildMode",
    "BuildOutcome",
    "BuildProgress",
    "BuildStatus",
    "BuildType",
    "TargetPlatform",
]
