"""Pydantic models for app snapshots and build requests.

An app snapshot is the read-only view of an app, its pages and their
components that a build consumes. Snapshots come from an AppRepository;
build requests come from API callers.
"""

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from appbuilder.types import BuildMode, BuildType, TargetPlatform

PACKAGE_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*(\.[a-zA-Z][a-zA-Z0-9_]*)+$")


class AppConfig(BaseModel):
    """App-level data relevant to building.

    Attributes:
        id: App identifier.
        name: Display name.
        package_name: Android application ID / iOS bundle ID.
        version_name: User-facing version string.
        version_code: Monotonic build number.
        capabilities: Capability flags (camera, location, ...).
        min_sdk_version: Android minimum SDK.
        target_sdk_version: Android target SDK.
        updated_at: Last modification timestamp (ISO 8601).
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    package_name: str | None = None
    version_name: str = "1.0.0"
    version_code: int = 1
    capabilities: dict[str, bool] = Field(default_factory=dict)
    min_sdk_version: int = 21
    target_sdk_version: int = 34
    updated_at: str | None = None

    @field_validator("package_name")
    @classmethod
    def validate_package_name(cls, v: str | None) -> str | None:
        """Validate package name is a dotted identifier."""
        if v is None:
            return v
        if not PACKAGE_NAME_PATTERN.match(v):
            raise ValueError(f"package_name must be a dotted identifier, got '{v}'")
        return v


class AppPage(BaseModel):
    """A routed page of an app."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    route_path: str = "/"
    page_config: dict[str, Any] = Field(default_factory=dict)
    updated_at: str | None = None


class PageComponent(BaseModel):
    """A component placed on a page."""

    model_config = ConfigDict(extra="ignore")

    id: str
    page_id: str | None = None
    component_type: str
    component_data: dict[str, Any] = Field(default_factory=dict)
    properties: dict[str, Any] = Field(default_factory=dict)
    updated_at: str | None = None


class AppSnapshot(BaseModel):
    """Everything a build needs to know about one app."""

    model_config = ConfigDict(extra="forbid")

    app: AppConfig
    pages: list[AppPage] = Field(default_factory=list)
    components: list[PageComponent] = Field(default_factory=list)


class BuildRequest(BaseModel):
    """A validated request to build an app.

    Attributes:
        app_id: App to build.
        build_type: Artifact kind (apk, aab, ipa, source_code).
        build_mode: debug or release.
        target_platform: Optional Android ABI target.
        build_config: Signing material and environment overrides.
    """

    model_config = ConfigDict(
        extra="forbid", use_enum_values=True, validate_default=True
    )

    app_id: str = Field(min_length=1)
    build_type: BuildType
    build_mode: BuildMode = BuildMode.RELEASE
    target_platform: TargetPlatform | None = None
    build_config: dict[str, Any] = Field(default_factory=dict)

    def is_ios(self) -> bool:
        """Check if this request targets the native iOS toolchain."""
        return self.build_type == BuildType.IPA.value

    def build_params(self) -> dict[str, Any]:
        """Return the build parameters that participate in the build hash."""
        return {
            "build_type": self.build_type,
            "build_mode": self.build_mode,
            "target_platform": self.target_platform,
            "build_config": self.build_config,
        }


__all__ = [
    "AppConfig",
    "AppPage",
    "AppSnapshot",
    "BuildRequest",
    "PageComponent",
]
