"""Build hash computation.

This module handles:
- Canonical input snapshot creation from app, pages, components and
  build parameters
- Deterministic hash computation over normalized inputs

Identical logical inputs always hash identically regardless of key order.
Per-entity ``updated_at`` values are part of the inputs, so any edit to
the app, a page or a component produces a new hash.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from appbuilder.apps.schema import AppConfig, AppPage, PageComponent

# Schema version for build hash format; bump when the hash format changes
BUILD_HASH_SCHEMA_VERSION = "1"


@dataclass
class BuildInputs:
    """Canonical representation of all build inputs.

    Attributes:
        schema_version: Version of the hash schema.
        app: Identity, version and capability fields of the app.
        pages: Routing/config fields of each page, ordered by id.
        components: Type/data/property fields of each component, ordered by id.
        build_params: build_type, build_mode, target_platform, build_config.
    """

    schema_version: str = BUILD_HASH_SCHEMA_VERSION
    app: dict[str, Any] = field(default_factory=dict)
    pages: list[dict[str, Any]] = field(default_factory=list)
    components: list[dict[str, Any]] = field(default_factory=list)
    build_params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def normalize_app(app: AppConfig) -> dict[str, Any]:
    """Extract the app fields that affect build output."""
    return {
        "id": app.id,
        "name": app.name,
        "package_name": app.package_name,
        "version_name": app.version_name,
        "version_code": app.version_code,
        "capabilities": app.capabilities,
        "updated_at": app.updated_at,
    }


def normalize_page(page: AppPage) -> dict[str, Any]:
    """Extract the page fields that affect build output."""
    return {
        "id": page.id,
        "name": page.name,
        "route_path": page.route_path,
        "page_config": page.page_config,
        "updated_at": page.updated_at,
    }


def normalize_component(component: PageComponent) -> dict[str, Any]:
    """Extract the component fields that affect build output."""
    return {
        "id": component.id,
        "component_type": component.component_type,
        "component_data": component.component_data,
        "properties": component.properties,
        "updated_at": component.updated_at,
    }


def create_build_inputs(
    app: AppConfig,
    pages: list[AppPage],
    components: list[PageComponent],
    build_params: dict[str, Any],
) -> BuildInputs:
    """Create canonical build inputs.

    Pages and components are ordered by id so that retrieval order does
    not affect the hash.

    Args:
        app: App configuration.
        pages: App pages.
        components: Page components.
        build_params: Build parameters from the request.

    Returns:
        BuildInputs instance with all normalized inputs.
    """
    return BuildInputs(
        schema_version=BUILD_HASH_SCHEMA_VERSION,
        app=normalize_app(app),
        pages=[normalize_page(p) for p in sorted(pages, key=lambda p: p.id)],
        components=[
            normalize_component(c) for c in sorted(components, key=lambda c: c.id)
        ],
        build_params=dict(build_params),
    )


def canonical_json(data: Any) -> str:
    """Serialize data to canonical JSON (sorted keys, compact separators)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def compute_hash(inputs: BuildInputs) -> str:
    """Compute the build hash from build inputs.

    Args:
        inputs: BuildInputs instance.

    Returns:
        SHA-256 hex digest of the canonical JSON of the inputs.
    """
    return hashlib.sha256(canonical_json(inputs.to_dict()).encode("utf-8")).hexdigest()


__all__ = [
    "BUILD_HASH_SCHEMA_VERSION",
    "BuildInputs",
    "canonical_json",
    "compute_hash",
    "create_build_inputs",
    "normalize_app",
    "normalize_component",
    "normalize_page",
]
