"""App definition loading.

This module provides the AppRepository contract the orchestrator reads
app snapshots through, and a file-backed implementation that loads app
definitions from YAML/JSON files named ``<app_id>.yaml`` (or ``.yml``,
``.json``) in a directory.
"""

import json
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import ValidationError as PydanticValidationError

from appbuilder.apps.schema import AppSnapshot
from appbuilder.errors import NotFoundError, ValidationError

APP_FILE_SUFFIXES = (".yaml", ".yml", ".json")


class AppRepository(Protocol):
    """Source of app snapshots."""

    def get_app_snapshot(self, app_id: str) -> AppSnapshot:
        """Return the current snapshot of an app.

        Raises:
            NotFoundError: If the app does not exist.
        """
        ...


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the document is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_app_data(data: dict[str, Any]) -> AppSnapshot:
    """Validate raw app definition data.

    Components may be given at the top level or nested under their page
    as ``components``; nested components get their ``page_id`` filled in.

    Args:
        data: Dictionary containing app, pages and components.

    Returns:
        Validated AppSnapshot.

    Raises:
        ValidationError: If data does not match the schema.
    """
    data = dict(data)
    components = list(data.get("components") or [])
    pages = []
    for page in data.get("pages") or []:
        page = dict(page)
        for component in page.pop("components", None) or []:
            components.append({"page_id": page.get("id"), **component})
        pages.append(page)
    data["pages"] = pages
    data["components"] = components

    try:
        return AppSnapshot.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid app definition: {e}") from e


def load_app_snapshot(path: Path) -> AppSnapshot:
    """Load and validate an app definition file.

    File format is determined by extension.

    Raises:
        ValueError: If the file extension is not supported.
        ValidationError: If the content does not match the schema.
    """
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        return parse_app_data(load_yaml(path))
    if suffix == ".json":
        return parse_app_data(load_json(path))
    raise ValueError(f"Unsupported file extension: {suffix}")


class FileAppRepository:
    """AppRepository reading ``<apps_dir>/<app_id>.<ext>`` definition files."""

    def __init__(self, apps_dir: Path) -> None:
        self.apps_dir = apps_dir

    def _find_app_file(self, app_id: str) -> Path | None:
        # Reject ids that would escape the apps directory
        if not app_id or "/" in app_id or "\\" in app_id or app_id.startswith("."):
            return None
        for suffix in APP_FILE_SUFFIXES:
            path = self.apps_dir / f"{app_id}{suffix}"
            if path.is_file():
                return path
        return None

    def get_app_snapshot(self, app_id: str) -> AppSnapshot:
        path = self._find_app_file(app_id)
        if path is None:
            raise NotFoundError("app", app_id)
        try:
            snapshot = load_app_snapshot(path)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ValidationError(f"Cannot read app file {path.name}: {e}") from e
        if snapshot.app.id != app_id:
            raise ValidationError(
                f"App file {path.name} declares id '{snapshot.app.id}'", field="app.id"
            )
        return snapshot


__all__ = [
    "APP_FILE_SUFFIXES",
    "AppRepository",
    "FileAppRepository",
    "load_app_snapshot",
    "load_json",
    "load_yaml",
    "parse_app_data",
]
