"""Artifact storage.

This module defines the ArtifactStore contract used to persist build
artifacts and issue download URLs, and a filesystem implementation.

The local store keeps artifacts under
``<root>/builds/<app-name>/<build_id>/<build_id><ext>`` and issues
HMAC-signed, expiring URLs of the form
``<base_url>/artifacts/<file_path>?expires=<ts>&signature=<hex>``. It can also
report how many artifacts it holds and their size per app.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Protocol
from urllib.parse import quote, urlencode

from appbuilder.builds.artifacts import (
    compute_file_hash,
    expected_extensions,
    sanitize_app_name,
)
from appbuilder.errors import ArtifactMissingError

logger = logging.getLogger(__name__)

DEFAULT_URL_EXPIRY = 7 * 24 * 3600  # 7 days


@dataclass
class UploadResult:
    """Result of storing an artifact.

    Attributes:
        success: Whether the artifact was stored.
        file_path: Store-relative path of the artifact.
        file_size: Size in bytes.
        sha256: SHA-256 of the stored bytes.
        error: Error message if storing failed.
    """

    success: bool
    file_path: str | None = None
    file_size: int | None = None
    sha256: str | None = None
    error: str | None = None


@dataclass
class AppStorageUsage:
    """Stored artifacts of one app."""

    app: str
    files: int = 0
    size: int = 0


@dataclass
class StorageStats:
    """Totals over every stored artifact, with a per-app breakdown."""

    total_files: int = 0
    total_size: int = 0
    apps: list[AppStorageUsage] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly summary with sizes in bytes and MB."""
        return {
            "total_files": self.total_files,
            "total_size_bytes": self.total_size,
            "total_size_mb": round(self.total_size / 1024 / 1024, 2),
            "apps": [
                {
                    "name": usage.app,
                    "files": usage.files,
                    "size_bytes": usage.size,
                    "size_mb": round(usage.size / 1024 / 1024, 2),
                }
                for usage in self.apps
            ],
        }


class ArtifactStore(Protocol):
    """Durable artifact persistence and URL issuance."""

    def upload_artifact(
        self, build_id: str, local_path: Path, build_type: str, app_name: str
    ) -> UploadResult: ...

    def get_download_url(
        self, file_path: str, expires_in: int = DEFAULT_URL_EXPIRY
    ) -> str: ...

    def exists(self, file_path: str) -> bool: ...

    def copy_artifact(
        self, file_path: str, new_build_id: str, build_type: str, app_name: str
    ) -> UploadResult: ...

    def delete_artifact(self, file_path: str) -> bool: ...

    def get_storage_stats(self) -> StorageStats: ...


def artifact_suffix(filename: str, build_type: str) -> str:
    """Return the extension to keep when renaming an artifact.

    Args:
        filename: Original file name.
        build_type: Build type value.

    Returns:
        The matching expected extension, or the file's own suffix.
    """
    for extension in expected_extensions(build_type):
        if filename.endswith(extension):
            return extension
    return Path(filename).suffix


class LocalArtifactStore:
    """ArtifactStore backed by a local directory."""

    def __init__(
        self,
        root: Path,
        signing_key: str,
        base_url: str = "",
    ) -> None:
        self.root = root
        self.signing_key = signing_key.encode("utf-8")
        self.base_url = base_url.rstrip("/")

    def resolve(self, file_path: str) -> Path:
        """Map a store path to a filesystem path inside the store root.

        Raises:
            ValueError: If the path escapes the store root.
        """
        relative = PurePosixPath(file_path)
        if relative.is_absolute() or ".." in relative.parts:
            raise ValueError(f"Invalid artifact path: {file_path}")
        return self.root / Path(*relative.parts)

    def _storage_path(self, build_id: str, filename: str, app_name: str) -> str:
        return f"builds/{sanitize_app_name(app_name)}/{build_id}/{filename}"

    def _store(self, source: Path, file_path: str) -> UploadResult:
        target = self.resolve(file_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        size = target.stat().st_size
        return UploadResult(
            success=True,
            file_path=file_path,
            file_size=size,
            sha256=compute_file_hash(target),
        )

    def upload_artifact(
        self, build_id: str, local_path: Path, build_type: str, app_name: str
    ) -> UploadResult:
        """Store a build's output file.

        Args:
            build_id: Build identifier; names the stored file.
            local_path: Output file produced by the build.
            build_type: Build type value.
            app_name: App display name (used in the storage path).

        Returns:
            UploadResult describing the stored artifact.
        """
        filename = f"{build_id}{artifact_suffix(local_path.name, build_type)}"
        file_path = self._storage_path(build_id, filename, app_name)
        try:
            result = self._store(local_path, file_path)
        except OSError as e:
            logger.error("Failed to store artifact for %s: %s", build_id, e)
            return UploadResult(success=False, error=str(e))
        logger.info(
            "Stored artifact for %s at %s (%d bytes)",
            build_id,
            file_path,
            result.file_size,
        )
        return result

    def copy_artifact(
        self, file_path: str, new_build_id: str, build_type: str, app_name: str
    ) -> UploadResult:
        """Copy a stored artifact to a new path keyed by ``new_build_id``.

        Raises:
            ArtifactMissingError: If the source artifact does not exist.
        """
        source = self.resolve(file_path)
        if not source.is_file():
            raise ArtifactMissingError(file_path)
        filename = f"{new_build_id}{artifact_suffix(source.name, build_type)}"
        new_path = self._storage_path(new_build_id, filename, app_name)
        try:
            result = self._store(source, new_path)
        except OSError as e:
            logger.error("Failed to copy artifact %s: %s", file_path, e)
            return UploadResult(success=False, error=str(e))
        logger.info("Copied artifact %s to %s", file_path, new_path)
        return result

    def exists(self, file_path: str) -> bool:
        """Check whether a stored artifact exists."""
        try:
            return self.resolve(file_path).is_file()
        except ValueError:
            return False

    def delete_artifact(self, file_path: str) -> bool:
        """Delete a stored artifact and its now-empty build directory.

        Returns:
            True if the artifact is gone afterwards.
        """
        try:
            path = self.resolve(file_path)
            path.unlink(missing_ok=True)
        except ValueError as e:
            logger.error("Refusing to delete artifact %s: %s", file_path, e)
            return False
        except OSError as e:
            logger.warning("Failed to delete artifact %s: %s", file_path, e)
            return False
        try:
            path.parent.rmdir()
        except OSError:
            pass  # directory not empty or already gone
        return True

    def get_storage_stats(self) -> StorageStats:
        """Count stored artifacts and their sizes, per app.

        Walks ``<root>/builds/<app-name>/<build_id>/``.
        """
        stats = StorageStats()
        builds_root = self.root / "builds"
        if not builds_root.is_dir():
            return stats
        for app_dir in sorted(p for p in builds_root.iterdir() if p.is_dir()):
            usage = AppStorageUsage(app=app_dir.name)
            for artifact in app_dir.glob("*/*"):
                if artifact.is_file():
                    usage.files += 1
                    usage.size += artifact.stat().st_size
            stats.apps.append(usage)
            stats.total_files += usage.files
            stats.total_size += usage.size
        return stats

    def _signature(self, file_path: str, expires: int) -> str:
        message = f"{file_path}:{expires}".encode()
        return hmac.new(self.signing_key, message, hashlib.sha256).hexdigest()

    def get_download_url(
        self, file_path: str, expires_in: int = DEFAULT_URL_EXPIRY
    ) -> str:
        """Issue a signed, expiring download URL for a stored artifact."""
        expires = int(time.time()) + expires_in
        query = urlencode(
            {"expires": expires, "signature": self._signature(file_path, expires)}
        )
        return f"{self.base_url}/artifacts/{quote(file_path)}?{query}"

    def verify_download(self, file_path: str, expires: int, signature: str) -> bool:
        """Check a download URL's signature and expiry."""
        if expires < int(time.time()):
            return False
        return hmac.compare_digest(self._signature(file_path, expires), signature)


__all__ = [
    "DEFAULT_URL_EXPIRY",
    "AppStorageUsage",
    "ArtifactStore",
    "LocalArtifactStore",
    "StorageStats",
    "UploadResult",
    "artifact_suffix",
]
