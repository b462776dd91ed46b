"""Build directory and output file helpers.

This module handles:
- Writing generated project files into a build's staging directory
- Locating a build's output file by build_id and expected extension
- Computing checksums
- Removing transient build output

Each build_id exclusively owns one staging directory and one output
directory; nothing here is shared between concurrent builds.
"""

from __future__ import annotations

import hashlib
import logging
import re
import shutil
from pathlib import Path

from appbuilder.types import BuildType

logger = logging.getLogger(__name__)

# Expected output extensions per build type, in order of preference
OUTPUT_EXTENSIONS: dict[str, tuple[str, ...]] = {
    BuildType.APK.value: (".apk",),
    BuildType.AAB.value: (".aab",),
    BuildType.SOURCE_CODE.value: (".zip",),
    BuildType.IPA.value: (".ipa", ".app.zip", ".zip"),
}

# Tool caches inside a staging tree that are safe to drop after a build
TRANSIENT_BUILD_DIRS = ("build", ".dart_tool")

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


def expected_extensions(build_type: str) -> tuple[str, ...]:
    """Return the output file extensions accepted for a build type.

    Args:
        build_type: Build type value.

    Returns:
        Tuple of extensions, most specific first.
    """
    return OUTPUT_EXTENSIONS.get(build_type, (".apk",))


def sanitize_app_name(app_name: str) -> str:
    """Sanitize an app name for file system and container use.

    Args:
        app_name: Display name.

    Returns:
        Lowercase dash-separated name, or ``app`` if nothing remains.
    """
    name = re.sub(r"[^a-z0-9]", "-", app_name.lower())
    name = re.sub(r"-+", "-", name).strip("-")
    return name or "app"


def safe_relative_path(relative_path: str) -> Path:
    """Validate a generated file path stays inside its root.

    Args:
        relative_path: Path relative to the project root.

    Returns:
        The path as a Path.

    Raises:
        ValueError: If the path is absolute or escapes the root.
    """
    path = Path(relative_path)
    if path.is_absolute() or ".." in path.parts:
        raise ValueError(f"Generated path escapes project root: {relative_path}")
    return path


def write_project_files(staging_dir: Path, files: dict[str, str]) -> int:
    """Write a generated file map into a staging directory.

    Args:
        staging_dir: Directory owned by the build.
        files: Mapping of relative path to file contents.

    Returns:
        Number of files written.
    """
    staging_dir.mkdir(parents=True, exist_ok=True)
    for relative_path, content in files.items():
        target = staging_dir / safe_relative_path(relative_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    logger.info("Wrote %d project files to %s", len(files), staging_dir)
    return len(files)


def find_build_output(output_dir: Path, build_id: str, build_type: str) -> Path | None:
    """Find the output file of a build.

    A file qualifies when its name contains the build_id and ends with
    one of the build type's expected extensions.

    Args:
        output_dir: Build output directory.
        build_id: Build identifier.
        build_type: Build type value.

    Returns:
        Path of the output file, or None if not found.
    """
    if not output_dir.is_dir():
        logger.warning("Build output directory does not exist: %s", output_dir)
        return None

    candidates = sorted(p for p in output_dir.iterdir() if p.is_file())
    for extension in expected_extensions(build_type):
        for path in candidates:
            if build_id in path.name and path.name.endswith(extension):
                return path
    return None


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def remove_tree(path: Path) -> bool:
    """Remove a directory tree, logging instead of raising.

    Args:
        path: Directory to remove.

    Returns:
        True if nothing remains at ``path``.
    """
    if not path.exists():
        return True
    try:
        shutil.rmtree(path)
    except OSError as e:
        logger.warning("Failed to remove %s: %s", path, e)
        return False
    return True


def cleanup_transient_output(staging_dir: Path, output_dir: Path) -> None:
    """Remove build output while keeping the generated source tree.

    The staging tree is kept to speed up a future build with the same
    hash; compiler caches inside it and the output directory are removed.

    Args:
        staging_dir: Build staging directory.
        output_dir: Build output directory.
    """
    for name in TRANSIENT_BUILD_DIRS:
        remove_tree(staging_dir / name)
    remove_tree(output_dir)
    logger.debug("Cleaned transient build output for %s", staging_dir.name)


__all__ = [
    "HASH_CHUNK_SIZE",
    "OUTPUT_EXTENSIONS",
    "TRANSIENT_BUILD_DIRS",
    "cleanup_transient_output",
    "compute_file_hash",
    "expected_extensions",
    "find_build_output",
    "remove_tree",
    "safe_relative_path",
    "sanitize_app_name",
    "write_project_files",
]
