"""Content-addressed build cache.

This module handles:
- Build hash computation over app inputs and build parameters
- Lookup of a fresh, completed build with the same hash
- Self-healing invalidation when a cached artifact has gone missing
- Cloning a cached build into a new completed record

A cache hit never spawns a build process. Each hit copies the artifact
bytes to a new store path so every record owns its own file.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from appbuilder.builds.cache_key import compute_hash, create_build_inputs
from appbuilder.builds.models import BuildRecord, generate_build_id, utcnow
from appbuilder.builds.storage import DEFAULT_URL_EXPIRY
from appbuilder.errors import ArtifactMissingError, BuildEngineError
from appbuilder.types import BuildStatus

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from appbuilder.apps.schema import AppConfig, AppPage, BuildRequest, PageComponent
    from appbuilder.builds.storage import ArtifactStore

logger = logging.getLogger(__name__)

CACHED_FILE_MISSING = "Cached file missing"


class BuildCache:
    """Finds and reuses completed builds with identical inputs."""

    def __init__(
        self,
        artifact_store: ArtifactStore,
        freshness_days: int = 30,
        url_expiry: int = DEFAULT_URL_EXPIRY,
    ) -> None:
        self.artifact_store = artifact_store
        self.freshness_days = freshness_days
        self.url_expiry = url_expiry

    @staticmethod
    def compute_hash(
        app: AppConfig,
        pages: list[AppPage],
        components: list[PageComponent],
        build_params: dict[str, Any],
    ) -> str:
        """Compute the build hash of a set of inputs.

        Args:
            app: App configuration.
            pages: App pages.
            components: Page components.
            build_params: build_type, build_mode, target_platform, build_config.

        Returns:
            SHA-256 hex digest.
        """
        return compute_hash(create_build_inputs(app, pages, components, build_params))

    def lookup(
        self, session: Session, app_id: str, build_hash: str
    ) -> BuildRecord | None:
        """Find a reusable build.

        Only the most recent completed build with a download URL inside
        the freshness window is considered. If its artifact is gone the
        record is invalidated and the lookup is a miss.

        Args:
            session: Database session.
            app_id: App identifier.
            build_hash: Build hash to look up.

        Returns:
            The cached BuildRecord, or None on a miss.
        """
        cutoff = utcnow() - timedelta(days=self.freshness_days)
        stmt = (
            select(BuildRecord)
            .where(
                BuildRecord.app_id == app_id,
                BuildRecord.build_hash == build_hash,
                BuildRecord.status == BuildStatus.COMPLETED.value,
                BuildRecord.download_url.is_not(None),
                BuildRecord.created_at >= cutoff,
            )
            .order_by(BuildRecord.created_at.desc(), BuildRecord.id.desc())
            .limit(1)
        )
        record = session.execute(stmt).scalar_one_or_none()
        if record is None:
            logger.debug("Cache miss for %s hash %s", app_id, build_hash[:16])
            return None

        if not self.validate_artifact_presence(session, record):
            return None

        logger.info(
            "Cache hit for %s hash %s: %s",
            app_id,
            build_hash[:16],
            record.build_id,
        )
        return record

    def validate_artifact_presence(self, session: Session, record: BuildRecord) -> bool:
        """Check that a completed record's artifact still exists.

        A record whose artifact is missing is flipped to failed with its
        download URL cleared.

        Args:
            session: Database session.
            record: Completed build record.

        Returns:
            True if the artifact exists.
        """
        if record.artifact_path and self.artifact_store.exists(record.artifact_path):
            return True
        self.invalidate(session, record)
        return False

    def invalidate(self, session: Session, record: BuildRecord) -> None:
        """Mark a cached record unusable because its file is gone."""
        logger.warning(
            "Cached artifact for %s is missing (%s), invalidating",
            record.build_id,
            record.artifact_path,
        )
        record.download_url = None
        if record.can_transition(BuildStatus.FAILED):
            record.status = BuildStatus.FAILED.value
            record.error_message = CACHED_FILE_MISSING
        session.flush()

    def clone(
        self,
        session: Session,
        source: BuildRecord,
        request: BuildRequest,
        user_id: str,
        app_name: str,
    ) -> BuildRecord:
        """Create a new completed build from a cached one.

        Args:
            session: Database session.
            source: Cached completed record.
            request: The build request being served.
            user_id: User requesting the build.
            app_name: App display name (used in the storage path).

        Returns:
            The new completed BuildRecord.

        Raises:
            ArtifactMissingError: If the source artifact disappeared.
            BuildEngineError: If copying the artifact fails.
        """
        if not source.artifact_path:
            raise ArtifactMissingError(source.build_id)

        build_id = generate_build_id()
        result = self.artifact_store.copy_artifact(
            source.artifact_path, build_id, source.build_type, app_name
        )
        if not result.success or result.file_path is None:
            raise BuildEngineError(f"Failed to copy cached artifact: {result.error}")

        now = utcnow()
        record = BuildRecord(
            build_id=build_id,
            app_id=source.app_id,
            user_id=user_id,
            build_type=request.build_type,
            build_mode=request.build_mode,
            target_platform=request.target_platform,
            status=BuildStatus.COMPLETED.value,
            build_hash=source.build_hash,
            build_config=request.build_config,
            download_url=self.artifact_store.get_download_url(
                result.file_path, self.url_expiry
            ),
            artifact_path=result.file_path,
            cached_from_build_id=source.build_id,
            created_at=now,
            started_at=now,
            completed_at=now,
        )
        session.add(record)
        session.flush()
        logger.info("Cloned cached build %s into %s", source.build_id, build_id)
        return record


__all__ = ["CACHED_FILE_MISSING", "BuildCache"]
