"""Build ORM models.

This module defines the BuildRecord model that tracks one build from
request to completion, failure or expiry.
"""

import secrets
import time
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, update
from sqlalchemy.orm import Mapped, Session, mapped_column

from appbuilder.db import Base
from appbuilder.types import STATUS_TRANSITIONS, BuildStatus


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime (DB convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_build_id() -> str:
    """Generate an opaque, unguessable build identifier.

    Format is ``build_<epoch-ms>_<random token>``.
    """
    return f"build_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


class BuildRecord(Base):
    """ORM model for build records.

    A BuildRecord is mutated only by the orchestrator. Status moves
    queued -> building -> completed | failed, completed builds expire via
    garbage collection, and cache clones are inserted as completed.
    Concurrent status writes go through ``transition_build``.

    Attributes:
        id: Primary key.
        build_id: Opaque public identifier.
        app_id: App that was built.
        user_id: User who requested the build.
        build_type: Artifact kind (apk, aab, ipa, source_code).
        build_mode: debug or release.
        target_platform: Optional Android ABI target.
        status: Build status.
        build_hash: Content hash of all build inputs.
        build_config: Snapshot of the request's build_config.
        download_url: Signed URL of the artifact (completed builds only).
        artifact_path: Store path of the artifact backing the record.
        error_message: Human-readable failure reason.
        cached_from_build_id: build_id this record was cloned from.
        created_at: Timestamp when the record was created.
        started_at: Timestamp when the build process started.
        completed_at: Timestamp when the build completed or failed.
    """

    __tablename__ = "app_builds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    build_id: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, index=True, default=generate_build_id
    )

    app_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)

    build_type: Mapped[str] = mapped_column(String(20), nullable=False)
    build_mode: Mapped[str] = mapped_column(String(20), nullable=False)
    target_platform: Mapped[str | None] = mapped_column(String(32), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.QUEUED.value, index=True
    )
    build_hash: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    build_config: Mapped[dict[str, object] | None] = mapped_column(
        JSON, nullable=True, default=dict
    )

    download_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    artifact_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cached_from_build_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_app_builds_cache", "app_id", "build_hash", "status"),
    )

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(build_id='{self.build_id}', app_id='{self.app_id}', "
            f"status='{self.status}', build_hash='{self.build_hash[:16]}...')>"
        )

    def can_transition(self, new_status: BuildStatus) -> bool:
        """Check whether moving to ``new_status`` is a legal transition."""
        return new_status in STATUS_TRANSITIONS[BuildStatus(self.status)]

    def mark_expired(self) -> None:
        """Mark this build as expired and drop its download URL."""
        self.status = BuildStatus.EXPIRED.value
        self.download_url = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly projection of the record."""
        return {
            "build_id": self.build_id,
            "app_id": self.app_id,
            "user_id": self.user_id,
            "build_type": self.build_type,
            "build_mode": self.build_mode,
            "target_platform": self.target_platform,
            "status": self.status,
            "build_hash": self.build_hash,
            "download_url": self.download_url,
            "error_message": self.error_message,
            "cached_from_build_id": self.cached_from_build_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
        }


def transition_build(
    session: Session,
    build_id: str,
    new_status: BuildStatus,
    from_statuses: Iterable[BuildStatus],
    **values: Any,
) -> bool:
    """Move a build to ``new_status`` if it is still in one of ``from_statuses``.

    The status check and the write happen in a single UPDATE statement,
    so when two writers race only the first one wins. Sources that cannot
    legally reach ``new_status`` are ignored.

    Args:
        session: Database session; the caller owns the transaction.
        build_id: Build identifier.
        new_status: Target status.
        from_statuses: Statuses the build may currently be in.
        **values: Extra columns to set along with the status.

    Returns:
        True if the build was moved, False if its status had changed.
    """
    allowed = [
        status.value
        for status in from_statuses
        if new_status in STATUS_TRANSITIONS[status]
    ]
    if not allowed:
        return False
    if new_status is BuildStatus.FAILED:
        values["error_message"] = values.get("error_message") or "Build failed"
    stmt = (
        update(BuildRecord)
        .where(BuildRecord.build_id == build_id, BuildRecord.status.in_(allowed))
        .values(status=new_status.value, **values)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


__all__ = ["BuildRecord", "generate_build_id", "transition_build", "utcnow"]
