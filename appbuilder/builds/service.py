"""Build orchestration service.

This module provides the high-level build API:
- start_build(): validate, hash, serve from cache or queue a new build
- execute_build(): worker body that generates, builds and uploads
- Status, listing, progress, queue summaries and cancellation
- Retention-based garbage collection of old artifacts
- Failing builds orphaned by a previous process on startup

The orchestrator is the only writer of build records. Status changes are
guarded updates, so the first of two racing writers wins. Platform managers
report through callbacks; each worker blocks on its build's completion
future, so at most ``max_concurrent_builds`` builds execute at once and
the rest wait queued.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta
from itertools import groupby
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pydantic
from sqlalchemy import func, select

from appbuilder.apps.io import FileAppRepository
from appbuilder.apps.schema import AppSnapshot, BuildRequest
from appbuilder.builds.artifacts import (
    cleanup_transient_output,
    remove_tree,
    sanitize_app_name,
    write_project_files,
)
from appbuilder.builds.cache import BuildCache
from appbuilder.builds.generator import BasicProjectGenerator
from appbuilder.builds.models import BuildRecord, transition_build, utcnow
from appbuilder.builds.notifications import LoggingNotifier
from appbuilder.builds.platforms import ContainerBuildManager, NativeBuildManager
from appbuilder.builds.runner import BuildOptions
from appbuilder.builds.storage import LocalArtifactStore
from appbuilder.config import get_settings
from appbuilder.db import get_engine, get_session_factory
from appbuilder.errors import (
    INTERNAL_ERROR,
    ArtifactMissingError,
    BuildCancelledError,
    BuildEngineError,
    NotFoundError,
    ValidationError,
)
from appbuilder.types import (
    ACTIVE_STATUSES,
    BuildEvent,
    BuildOutcome,
    BuildProgress,
    BuildStatus,
    BuildType,
)

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

    from appbuilder.apps.io import AppRepository
    from appbuilder.builds.generator import ProjectGenerator
    from appbuilder.builds.notifications import Notifier
    from appbuilder.builds.runner import PlatformBuildManager
    from appbuilder.builds.storage import ArtifactStore
    from appbuilder.config import Settings

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Build interrupted: service restarted"

# Progress reported for records without live progress
STATUS_PROGRESS: dict[str, tuple[int, str]] = {
    BuildStatus.QUEUED.value: (0, "Build queued"),
    BuildStatus.BUILDING.value: (10, "Build in progress"),
    BuildStatus.COMPLETED.value: (100, "Build completed"),
    BuildStatus.FAILED.value: (0, "Build failed"),
    BuildStatus.EXPIRED.value: (100, "Build expired"),
}


def get_build_record(session: Session, build_id: str) -> BuildRecord:
    """Get a build record by build_id.

    Args:
        session: Database session.
        build_id: Build identifier.

    Returns:
        BuildRecord instance.

    Raises:
        NotFoundError: If build not found.
    """
    stmt = select(BuildRecord).where(BuildRecord.build_id == build_id)
    record = session.execute(stmt).scalar_one_or_none()
    if record is None:
        raise NotFoundError("build", build_id)
    return record


def list_build_records(
    session: Session,
    app_id: str | None = None,
    status: BuildStatus | None = None,
    limit: int = 20,
) -> list[BuildRecord]:
    """List build records, newest first.

    Args:
        session: Database session.
        app_id: Filter by app.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances.
    """
    stmt = select(BuildRecord)
    if app_id is not None:
        stmt = stmt.where(BuildRecord.app_id == app_id)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)
    stmt = stmt.order_by(BuildRecord.created_at.desc(), BuildRecord.id.desc())
    return list(session.execute(stmt.limit(limit)).scalars().all())


def parse_build_request(data: BuildRequest | dict[str, Any]) -> BuildRequest:
    """Validate raw request data into a BuildRequest.

    Raises:
        ValidationError: If the request is malformed or unsupported.
    """
    if isinstance(data, BuildRequest):
        return data
    try:
        return BuildRequest.model_validate(data)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or None
        raise ValidationError(
            f"Invalid build request: {field}: {first['msg']}", field=field
        ) from e


class BuildOrchestrator:
    """Coordinates build requests, the cache, platform managers and storage."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: Settings,
        app_repository: AppRepository,
        artifact_store: ArtifactStore,
        container_manager: PlatformBuildManager,
        native_manager: PlatformBuildManager,
        project_generator: ProjectGenerator | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.app_repository = app_repository
        self.artifact_store = artifact_store
        self.container_manager = container_manager
        self.native_manager = native_manager
        self.project_generator = project_generator or BasicProjectGenerator()
        self.notifier = notifier or LoggingNotifier()
        self.cache = BuildCache(
            artifact_store,
            freshness_days=settings.cache_freshness_days,
            url_expiry=settings.download_url_expiry,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent_builds,
            thread_name_prefix="build-worker",
        )
        self._lock = threading.Lock()
        self._jobs: dict[str, tuple[AppSnapshot, BuildRequest]] = {}
        self._futures: dict[str, Future[BuildOutcome | None]] = {}
        self._owners: dict[str, PlatformBuildManager] = {}
        self._cancelled: dict[str, str] = {}
        self._progress: dict[str, BuildProgress] = {}

    # Requests

    def start_build(
        self, request: BuildRequest | dict[str, Any], user_id: str
    ) -> str:
        """Start a build, serving it from the cache when possible.

        A cache hit returns the build_id of a new completed record. A miss
        inserts a queued record, schedules the build and returns at once.

        Args:
            request: Build request (or raw request data).
            user_id: User requesting the build.

        Returns:
            The new build_id.

        Raises:
            ValidationError: If the request is invalid.
            NotFoundError: If the app does not exist.
        """
        request = parse_build_request(request)
        snapshot = self.app_repository.get_app_snapshot(request.app_id)
        if snapshot.app.id != request.app_id:
            raise ValidationError(
                f"Snapshot for {request.app_id} belongs to {snapshot.app.id}",
                field="app_id",
            )

        build_hash = self.cache.compute_hash(
            snapshot.app, snapshot.pages, snapshot.components, request.build_params()
        )
        logger.info(
            "Build requested for %s (%s/%s), hash %s",
            request.app_id,
            request.build_type,
            request.build_mode,
            build_hash[:16],
        )

        event: BuildEvent | None = None
        with self.session_factory.begin() as session:
            record = self._serve_from_cache(
                session, request, build_hash, user_id, snapshot.app.name
            )
            if record is None:
                record = BuildRecord(
                    app_id=request.app_id,
                    user_id=user_id,
                    build_type=request.build_type,
                    build_mode=request.build_mode,
                    target_platform=request.target_platform,
                    status=BuildStatus.QUEUED.value,
                    build_hash=build_hash,
                    build_config=request.build_config,
                    created_at=utcnow(),
                )
                session.add(record)
                session.flush()
            else:
                event = BuildEvent(
                    build_id=record.build_id,
                    status=record.status,
                    download_url=record.download_url,
                )
            build_id = record.build_id

        if event is not None:
            self.notifier.notify(event)
            return build_id

        logger.info("Queued build %s for %s", build_id, request.app_id)
        with self._lock:
            self._jobs[build_id] = (snapshot, request)
            self._progress[build_id] = BuildProgress(
                build_id=build_id,
                status=BuildStatus.QUEUED.value,
                progress=0,
                message="Build queued",
            )
            self._futures[build_id] = self._executor.submit(
                self.execute_build, build_id
            )
        return build_id

    def _serve_from_cache(
        self,
        session: Session,
        request: BuildRequest,
        build_hash: str,
        user_id: str,
        app_name: str,
    ) -> BuildRecord | None:
        cached = self.cache.lookup(session, request.app_id, build_hash)
        if cached is None:
            return None
        try:
            return self.cache.clone(session, cached, request, user_id, app_name)
        except ArtifactMissingError:
            # Deleted between the presence check and the copy
            self.cache.invalidate(session, cached)
            return None

    def wait_for_build(
        self, build_id: str, timeout: float | None = None
    ) -> BuildRecord:
        """Block until a scheduled build finishes, then return its record."""
        with self._lock:
            future = self._futures.get(build_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.get_build_status(build_id)

    # Worker

    def manager_for(self, build_type: str) -> PlatformBuildManager:
        """Return the platform manager that builds ``build_type``."""
        if build_type == BuildType.IPA.value:
            return self.native_manager
        return self.container_manager

    def _load_job(self, record: BuildRecord) -> tuple[AppSnapshot, BuildRequest]:
        with self._lock:
            job = self._jobs.pop(record.build_id, None)
        if job is not None:
            return job
        request = BuildRequest(
            app_id=record.app_id,
            build_type=record.build_type,
            build_mode=record.build_mode,
            target_platform=record.target_platform,
            build_config=record.build_config or {},
        )
        return self.app_repository.get_app_snapshot(record.app_id), request

    def _build_options(
        self,
        build_id: str,
        snapshot: AppSnapshot,
        request: BuildRequest,
        staging_dir: Path,
        output_dir: Path,
    ) -> BuildOptions:
        config = request.build_config
        env = {str(k): str(v) for k, v in (config.get("environment") or {}).items()}
        return BuildOptions(
            build_id=build_id,
            build_type=request.build_type,
            build_mode=request.build_mode,
            app_name=sanitize_app_name(snapshot.app.name),
            project_path=staging_dir,
            output_path=output_dir,
            bundle_id=config.get("bundle_id") or snapshot.app.package_name,
            team_id=config.get("team_id"),
            provisioning_profile=config.get("provisioning_profile"),
            env=env,
        )

    def _on_progress(self, progress: BuildProgress) -> None:
        with self._lock:
            # Reports can trail the end of a build
            if progress.build_id in self._futures:
                self._progress[progress.build_id] = progress

    def _transition(
        self, build_id: str, new_status: BuildStatus, **values: Any
    ) -> bool:
        with self.session_factory.begin() as session:
            return transition_build(
                session, build_id, new_status, ACTIVE_STATUSES, **values
            )

    def execute_build(self, build_id: str) -> BuildOutcome | None:
        """Run one queued build to completion.

        Runs on a worker thread. Every failure after this point is
        recorded on the build record rather than raised.

        Args:
            build_id: Build identifier.

        Returns:
            The build outcome, or None if the build was no longer queued.
        """
        record = self.get_build_status(build_id)
        if record.status != BuildStatus.QUEUED.value:
            logger.info("Skipping build %s in status %s", build_id, record.status)
            self._forget(build_id)
            return None

        try:
            snapshot, request = self._load_job(record)
        except BuildEngineError as e:
            logger.error("Build %s could not be loaded: %s", build_id, e)
            failure = BuildOutcome(
                build_id=build_id, success=False, error=str(e), error_code=e.code
            )
            self._finish_build(build_id, failure)
            return failure

        if not self._transition(build_id, BuildStatus.BUILDING, started_at=utcnow()):
            logger.info("Build %s left the queue before it started", build_id)
            self._forget(build_id)
            return None

        staging_dir = self.settings.staging_dir / build_id
        output_dir = self.settings.output_dir / build_id
        self._on_progress(
            BuildProgress(
                build_id=build_id,
                status=BuildStatus.BUILDING.value,
                progress=5,
                message="Generating project...",
            )
        )

        try:
            files = self.project_generator.generate(
                snapshot.app, snapshot.pages, snapshot.components, request
            )
            remove_tree(staging_dir)
            write_project_files(staging_dir, files)
            remove_tree(output_dir)
            output_dir.mkdir(parents=True, exist_ok=True)

            outcome = self._run_on_manager(
                self.manager_for(request.build_type),
                self._build_options(
                    build_id, snapshot, request, staging_dir, output_dir
                ),
            )
        except Exception as e:
            logger.exception("Build %s failed before completion", build_id)
            outcome = BuildOutcome(
                build_id=build_id,
                success=False,
                error=str(e) or "Build failed",
                error_code=getattr(e, "code", INTERNAL_ERROR),
            )
        finally:
            with self._lock:
                self._owners.pop(build_id, None)

        self._finish_build(build_id, outcome, snapshot.app.name)
        return outcome

    def _run_on_manager(
        self, manager: PlatformBuildManager, options: BuildOptions
    ) -> BuildOutcome:
        build_id = options.build_id
        done: Future[BuildOutcome] = Future()

        def on_complete(outcome: BuildOutcome) -> None:
            if not done.done():
                done.set_result(outcome)

        with self._lock:
            reason = self._cancelled.get(build_id)
            if reason is None:
                self._owners[build_id] = manager
        if reason is not None:
            raise BuildCancelledError(f"Build cancelled: {reason}", reason=reason)

        manager.start_build(options, on_complete, self._on_progress)

        # A cancel that raced the spawn has to be replayed on the manager
        with self._lock:
            reason = self._cancelled.get(build_id)
        if reason is not None:
            manager.cancel_build(build_id, reason)

        return done.result()

    def _finish_build(
        self,
        build_id: str,
        outcome: BuildOutcome,
        app_name: str | None = None,
    ) -> None:
        event: BuildEvent | None = None
        if outcome.success:
            event, outcome = self._publish_artifact(build_id, outcome, app_name)

        if not outcome.success:
            error = outcome.error or "Build failed"
            if self._transition(
                build_id,
                BuildStatus.FAILED,
                error_message=error,
                completed_at=utcnow(),
            ):
                logger.error("Build %s failed: %s", build_id, error)
                event = BuildEvent(build_id, BuildStatus.FAILED.value, error=error)
            else:
                logger.info("Ignoring outcome of finished build %s", build_id)

        staging_dir = self.settings.staging_dir / build_id
        output_dir = self.settings.output_dir / build_id
        if event is not None and event.status == BuildStatus.COMPLETED.value:
            cleanup_transient_output(staging_dir, output_dir)
        else:
            remove_tree(staging_dir)
            remove_tree(output_dir)

        self._forget(build_id)
        if event is not None:
            self.notifier.notify(event)

    def _publish_artifact(
        self, build_id: str, outcome: BuildOutcome, app_name: str | None
    ) -> tuple[BuildEvent | None, BuildOutcome]:
        """Upload a successful build's output and mark the build completed.

        The upload happens outside any transaction. The completion write
        only applies if the build is still building, so a cancel that
        lands during the upload wins and the uploaded file is discarded.

        Returns:
            The completion event (None if the build was not completed) and
            the outcome, replaced by a failure if the upload failed.
        """
        if outcome.output_file is None:
            return None, BuildOutcome(
                build_id=build_id,
                success=False,
                error="Build finished without an output file",
            )

        record = self.get_build_status(build_id)
        if record.status != BuildStatus.BUILDING.value:
            logger.info(
                "Ignoring completion of build %s in status %s",
                build_id,
                record.status,
            )
            return None, outcome

        upload = self.artifact_store.upload_artifact(
            build_id, outcome.output_file, record.build_type, app_name or record.app_id
        )
        if not upload.success or not upload.file_path:
            return None, BuildOutcome(
                build_id=build_id,
                success=False,
                error=f"Failed to upload artifact: {upload.error}",
            )

        url = self.artifact_store.get_download_url(
            upload.file_path, self.settings.download_url_expiry
        )
        if not self._transition(
            build_id,
            BuildStatus.COMPLETED,
            download_url=url,
            artifact_path=upload.file_path,
            error_message=None,
            completed_at=utcnow(),
        ):
            logger.info("Build %s ended during upload, discarding artifact", build_id)
            self.artifact_store.delete_artifact(upload.file_path)
            return None, outcome

        logger.info("Build %s completed: %s", build_id, url)
        event = BuildEvent(build_id, BuildStatus.COMPLETED.value, download_url=url)
        return event, outcome

    def _forget(self, build_id: str) -> None:
        with self._lock:
            self._jobs.pop(build_id, None)
            self._progress.pop(build_id, None)
            self._cancelled.pop(build_id, None)
            self._futures.pop(build_id, None)

    # Queries

    def get_build_status(self, build_id: str) -> BuildRecord:
        """Get a build record.

        Raises:
            NotFoundError: If build not found.
        """
        with self.session_factory() as session:
            return get_build_record(session, build_id)

    def list_builds(self, app_id: str, limit: int = 20) -> list[BuildRecord]:
        """List an app's builds, newest first."""
        with self.session_factory() as session:
            return list_build_records(session, app_id=app_id, limit=limit)

    def get_build_progress(self, build_id: str) -> BuildProgress:
        """Get the latest progress of a build.

        Live progress is kept in memory while a build runs; otherwise
        progress is derived from the record's status.

        Raises:
            NotFoundError: If build not found.
        """
        record = self.get_build_status(build_id)
        with self._lock:
            live = self._progress.get(build_id)
        if live is not None and record.status in ACTIVE_STATUSES:
            return live
        progress, message = STATUS_PROGRESS[record.status]
        return BuildProgress(
            build_id=build_id,
            status=record.status,
            progress=progress,
            message=message,
            error=record.error_message,
        )

    # Cancellation and maintenance

    def cancel_build(self, build_id: str, reason: str = "cancelled") -> BuildRecord:
        """Cancel a queued or running build.

        Terminal builds are returned unchanged.

        Args:
            build_id: Build identifier.
            reason: Reason recorded in the failure message.

        Returns:
            The build record after cancellation.

        Raises:
            NotFoundError: If build not found.
        """
        record = self.get_build_status(build_id)
        if record.status not in ACTIVE_STATUSES:
            logger.info("Build %s is %s, nothing to cancel", build_id, record.status)
            return record

        message = f"Build cancelled: {reason}"
        with self._lock:
            self._cancelled[build_id] = reason
        cancelled = self._transition(
            build_id,
            BuildStatus.FAILED,
            error_message=message,
            completed_at=utcnow(),
        )
        with self._lock:
            # Workers drop the reason when they finish
            if not cancelled or build_id not in self._futures:
                self._cancelled.pop(build_id, None)
            manager = self._owners.get(build_id) if cancelled else None

        if not cancelled:
            logger.info("Build %s finished before it could be cancelled", build_id)
            return self.get_build_status(build_id)

        logger.info("Cancelled build %s: %s", build_id, reason)
        if manager is not None:
            manager.cancel_build(build_id, reason)

        remove_tree(self.settings.staging_dir / build_id)
        remove_tree(self.settings.output_dir / build_id)
        self.notifier.notify(
            BuildEvent(build_id, BuildStatus.FAILED.value, error=message)
        )
        return self.get_build_status(build_id)

    def cleanup_old_builds(self, app_id: str | None = None) -> int:
        """Expire old completed builds past the per-app keep count.

        Completed builds older than the retention window are grouped per
        app; the most recent ``retention_keep`` of each group are kept and
        the rest lose their artifact and become expired.

        Args:
            app_id: Only clean up this app's builds.

        Returns:
            Number of builds expired.
        """
        cutoff = utcnow() - timedelta(days=self.settings.retention_days)
        stmt = select(BuildRecord).where(
            BuildRecord.status == BuildStatus.COMPLETED.value,
            BuildRecord.download_url.is_not(None),
            BuildRecord.created_at < cutoff,
        )
        if app_id is not None:
            stmt = stmt.where(BuildRecord.app_id == app_id)
        stmt = stmt.order_by(
            BuildRecord.app_id,
            BuildRecord.created_at.desc(),
            BuildRecord.id.desc(),
        )

        expired = 0
        with self.session_factory.begin() as session:
            records = session.execute(stmt).scalars().all()
            for group_app_id, group in groupby(records, key=lambda r: r.app_id):
                for record in list(group)[self.settings.retention_keep :]:
                    if record.artifact_path:
                        self.artifact_store.delete_artifact(record.artifact_path)
                    record.mark_expired()
                    expired += 1
                    logger.debug(
                        "Expired build %s of %s", record.build_id, group_app_id
                    )

        logger.info("Expired %d old builds", expired)
        return expired

    def recover_interrupted_builds(self) -> int:
        """Fail builds left queued or building by a previous process.

        Builds scheduled by this orchestrator are left alone. Run it once
        on startup, before accepting requests.

        Returns:
            Number of builds marked failed.
        """
        with self._lock:
            scheduled = set(self._futures)
        stmt = select(BuildRecord.build_id).where(
            BuildRecord.status.in_([s.value for s in ACTIVE_STATUSES])
        )
        with self.session_factory() as session:
            stale = [b for b in session.execute(stmt).scalars() if b not in scheduled]

        recovered = 0
        for build_id in stale:
            if not self._transition(
                build_id,
                BuildStatus.FAILED,
                error_message=INTERRUPTED_MESSAGE,
                completed_at=utcnow(),
            ):
                continue
            recovered += 1
            remove_tree(self.settings.staging_dir / build_id)
            remove_tree(self.settings.output_dir / build_id)
            self.notifier.notify(
                BuildEvent(
                    build_id, BuildStatus.FAILED.value, error=INTERRUPTED_MESSAGE
                )
            )

        if recovered:
            logger.warning("Marked %d interrupted build(s) as failed", recovered)
        return recovered

    def get_queue_status(self, user_id: str) -> dict[str, Any]:
        """Summarize unfinished builds.

        Args:
            user_id: User whose queued and building builds are listed.

        Returns:
            Dict with the user's unfinished builds (oldest first) and the
            global number of queued and building builds.
        """
        active = [s.value for s in ACTIVE_STATUSES]
        user_stmt = (
            select(BuildRecord)
            .where(BuildRecord.user_id == user_id, BuildRecord.status.in_(active))
            .order_by(BuildRecord.created_at, BuildRecord.id)
        )
        count_stmt = (
            select(BuildRecord.status, func.count())
            .where(BuildRecord.status.in_(active))
            .group_by(BuildRecord.status)
        )
        with self.session_factory() as session:
            user_builds = session.execute(user_stmt).scalars().all()
            counts = {status: n for status, n in session.execute(count_stmt)}

        return {
            "user_builds": [b.to_dict() for b in user_builds],
            "queue_stats": {
                "queued": counts.get(BuildStatus.QUEUED.value, 0),
                "building": counts.get(BuildStatus.BUILDING.value, 0),
            },
        }

    def get_active_builds(self) -> list[str]:
        """Return build_ids currently running on any manager."""
        return (
            self.container_manager.get_active_builds()
            + self.native_manager.get_active_builds()
        )

    def shutdown(self, cancel_active: bool = True) -> None:
        """Stop the worker pool and platform managers.

        Args:
            cancel_active: Cancel queued and running builds first.
        """
        if cancel_active:
            with self._lock:
                pending = list(self._futures)
            for build_id in pending:
                try:
                    self.cancel_build(build_id, "shutdown")
                except NotFoundError:
                    logger.warning("Build %s vanished during shutdown", build_id)
        self._executor.shutdown(wait=cancel_active, cancel_futures=True)
        self.container_manager.shutdown(cancel_active=cancel_active)
        self.native_manager.shutdown(cancel_active=cancel_active)
        logger.info("Build orchestrator stopped")


def build_orchestrator(
    settings: Settings | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> BuildOrchestrator:
    """Create an orchestrator wired with the default collaborators.

    Args:
        settings: Application settings.
        session_factory: Session factory; created from settings if omitted.

    Returns:
        Configured BuildOrchestrator.
    """
    if settings is None:
        settings = get_settings()
    if session_factory is None:
        session_factory = get_session_factory(get_engine(settings.db_url))

    return BuildOrchestrator(
        session_factory=session_factory,
        settings=settings,
        app_repository=FileAppRepository(settings.apps_dir),
        artifact_store=LocalArtifactStore(
            settings.artifacts_dir, settings.url_signing_key
        ),
        container_manager=ContainerBuildManager.from_settings(settings),
        native_manager=NativeBuildManager.from_settings(settings),
    )


__all__ = [
    "INTERRUPTED_MESSAGE",
    "BuildOrchestrator",
    "build_orchestrator",
    "get_build_record",
    "list_build_records",
    "parse_build_request",
]
