"""Tests for the BuildRecord ORM model."""

from datetime import timedelta

import pytest
from sqlalchemy import create_engine, inspect, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from appbuilder.builds.models import (
    BuildRecord,
    generate_build_id,
    transition_build,
    utcnow,
)
from appbuilder.db import (
    SQLITE_BUSY_TIMEOUT_MS,
    Base,
    create_all_tables,
    get_engine,
    get_session,
    get_session_factory,
)
from appbuilder.types import ACTIVE_STATUSES, BuildStatus


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session(engine):
    """Create a session for testing."""
    session = sessionmaker(bind=engine, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()


def make_record(**overrides) -> BuildRecord:
    """Create an unsaved queued record."""
    values = {
        "app_id": "app-1",
        "user_id": "user-1",
        "build_type": "apk",
        "build_mode": "release",
        "build_hash": "a" * 64,
    }
    values.update(overrides)
    return BuildRecord(**values)


class TestGenerateBuildId:
    """Tests for generate_build_id function."""

    def test_format(self):
        """Should look like build_<ms>_<token>."""
        prefix, millis, token = generate_build_id().split("_")
        assert prefix == "build"
        assert millis.isdigit()
        assert len(token) == 16

    def test_unique(self):
        """Should not repeat."""
        assert len({generate_build_id() for _ in range(100)}) == 100


class TestBuildRecord:
    """Tests for BuildRecord persistence and lifecycle."""

    def test_defaults(self, session):
        """Should default to queued with a generated build_id."""
        record = make_record()
        session.add(record)
        session.commit()

        assert record.status == BuildStatus.QUEUED.value
        assert record.build_id.startswith("build_")
        assert record.created_at is not None
        assert record.download_url is None

    def test_build_id_unique(self, session):
        """Should enforce unique build_ids."""
        session.add(make_record(build_id="build_1"))
        session.add(make_record(build_id="build_1"))
        with pytest.raises(IntegrityError):
            session.commit()

    def test_mark_expired_clears_url(self):
        """Expiring should drop the download URL."""
        record = make_record(status="completed", download_url="https://dl/x")
        record.mark_expired()
        assert record.status == "expired"
        assert record.download_url is None

    def test_can_transition(self):
        """Should follow the status transition table."""
        record = make_record(status="queued")
        assert record.can_transition(BuildStatus.BUILDING)
        assert not record.can_transition(BuildStatus.COMPLETED)

        record.status = "failed"
        assert not record.can_transition(BuildStatus.COMPLETED)

    def test_to_dict(self, session):
        """Should serialize timestamps as ISO strings."""
        record = make_record(cached_from_build_id="build_0")
        session.add(record)
        session.commit()

        data = record.to_dict()
        assert data["build_id"] == record.build_id
        assert data["cached_from_build_id"] == "build_0"
        assert isinstance(data["created_at"], str)
        assert data["completed_at"] is None

    def test_query_by_cache_columns(self, session):
        """Should find records by app, hash and status."""
        old = make_record(status="completed", created_at=utcnow() - timedelta(days=1))
        new = make_record(status="completed")
        session.add_all([old, new])
        session.commit()

        stmt = (
            select(BuildRecord)
            .where(
                BuildRecord.app_id == "app-1",
                BuildRecord.build_hash == "a" * 64,
                BuildRecord.status == "completed",
            )
            .order_by(BuildRecord.created_at.desc())
        )
        assert session.execute(stmt).scalars().first().build_id == new.build_id


class TestTransitionBuild:
    """Tests for guarded status transitions."""

    def _stored(self, session, build_id) -> BuildRecord:
        stmt = (
            select(BuildRecord)
            .where(BuildRecord.build_id == build_id)
            .execution_options(populate_existing=True)
        )
        return session.execute(stmt).scalar_one()

    def test_lifecycle_to_completed(self, session):
        """Should move queued -> building -> completed with timestamps and URL."""
        session.add(make_record(build_id="build_1_ok"))
        session.commit()

        started = utcnow()
        assert transition_build(
            session,
            "build_1_ok",
            BuildStatus.BUILDING,
            ACTIVE_STATUSES,
            started_at=started,
        )
        assert transition_build(
            session,
            "build_1_ok",
            BuildStatus.COMPLETED,
            ACTIVE_STATUSES,
            download_url="https://dl/x",
            artifact_path="builds/app/x/x.apk",
            completed_at=utcnow(),
        )
        session.commit()

        record = self._stored(session, "build_1_ok")
        assert record.status == "completed"
        assert record.download_url == "https://dl/x"
        assert record.artifact_path == "builds/app/x/x.apk"
        assert record.completed_at >= record.started_at

    def test_queued_cannot_complete(self, session):
        """Should refuse to skip the building status."""
        session.add(make_record(build_id="build_1_skip"))
        session.commit()

        assert not transition_build(
            session, "build_1_skip", BuildStatus.COMPLETED, ACTIVE_STATUSES
        )
        assert self._stored(session, "build_1_skip").status == "queued"

    def test_failed_build_is_never_overwritten(self, session):
        """A failed build should stay failed with its original message."""
        session.add(
            make_record(
                build_id="build_1_cancelled",
                status="failed",
                error_message="Build cancelled: user request",
            )
        )
        session.commit()

        assert not transition_build(
            session,
            "build_1_cancelled",
            BuildStatus.COMPLETED,
            ACTIVE_STATUSES,
            download_url="https://dl/x",
        )
        assert not transition_build(
            session,
            "build_1_cancelled",
            BuildStatus.FAILED,
            ACTIVE_STATUSES,
            error_message="Failed to upload artifact",
        )
        session.commit()

        record = self._stored(session, "build_1_cancelled")
        assert record.status == "failed"
        assert record.error_message == "Build cancelled: user request"
        assert record.download_url is None

    def test_second_writer_loses(self, session):
        """Only the first of two transitions out of building should apply."""
        session.add(make_record(build_id="build_1_race", status="building"))
        session.commit()

        assert transition_build(
            session,
            "build_1_race",
            BuildStatus.FAILED,
            ACTIVE_STATUSES,
            error_message="Build cancelled: shutdown",
        )
        assert not transition_build(
            session, "build_1_race", BuildStatus.COMPLETED, ACTIVE_STATUSES
        )

    def test_failed_always_has_message(self, session):
        """A failed record should never have an empty message."""
        session.add(make_record(build_id="build_1_empty"))
        session.commit()

        assert transition_build(
            session,
            "build_1_empty",
            BuildStatus.FAILED,
            ACTIVE_STATUSES,
            error_message="",
        )
        session.commit()
        assert self._stored(session, "build_1_empty").error_message == "Build failed"

    def test_unknown_build(self, session):
        """Should report no change for a missing build."""
        assert not transition_build(
            session, "build_missing", BuildStatus.FAILED, ACTIVE_STATUSES
        )


class TestDatabaseSetup:
    """Test database engine and session helpers."""

    def test_create_all_tables(self, tmp_path):
        """create_all_tables should create the builds table."""
        engine = get_engine(f"sqlite:///{tmp_path / 'test.db'}")
        create_all_tables(engine)
        assert inspect(engine).has_table("app_builds")

    def test_sqlite_file_uses_wal(self, tmp_path):
        """File databases should use the WAL journal and a busy timeout."""
        engine = get_engine(f"sqlite:///{tmp_path / 'test.db'}")
        with engine.connect() as conn:
            assert conn.exec_driver_sql("PRAGMA journal_mode").scalar() == "wal"
            timeout = conn.exec_driver_sql("PRAGMA busy_timeout").scalar()
        assert timeout == SQLITE_BUSY_TIMEOUT_MS

    def test_sqlite_memory_keeps_default_journal(self):
        """In-memory databases should keep their own journal mode."""
        engine = get_engine("sqlite://")
        with engine.connect() as conn:
            assert conn.exec_driver_sql("PRAGMA journal_mode").scalar() == "memory"

    def test_get_session_commits(self, tmp_path):
        """get_session should commit on a clean exit."""
        engine = get_engine(f"sqlite:///{tmp_path / 'test.db'}")
        create_all_tables(engine)
        factory = get_session_factory(engine)

        with get_session(factory) as session:
            session.add(make_record(build_id="build_1_commit"))

        with get_session(factory) as session:
            stmt = select(BuildRecord).where(BuildRecord.build_id == "build_1_commit")
            assert session.execute(stmt).scalar_one().status == "queued"

    def test_get_session_rolls_back(self, tmp_path):
        """get_session should roll back when the block raises."""
        engine = get_engine(f"sqlite:///{tmp_path / 'test.db'}")
        create_all_tables(engine)
        factory = get_session_factory(engine)

        with pytest.raises(RuntimeError):
            with get_session(factory) as session:
                session.add(make_record(build_id="build_1_rollback"))
                session.flush()
                raise RuntimeError("boom")

        with get_session(factory) as session:
            assert session.execute(select(BuildRecord)).scalars().all() == []
