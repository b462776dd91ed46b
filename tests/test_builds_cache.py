"""Tests for builds/cache.py module.

Tests build cache lookup, freshness, self-healing invalidation and
cloning against an in-memory database and a local artifact store.
"""

from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from appbuilder.apps.schema import AppConfig, AppPage, BuildRequest, PageComponent
from appbuilder.builds.cache import CACHED_FILE_MISSING, BuildCache
from appbuilder.builds.models import BuildRecord, utcnow
from appbuilder.builds.storage import LocalArtifactStore
from appbuilder.db import Base
from appbuilder.errors import ArtifactMissingError

HASH = "c" * 64


@pytest.fixture
def session():
    """Create a session on an in-memory SQLite database."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(tmp_path) -> LocalArtifactStore:
    """Create an artifact store under a temp directory."""
    return LocalArtifactStore(tmp_path / "artifacts", signing_key="test-key")


@pytest.fixture
def cache(store) -> BuildCache:
    """Create a cache with a 30 day freshness window."""
    return BuildCache(store, freshness_days=30, url_expiry=3600)


@pytest.fixture
def completed(session, store, tmp_path):
    """Factory for completed records backed by a stored artifact."""

    def _create(build_id: str, age_days: float = 0, **overrides) -> BuildRecord:
        output = tmp_path / f"{build_id}-release.apk"
        output.write_bytes(b"apk-bytes")
        result = store.upload_artifact(build_id, output, "apk", "Shop")
        created = utcnow() - timedelta(days=age_days)
        values = {
            "build_id": build_id,
            "app_id": "app-1",
            "user_id": "user-1",
            "build_type": "apk",
            "build_mode": "release",
            "build_hash": HASH,
            "status": "completed",
            "artifact_path": result.file_path,
            "download_url": store.get_download_url(result.file_path),
            "created_at": created,
            "completed_at": created,
        }
        values.update(overrides)
        record = BuildRecord(**values)
        session.add(record)
        session.flush()
        return record

    return _create


class TestComputeHash:
    """Tests for BuildCache.compute_hash."""

    def test_stable_and_sensitive(self):
        """Should be deterministic and change with build parameters."""
        app = AppConfig(id="app-1", name="Shop", updated_at="2024-01-01T00:00:00")
        pages = [AppPage(id="p1", name="Home")]
        components = [PageComponent(id="c1", page_id="p1", component_type="text")]
        params = {"build_type": "apk", "build_mode": "release"}

        first = BuildCache.compute_hash(app, pages, components, params)
        assert first == BuildCache.compute_hash(app, pages, components, dict(params))
        assert len(first) == 64
        assert first != BuildCache.compute_hash(
            app, pages, components, {**params, "build_mode": "debug"}
        )


class TestLookup:
    """Tests for BuildCache.lookup."""

    def test_hit(self, session, cache, completed):
        """Should return a fresh completed build with an artifact."""
        record = completed("build_1")
        assert cache.lookup(session, "app-1", HASH) is record

    def test_most_recent_wins(self, session, cache, completed):
        """Should prefer the newest matching build."""
        completed("build_old", age_days=3)
        newest = completed("build_new", age_days=1)
        assert cache.lookup(session, "app-1", HASH) is newest

    def test_other_hash_or_app(self, session, cache, completed):
        """Should miss on a different hash or app."""
        completed("build_1")
        assert cache.lookup(session, "app-1", "d" * 64) is None
        assert cache.lookup(session, "app-2", HASH) is None

    def test_stale_build_ignored(self, session, cache, completed):
        """Should ignore builds older than the freshness window."""
        completed("build_1", age_days=31)
        assert cache.lookup(session, "app-1", HASH) is None

    def test_non_completed_ignored(self, session, cache, completed):
        """Should ignore failed builds and builds without a URL."""
        completed("build_1", status="failed")
        completed("build_2", download_url=None)
        assert cache.lookup(session, "app-1", HASH) is None

    def test_missing_artifact_self_heals(self, session, cache, completed, store):
        """Should invalidate a record whose artifact is gone and miss."""
        record = completed("build_1")
        store.resolve(record.artifact_path).unlink()

        assert cache.lookup(session, "app-1", HASH) is None
        assert record.status == "failed"
        assert record.error_message == CACHED_FILE_MISSING
        assert record.download_url is None

        # The invalidated record no longer matches
        assert cache.lookup(session, "app-1", HASH) is None


class TestValidateArtifactPresence:
    """Tests for BuildCache.validate_artifact_presence."""

    def test_present(self, session, cache, completed):
        """Should keep a record whose artifact exists."""
        record = completed("build_1")
        assert cache.validate_artifact_presence(session, record) is True
        assert record.status == "completed"

    def test_without_artifact_path(self, session, cache, completed):
        """Should invalidate a record that never had an artifact path."""
        record = completed("build_1", artifact_path=None)
        assert cache.validate_artifact_presence(session, record) is False
        assert record.status == "failed"


class TestClone:
    """Tests for BuildCache.clone."""

    def test_clone_creates_completed_copy(self, session, cache, completed, store):
        """Should insert a completed record owning its own artifact copy."""
        source = completed("build_src")
        request = BuildRequest(app_id="app-1", build_type="apk")

        clone = cache.clone(session, source, request, "user-2", "Shop")

        assert clone.build_id != source.build_id
        assert clone.status == "completed"
        assert clone.cached_from_build_id == "build_src"
        assert clone.user_id == "user-2"
        assert clone.build_hash == HASH
        assert clone.artifact_path != source.artifact_path
        assert clone.build_id in clone.artifact_path
        assert store.exists(clone.artifact_path)
        assert store.resolve(clone.artifact_path).read_bytes() == b"apk-bytes"
        assert "/artifacts/" in clone.download_url
        assert clone.started_at == clone.completed_at

    def test_clone_missing_source(self, session, cache, completed, store):
        """Should raise ArtifactMissingError when the source file is gone."""
        source = completed("build_src")
        store.resolve(source.artifact_path).unlink()
        request = BuildRequest(app_id="app-1", build_type="apk")

        with pytest.raises(ArtifactMissingError):
            cache.clone(session, source, request, "user-2", "Shop")
