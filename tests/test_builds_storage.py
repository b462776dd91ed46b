"""Tests for builds/storage.py module.

Tests the local artifact store and signed download URLs.
"""

import hashlib
import time
from urllib.parse import parse_qs, urlparse

import pytest

from appbuilder.builds.storage import LocalArtifactStore, artifact_suffix
from appbuilder.errors import ArtifactMissingError


@pytest.fixture
def store(tmp_path):
    """Create a local artifact store."""
    return LocalArtifactStore(tmp_path / "store", signing_key="test-key")


@pytest.fixture
def output_file(tmp_path):
    """Create a fake build output file."""
    path = tmp_path / "out" / "build_1_abc-release.apk"
    path.parent.mkdir()
    path.write_bytes(b"apk-bytes")
    return path


class TestArtifactSuffix:
    """Tests for artifact_suffix function."""

    def test_compound_extension(self):
        """Should keep compound iOS extensions."""
        assert artifact_suffix("Runner.app.zip", "ipa") == ".app.zip"

    def test_plain_extension(self):
        """Should keep the expected extension."""
        assert artifact_suffix("x.apk", "apk") == ".apk"


class TestUpload:
    """Tests for upload_artifact."""

    def test_upload_stores_under_app_and_build(self, store, output_file):
        """Should store the file at builds/<app>/<build_id>/<build_id><ext>."""
        result = store.upload_artifact("build_1_abc", output_file, "apk", "My App")

        assert result.success
        assert result.file_path == "builds/my-app/build_1_abc/build_1_abc.apk"
        assert result.file_size == len(b"apk-bytes")
        assert result.sha256 == hashlib.sha256(b"apk-bytes").hexdigest()
        assert store.exists(result.file_path)

    def test_upload_missing_source(self, store, tmp_path):
        """Should report failure instead of raising for a missing file."""
        result = store.upload_artifact("b", tmp_path / "missing.apk", "apk", "a")
        assert not result.success
        assert result.error


class TestCopyAndDelete:
    """Tests for copy_artifact and delete_artifact."""

    def test_copy_creates_independent_file(self, store, output_file):
        """Should copy bytes to a path keyed by the new build_id."""
        original = store.upload_artifact("build_1", output_file, "apk", "app")
        copy = store.copy_artifact(original.file_path, "build_2", "apk", "app")

        assert copy.success
        assert copy.file_path == "builds/app/build_2/build_2.apk"
        store.delete_artifact(original.file_path)
        assert store.exists(copy.file_path)
        assert not store.exists(original.file_path)

    def test_copy_missing_raises(self, store):
        """Should raise ArtifactMissingError when the source is gone."""
        with pytest.raises(ArtifactMissingError):
            store.copy_artifact("builds/app/b/b.apk", "b2", "apk", "app")

    def test_delete_missing_is_ok(self, store):
        """Deleting a missing artifact should succeed."""
        assert store.delete_artifact("builds/app/b/b.apk") is True

    def test_delete_rejects_traversal(self, store, tmp_path):
        """Should refuse paths outside the store instead of raising."""
        outside = tmp_path / "outside.apk"
        outside.write_bytes(b"keep")
        assert store.delete_artifact("../outside.apk") is False
        assert outside.exists()

    def test_resolve_rejects_traversal(self, store):
        """Should refuse paths outside the store root."""
        with pytest.raises(ValueError):
            store.resolve("../outside")
        assert store.exists("../outside") is False


class TestDownloadUrls:
    """Tests for signed download URLs."""

    def test_url_round_trip(self, store):
        """A freshly issued URL should verify."""
        url = store.get_download_url("builds/app/b/b.apk", expires_in=60)
        parsed = urlparse(url)
        query = parse_qs(parsed.query)

        assert parsed.path == "/artifacts/builds/app/b/b.apk"
        assert store.verify_download(
            "builds/app/b/b.apk", int(query["expires"][0]), query["signature"][0]
        )

    def test_tampered_path_fails(self, store):
        """A signature should not verify for another path."""
        url = store.get_download_url("builds/app/b/b.apk", expires_in=60)
        query = parse_qs(urlparse(url).query)
        assert not store.verify_download(
            "builds/app/c/c.apk", int(query["expires"][0]), query["signature"][0]
        )

    def test_expired_url_fails(self, store):
        """An expired URL should not verify."""
        expires = int(time.time()) - 1
        signature = store._signature("p", expires)
        assert not store.verify_download("p", expires, signature)

    def test_base_url_prefix(self, tmp_path):
        """Should prefix URLs with the configured base URL."""
        store = LocalArtifactStore(tmp_path, "k", base_url="https://dl.example.com/")
        assert store.get_download_url("x.apk").startswith(
            "https://dl.example.com/artifacts/x.apk?"
        )


class TestStorageStats:
    """Tests for get_storage_stats."""

    def test_empty_store(self, store):
        """Should report zero usage before anything is stored."""
        stats = store.get_storage_stats()
        assert stats.total_files == 0
        assert stats.total_size == 0
        assert stats.apps == []

    def test_counts_per_app(self, store, output_file):
        """Should total files and bytes per app directory."""
        store.upload_artifact("build_1_a", output_file, "apk", "Shop")
        store.upload_artifact("build_2_b", output_file, "apk", "Shop")
        store.upload_artifact("build_3_c", output_file, "apk", "Blog")

        stats = store.get_storage_stats()
        size = len(b"apk-bytes")
        assert stats.total_files == 3
        assert stats.total_size == 3 * size
        assert [(a.app, a.files, a.size) for a in stats.apps] == [
            ("blog", 1, size),
            ("shop", 2, 2 * size),
        ]

    def test_to_dict(self, store, output_file):
        """Should expose byte and MB totals with an app breakdown."""
        store.upload_artifact("build_1_a", output_file, "apk", "Shop")
        data = store.get_storage_stats().to_dict()
        assert data["total_files"] == 1
        assert data["total_size_bytes"] == len(b"apk-bytes")
        assert data["total_size_mb"] == 0.0
        assert data["apps"][0]["name"] == "shop"
