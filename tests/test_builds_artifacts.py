"""Tests for builds/artifacts.py module.

Tests project file writing, output discovery, hashing and cleanup.
"""

import hashlib

import pytest

from appbuilder.builds.artifacts import (
    cleanup_transient_output,
    compute_file_hash,
    expected_extensions,
    find_build_output,
    remove_tree,
    safe_relative_path,
    sanitize_app_name,
    write_project_files,
)


class TestExpectedExtensions:
    """Tests for expected_extensions function."""

    def test_android_types(self):
        """Should map android build types to their extension."""
        assert expected_extensions("apk") == (".apk",)
        assert expected_extensions("aab") == (".aab",)

    def test_source_code(self):
        """Source builds should produce zips."""
        assert expected_extensions("source_code") == (".zip",)

    def test_ipa(self):
        """iOS builds should accept ipa and zipped app bundles."""
        assert expected_extensions("ipa") == (".ipa", ".app.zip", ".zip")

    def test_unknown_defaults_to_apk(self):
        """Unknown types should fall back to apk."""
        assert expected_extensions("other") == (".apk",)


class TestSanitizeAppName:
    """Tests for sanitize_app_name function."""

    def test_lowercases_and_dashes(self):
        """Should lowercase and replace unsafe characters."""
        assert sanitize_app_name("My Cool App!") == "my-cool-app"

    def test_collapses_dashes(self):
        """Should collapse runs of separators."""
        assert sanitize_app_name("a  --  b") == "a-b"

    def test_fallback(self):
        """Should fall back to 'app' when nothing remains."""
        assert sanitize_app_name("???") == "app"


class TestSafeRelativePath:
    """Tests for safe_relative_path function."""

    def test_accepts_nested_path(self):
        """Should accept nested relative paths."""
        assert str(safe_relative_path("lib/main.dart")) == "lib/main.dart"

    @pytest.mark.parametrize("path", ["/etc/passwd", "../escape", "lib/../../x"])
    def test_rejects_escaping_paths(self, path):
        """Should reject absolute and parent-relative paths."""
        with pytest.raises(ValueError):
            safe_relative_path(path)


class TestWriteProjectFiles:
    """Tests for write_project_files function."""

    def test_writes_nested_files(self, tmp_path):
        """Should create parent directories and write contents."""
        staging = tmp_path / "staging"
        count = write_project_files(
            staging, {"pubspec.yaml": "name: x\n", "lib/main.dart": "void main() {}"}
        )

        assert count == 2
        assert (staging / "pubspec.yaml").read_text() == "name: x\n"
        assert (staging / "lib" / "main.dart").exists()

    def test_rejects_escape(self, tmp_path):
        """Should refuse to write outside the staging directory."""
        with pytest.raises(ValueError):
            write_project_files(tmp_path / "staging", {"../evil": "x"})
        assert not (tmp_path / "evil").exists()


class TestFindBuildOutput:
    """Tests for find_build_output function."""

    def test_finds_matching_file(self, tmp_path):
        """Should find the file containing the build_id."""
        (tmp_path / "build_1_abc.apk").write_bytes(b"apk")
        found = find_build_output(tmp_path, "build_1_abc", "apk")
        assert found == tmp_path / "build_1_abc.apk"

    def test_ignores_other_builds(self, tmp_path):
        """Should not return another build's output."""
        (tmp_path / "build_2_def.apk").write_bytes(b"apk")
        assert find_build_output(tmp_path, "build_1_abc", "apk") is None

    def test_ignores_wrong_extension(self, tmp_path):
        """Should require the build type's extension."""
        (tmp_path / "build_1_abc.aab").write_bytes(b"aab")
        assert find_build_output(tmp_path, "build_1_abc", "apk") is None

    def test_prefers_ipa_over_zip(self, tmp_path):
        """Should prefer the most specific iOS extension."""
        (tmp_path / "build_1_abc.zip").write_bytes(b"zip")
        (tmp_path / "build_1_abc.ipa").write_bytes(b"ipa")
        assert find_build_output(tmp_path, "build_1_abc", "ipa").suffix == ".ipa"

    def test_missing_directory(self, tmp_path):
        """Should return None for a missing directory."""
        assert find_build_output(tmp_path / "nope", "build_1", "apk") is None


class TestComputeFileHash:
    """Tests for compute_file_hash function."""

    def test_matches_hashlib(self, tmp_path):
        """Should equal the sha256 of the file bytes."""
        path = tmp_path / "f.bin"
        path.write_bytes(b"x" * 100_000)
        assert compute_file_hash(path, chunk_size=4096) == (
            hashlib.sha256(b"x" * 100_000).hexdigest()
        )


class TestCleanup:
    """Tests for remove_tree and cleanup_transient_output."""

    def test_remove_tree_missing_is_ok(self, tmp_path):
        """Should report success for a missing path."""
        assert remove_tree(tmp_path / "missing") is True

    def test_cleanup_keeps_source_tree(self, tmp_path):
        """Should drop tool caches and output but keep sources."""
        staging = tmp_path / "staging"
        output = tmp_path / "output"
        write_project_files(
            staging,
            {
                "lib/main.dart": "x",
                "build/app.apk": "x",
                ".dart_tool/cache": "x",
            },
        )
        output.mkdir()
        (output / "b.apk").write_bytes(b"x")

        cleanup_transient_output(staging, output)

        assert (staging / "lib" / "main.dart").exists()
        assert not (staging / "build").exists()
        assert not (staging / ".dart_tool").exists()
        assert not output.exists()
