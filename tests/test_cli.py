"""Tests for the CLI.

These tests run the Typer app in-process against a temporary database
and app directory configured through APPBUILD_* environment variables.
JSON output must have stable keys.
"""

import json
from datetime import timedelta
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from appbuilder import __version__
from appbuilder.builds.models import BuildRecord, utcnow
from appbuilder.builds.platforms import ContainerBuildManager, NativeBuildManager
from appbuilder.cli import app
from appbuilder.db import create_all_tables, get_engine, get_session_factory
from appbuilder.types import BuildOutcome

runner = CliRunner()

APP_YAML = """\
app:
  id: app-a
  name: Shop
  package_name: com.example.shop
  updated_at: "2024-05-01T10:00:00"
pages:
  - id: p1
    name: Home
    components:
      - id: c1
        component_type: text
        component_data:
          text: Hello
"""


@pytest.fixture
def env(tmp_path, monkeypatch):
    """Point all settings at a temp directory."""
    monkeypatch.setenv("APPBUILD_DB_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("APPBUILD_STAGING_DIR", str(tmp_path / "staging"))
    monkeypatch.setenv("APPBUILD_OUTPUT_DIR", str(tmp_path / "output"))
    monkeypatch.setenv("APPBUILD_ARTIFACTS_DIR", str(tmp_path / "artifacts"))
    monkeypatch.setenv("APPBUILD_APPS_DIR", str(tmp_path / "apps"))
    monkeypatch.setenv("APPBUILD_URL_SIGNING_KEY", "cli-secret")
    (tmp_path / "apps").mkdir()
    (tmp_path / "apps" / "app-a.yaml").write_text(APP_YAML)
    return tmp_path


@pytest.fixture
def seeded(env):
    """Insert one completed build and return its build_id."""
    engine = get_engine(f"sqlite:///{env / 'cli.db'}")
    create_all_tables(engine)
    with get_session_factory(engine).begin() as session:
        created = utcnow() - timedelta(days=1)
        session.add(
            BuildRecord(
                build_id="build_1_seed",
                app_id="app-a",
                user_id="user-1",
                build_type="apk",
                build_mode="release",
                build_hash="a" * 64,
                status="completed",
                download_url="/artifacts/builds/shop/build_1_seed/build_1_seed.apk",
                artifact_path="builds/shop/build_1_seed/build_1_seed.apk",
                created_at=created,
                completed_at=created,
            )
        )
    engine.dispose()
    return "build_1_seed"


def invoke_json(args: list[str]):
    """Invoke a command with quiet logging and parse its JSON output."""
    result = runner.invoke(app, ["--log-level", "critical", *args])
    return result, json.loads(result.stdout)


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "App Build Engine" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        """CLI -V should print version and exit 0."""
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_no_args_shows_help(self) -> None:
        """CLI with no args should show help."""
        result = runner.invoke(app, [])
        assert "Usage:" in result.stdout


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_command(self, env) -> None:
        """CLI config should show all configuration sections."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        assert "Paths:" in result.stdout
        assert "Builders:" in result.stdout
        assert "Cache and retention:" in result.stdout

    def test_config_json(self, env) -> None:
        """CLI config --json should output settings without secrets."""
        result, data = invoke_json(["config", "--json"])
        assert result.exit_code == 0
        assert data["db_url"].endswith("cli.db")
        assert data["retention_keep"] == 5
        assert "url_signing_key" not in data
        assert "github_token" not in data
        assert "cli-secret" not in result.stdout


class TestCLIBuilders:
    """Test CLI builders commands."""

    def test_builders_check_json(self, env) -> None:
        """builders check --json should report both builders."""
        with (
            patch.object(ContainerBuildManager, "check_image", return_value=False),
            patch.object(NativeBuildManager, "is_macos", return_value=False),
        ):
            result, data = invoke_json(["builders", "check", "--json"])

        assert result.exit_code == 0
        assert data["container"] == {
            "image": "appbuilder/flutter-builder:latest",
            "available": False,
        }
        assert data["ios"]["mode"] == "cloud"
        assert data["ios"]["xcode_path"] is None


class TestCLIBuilds:
    """Test CLI builds commands."""

    def test_list_empty_json(self, env) -> None:
        """builds list --json with no builds should output an empty list."""
        result, data = invoke_json(["builds", "list", "app-a", "--json"])
        assert result.exit_code == 0
        assert data == []

    def test_list_json(self, seeded) -> None:
        """builds list --json should output record dicts."""
        result, data = invoke_json(["builds", "list", "app-a", "--json"])
        assert result.exit_code == 0
        assert [b["build_id"] for b in data] == [seeded]
        assert data[0]["status"] == "completed"

    def test_list_human(self, seeded) -> None:
        result = runner.invoke(
            app, ["--log-level", "critical", "builds", "list", "app-a"]
        )
        assert result.exit_code == 0
        assert seeded in result.stdout

    def test_status_json(self, seeded) -> None:
        """builds status --json should output the record."""
        result, data = invoke_json(["builds", "status", seeded, "--json"])
        assert result.exit_code == 0
        assert data["build_id"] == seeded
        assert data["app_id"] == "app-a"

    def test_status_missing_json(self, env) -> None:
        """builds status for an unknown build should fail with a code."""
        result, data = invoke_json(["builds", "status", "build_missing", "--json"])
        assert result.exit_code == 1
        assert data["code"] == "not_found"
        assert "build_missing" in data["message"]

    def test_cleanup_json(self, seeded) -> None:
        """builds cleanup --json should report the number expired."""
        result, data = invoke_json(["builds", "cleanup", "--app", "app-a", "--json"])
        assert result.exit_code == 0
        assert data == {"expired": 0, "app_id": "app-a"}

    def test_start_json(self, env) -> None:
        """builds start --json should build in the foreground."""

        def fake_start(self, options, on_complete, on_progress=None):
            output = options.output_path / f"{options.build_id}-release.apk"
            output.write_bytes(b"apk")
            on_complete(
                BuildOutcome(
                    build_id=options.build_id, success=True, output_file=output
                )
            )

        with patch.object(ContainerBuildManager, "start_build", fake_start):
            result, data = invoke_json(["builds", "start", "app-a", "--json"])

        assert result.exit_code == 0
        assert data["status"] == "completed"
        assert data["app_id"] == "app-a"
        assert data["user_id"] == "cli"
        assert (env / "artifacts" / "builds" / "shop").is_dir()

    def test_start_failed_build_exits_nonzero(self, env) -> None:
        """builds start should exit 1 when the build fails."""

        def fake_start(self, options, on_complete, on_progress=None):
            on_complete(
                BuildOutcome(
                    build_id=options.build_id,
                    success=False,
                    error="Build failed with exit code 2",
                    error_code="build_failed",
                )
            )

        with patch.object(ContainerBuildManager, "start_build", fake_start):
            result, data = invoke_json(["builds", "start", "app-a", "--json"])

        assert result.exit_code == 1
        assert data["status"] == "failed"
        assert "exit code 2" in data["error_message"]

    def test_start_unknown_app(self, env) -> None:
        """builds start for an unknown app should exit 1."""
        result = runner.invoke(
            app, ["--log-level", "critical", "builds", "start", "ghost", "--json"]
        )
        assert result.exit_code == 1
        assert "ghost" in result.stdout
