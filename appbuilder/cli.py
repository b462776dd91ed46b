"""Thin CLI wrapper for appbuilder.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
from typing import Annotated, Any

import typer
from rich.console import Console

from appbuilder import __version__
from appbuilder.config import configure_logging, get_settings, print_settings_json

app = typer.Typer(
    name="appbuild",
    help="App Build Engine - build, cache and track app artifacts",
    no_args_is_help=True,
)
console = Console()

STATUS_COLORS = {
    "completed": "green",
    "failed": "red",
    "building": "blue",
    "queued": "yellow",
    "expired": "dim",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"appbuilder version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level"),
    ] = None,
) -> None:
    """App Build Engine - build, cache and track app artifacts."""
    configure_logging(log_level.upper() if log_level else None)


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2))


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Staging directory:   {settings.staging_dir}")
        console.print(f"  Output directory:    {settings.output_dir}")
        console.print(f"  Artifacts directory: {settings.artifacts_dir}")
        console.print(f"  Apps directory:      {settings.apps_dir}")
        console.print()
        console.print("[bold]Builders:[/bold]")
        console.print(f"  Container image:     {settings.container_image}")
        console.print(f"  iOS image:           {settings.ios_image}")
        console.print(f"  iOS cloud image:     {settings.ios_cloud_image}")
        console.print(f"  Max builds:          {settings.max_concurrent_builds}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build timeout:       {settings.build_timeout}")
        console.print(f"  iOS build timeout:   {settings.ios_build_timeout}")
        console.print(f"  Kill grace period:   {settings.kill_grace_period}")
        console.print()
        console.print("[bold]Cache and retention:[/bold]")
        console.print(f"  Cache freshness:     {settings.cache_freshness_days} days")
        console.print(f"  Retention window:    {settings.retention_days} days")
        console.print(f"  Kept per app:        {settings.retention_keep}")


builders_app = typer.Typer(help="Inspect build environments")
app.add_typer(builders_app, name="builders")


@builders_app.command("check")
def builders_check(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Check builder image and iOS toolchain availability."""
    from appbuilder.builds.platforms import ContainerBuildManager, NativeBuildManager

    settings = get_settings()
    container = ContainerBuildManager.from_settings(settings)
    native = NativeBuildManager.from_settings(settings)

    report = {
        "container": {"image": container.image, "available": container.check_image()},
        "ios": native.check_environment(),
    }

    if json_output:
        _echo_json(report)
        return

    image_ok = report["container"]["available"]
    console.print("[bold]Container builder:[/bold]")
    console.print(
        f"  {container.image}: "
        + ("[green]available[/green]" if image_ok else "[red]missing[/red]")
    )
    ios = report["ios"]
    console.print("[bold]iOS builder:[/bold]")
    console.print(f"  Mode:                {ios['mode']}")
    console.print(f"  Xcode:               {ios['xcode_path'] or 'not found'}")
    console.print(f"  Cloud credentials:   {ios['cloud_available']}")


builds_app = typer.Typer(help="Start and inspect builds")
app.add_typer(builds_app, name="builds")


def _print_build(b: Any) -> None:
    status_color = STATUS_COLORS.get(b.status, "white")
    console.print(f"  [{status_color}]{b.build_id}[/{status_color}]")
    console.print(f"    App: {b.app_id}")
    console.print(f"    Type: {b.build_type} ({b.build_mode})")
    console.print(f"    Status: {b.status}")
    console.print(f"    Created: {b.created_at.isoformat() if b.created_at else 'N/A'}")
    if b.cached_from_build_id:
        console.print(f"    Cached from: {b.cached_from_build_id}")
    if b.download_url:
        console.print(f"    Download: {b.download_url}", soft_wrap=True)
    if b.error_message:
        console.print(f"    Error: {b.error_message}")
    console.print()


@builds_app.command("start")
def builds_start(
    app_id: Annotated[str, typer.Argument(help="App ID to build")],
    build_type: Annotated[
        str,
        typer.Option("--type", "-t", help="Build type (apk/aab/ipa/source_code)"),
    ] = "apk",
    build_mode: Annotated[
        str,
        typer.Option("--mode", "-m", help="Build mode (debug/release)"),
    ] = "release",
    target_platform: Annotated[
        str | None,
        typer.Option("--platform", "-p", help="Android target platform"),
    ] = None,
    user_id: Annotated[
        str,
        typer.Option("--user", "-u", help="User ID recorded on the build"),
    ] = "cli",
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build an app in the foreground, reusing a cached build when possible."""
    from appbuilder.builds.service import build_orchestrator
    from appbuilder.db import create_all_tables, get_engine, get_session_factory
    from appbuilder.errors import BuildEngineError

    settings = get_settings()
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    orchestrator = build_orchestrator(settings, get_session_factory(engine))

    request = {
        "app_id": app_id,
        "build_type": build_type,
        "build_mode": build_mode,
        "target_platform": target_platform,
    }
    try:
        build_id = orchestrator.start_build(request, user_id=user_id)
        if not json_output:
            console.print(f"Build [bold]{build_id}[/bold] started")
        record = orchestrator.wait_for_build(build_id)
    except BuildEngineError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        orchestrator.shutdown(cancel_active=True)
        raise typer.Exit(code=130) from None
    orchestrator.shutdown(cancel_active=False)

    if json_output:
        _echo_json(record.to_dict())
    else:
        _print_build(record)
    if record.status != "completed":
        raise typer.Exit(code=1)


@builds_app.command("list")
def builds_list(
    app_id: Annotated[str, typer.Argument(help="App ID whose builds to list")],
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List an app's builds, newest first."""
    from appbuilder.builds.service import list_build_records
    from appbuilder.db import (
        create_all_tables,
        get_engine,
        get_session,
        get_session_factory,
    )

    engine = get_engine(get_settings().db_url)
    create_all_tables(engine)

    with get_session(get_session_factory(engine)) as session:
        builds = list_build_records(session, app_id=app_id, limit=limit)

        if not builds:
            if json_output:
                _echo_json([])
            else:
                console.print("[yellow]No build records found[/yellow]")
            return

        if json_output:
            _echo_json([b.to_dict() for b in builds])
        else:
            console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
            console.print()
            for b in builds:
                _print_build(b)


@builds_app.command("status")
def builds_status(
    build_id: Annotated[str, typer.Argument(help="Build ID to show")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the status of a build."""
    from appbuilder.builds.service import get_build_record
    from appbuilder.db import (
        create_all_tables,
        get_engine,
        get_session,
        get_session_factory,
    )
    from appbuilder.errors import NotFoundError

    engine = get_engine(get_settings().db_url)
    create_all_tables(engine)

    with get_session(get_session_factory(engine)) as session:
        try:
            build = get_build_record(session, build_id)
        except NotFoundError as e:
            if json_output:
                _echo_json({"code": e.code, "message": str(e)})
            else:
                console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from None

        if json_output:
            _echo_json(build.to_dict())
        else:
            _print_build(build)


@builds_app.command("cleanup")
def builds_cleanup(
    app_id: Annotated[
        str | None,
        typer.Option("--app", "-a", help="Only clean up this app's builds"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Expire old builds beyond the per-app retention count."""
    from appbuilder.builds.service import build_orchestrator
    from appbuilder.db import create_all_tables, get_engine, get_session_factory

    settings = get_settings()
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    orchestrator = build_orchestrator(settings, get_session_factory(engine))
    try:
        expired = orchestrator.cleanup_old_builds(app_id=app_id)
    finally:
        orchestrator.shutdown(cancel_active=False)

    if json_output:
        _echo_json({"expired": expired, "app_id": app_id})
    else:
        console.print(f"[green]Expired {expired} old build(s)[/green]")


if __name__ == "__main__":
    app()
