"""Thin CLI wrapper for buildchain.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules; pipeline progress is
rendered from the build event stream.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from buildchain import __version__
from buildchain.builds.service import DEFAULT_OUTPUT_PATH
from buildchain.config import get_settings, print_settings_json
from buildchain.recipes.io import DEFAULT_CONFIG_PATH
from buildchain.types import BuildEvent, EventKind, SourceKind

app = typer.Typer(
    name="buildchain",
    help="buildchain - reproducible builds in disposable LXD containers",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"buildchain version {__version__}")
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
) -> None:
    """buildchain - reproducible builds in disposable LXD containers."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


def print_json(data: Any) -> None:
    """Print data as JSON without markup, highlighting or line wrapping."""
    console.print(
        json.dumps(data, indent=2), markup=False, highlight=False, soft_wrap=True
    )


def print_event(event: BuildEvent) -> None:
    """Render a pipeline event on the console."""
    message = escape(event.message)
    if event.kind is EventKind.STAGE_STARTED:
        console.print(f"[dim]» {event.stage.value}[/dim]")
    elif event.kind is EventKind.STAGE_FINISHED:
        console.print(f"[green]✓ {event.stage.value}[/green]")
    elif event.kind is EventKind.CACHE_HIT:
        console.print(f"  [blue]{message}[/blue]")
    elif event.kind is EventKind.CACHE_MISS:
        console.print(f"  [yellow]{message}[/yellow]")
    else:
        console.print(f"  {message}")


@app.command()
def build(
    source_url: Annotated[
        str, typer.Argument(help="Git URL (optionally #rev), archive or directory")
    ],
    kind: Annotated[
        SourceKind,
        typer.Option("--kind", "-k", help="Source kind"),
    ] = SourceKind.GIT,
    config_path: Annotated[
        str,
        typer.Option("--config", "-c", help="Build configuration file in the source"),
    ] = DEFAULT_CONFIG_PATH,
    output: Annotated[
        Path,
        typer.Option("--output", "-o", help="Build output directory"),
    ] = Path(DEFAULT_OUTPUT_PATH),
    remote: Annotated[
        str | None,
        typer.Option("--remote", "-r", help="Name of remote LXD server"),
    ] = None,
    record: Annotated[
        bool,
        typer.Option("--record/--no-record", help="Record the build in history"),
    ] = True,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output result as JSON"),
    ] = False,
) -> None:
    """Build a source and place artifacts plus manifest.json in the output."""
    from buildchain.builds.service import (
        BuildFailedError,
        BuildRequest,
        build_and_record,
        run_pipeline,
    )
    from buildchain.sandbox.base import Location
    from buildchain.sandbox.lxd import LxdBackend
    from buildchain.sources.fetch import Source

    settings = get_settings()
    location = Location(remote)
    backend = LxdBackend(settings.lxc_binary, timeout=settings.command_timeout)
    request = BuildRequest(
        source=Source(kind=kind, url=source_url),
        config_path=config_path,
        output_path=output,
        location=location,
    )

    events: list[BuildEvent] = []
    emit = events.append if json_output else print_event

    if not json_output:
        console.print(
            f"[bold]buildchain: building {escape(source_url)} "
            f"{location.describe()}[/bold]"
        )

    failure: BuildFailedError | None = None
    try:
        if record and settings.record_builds:
            from buildchain.db import get_session, open_history

            with get_session(open_history(settings.db_url)) as session:
                try:
                    _, outcome = build_and_record(
                        session, request, backend, settings=settings, emit=emit
                    )
                except BuildFailedError as e:
                    # Leave the block normally so the failed record is committed
                    failure = e
        else:
            outcome = run_pipeline(request, backend, settings=settings, emit=emit)
    except BuildFailedError as e:
        failure = e

    if failure is not None:
        if json_output:
            output_data = {
                "success": False,
                "stage": failure.stage.value,
                "code": failure.code,
                "message": str(failure),
                "workspace_path": (
                    str(failure.workspace_path) if failure.workspace_path else None
                ),
                "events": [event.to_dict() for event in events],
            }
            print_json(output_data)
        else:
            err_console.print(f"[red]buildchain: {escape(str(failure))}[/red]")
            if failure.workspace_path:
                err_console.print(f"Build results kept in {failure.workspace_path}")
        raise typer.Exit(code=1)

    if json_output:
        output_data = {
            "success": True,
            "config_name": outcome.config_name,
            "source_time": outcome.source_time,
            "output_path": str(outcome.output_path),
            "environment_image": outcome.environment.image,
            "cache_hit": outcome.environment.cache_hit,
            "manifest": outcome.manifest.to_dict(),
            "events": [event.to_dict() for event in events],
        }
        print_json(output_data)
    else:
        console.print(
            f"[bold green]buildchain: placed results in {outcome.output_path}"
            f"[/bold green] ({len(outcome.manifest.files)} artifacts)"
        )


@app.command()
def identity(
    config_file: Annotated[Path, typer.Argument(help="Build configuration file")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the environment identity and image name of a configuration."""
    from buildchain.builds.identity import (
        compute_environment_identity,
        environment_image_name,
    )
    from buildchain.recipes.io import ConfigLoadError, load_config

    try:
        config = load_config(config_file)
    except ConfigLoadError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None

    env_identity = compute_environment_identity(config)
    image = environment_image_name(config, env_identity)

    if json_output:
        print_json({"name": config.name, "identity": env_identity, "image": image})
    else:
        console.print(f"Name:     {config.name}")
        console.print(f"Base:     {config.base}")
        console.print(f"Identity: {env_identity}")
        console.print(f"Image:    {image}")


@app.command()
def verify(
    output_dir: Annotated[Path, typer.Argument(help="Build output directory")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Re-hash a build output and compare it with its manifest."""
    from buildchain.builds.manifest import ManifestError, verify_manifest

    try:
        result = verify_manifest(output_dir)
    except ManifestError as e:
        err_console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        print_json(
            {
                "ok": result.ok,
                "missing": result.missing,
                "unexpected": result.unexpected,
                "mismatched": result.mismatched,
            }
        )
    elif result.ok:
        console.print(f"[green]✓ {output_dir} matches its manifest[/green]")
    else:
        console.print(f"[red]✗ {output_dir} does not match its manifest[/red]")
        for label, paths in (
            ("Missing", result.missing),
            ("Unexpected", result.unexpected),
            ("Mismatched", result.mismatched),
        ):
            for path in paths:
                console.print(f"  {label}: {escape(path)}")

    if not result.ok:
        raise typer.Exit(code=1)


@app.command()
def history(
    name: Annotated[
        str | None,
        typer.Option("--name", "-n", help="Filter by configuration name"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 20,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List recorded builds, newest first."""
    from buildchain.builds.service import list_builds
    from buildchain.db import get_session, open_history
    from buildchain.types import BuildStatus

    build_status: BuildStatus | None = None
    if status is not None:
        try:
            build_status = BuildStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    with get_session(open_history()) as session:
        builds = list_builds(session, config_name=name, status=build_status, limit=limit)

        if json_output:
            output = [
                {
                    "id": b.id,
                    "config_name": b.config_name,
                    "status": b.status,
                    "source_kind": b.source_kind,
                    "source_url": b.source_url,
                    "source_time": b.source_time,
                    "environment_image": b.environment_image,
                    "is_cache_hit": b.is_cache_hit,
                    "output_path": b.output_path,
                    "manifest_digest": b.manifest_digest,
                    "error_stage": b.error_stage,
                    "error_message": b.error_message,
                }
                for b in builds
            ]
            print_json(output)
            return

        if not builds:
            console.print("[yellow]No builds recorded[/yellow]")
            return

        console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
        console.print()
        for b in builds:
            color = "green" if b.is_succeeded() else "red"
            console.print(
                f"  [{color}]#{b.id} {b.config_name or '?'} ({b.status})[/{color}]"
            )
            console.print(f"    Source: {escape(b.source_url)} [{b.source_kind}]")
            if b.environment_image:
                hit = " (cached)" if b.is_cache_hit else ""
                console.print(f"    Environment: {b.environment_image}{hit}")
            if b.output_path:
                console.print(f"    Output: {b.output_path}")
            if b.error_message:
                console.print(
                    f"    Error ({b.error_stage}): {escape(b.error_message)}"
                )
            console.print()


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
        console.print(
            print_settings_json(settings), markup=False, highlight=False, soft_wrap=True
        )
    else:
        tmp_dir_display = (
            str(settings.tmp_dir) if settings.tmp_dir else "(output parent directory)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Temp directory:      {tmp_dir_display}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Record builds:       {settings.record_builds}")
        console.print(f"  LXD client:          {settings.lxc_binary}")
        console.print(f"  Git client:          {settings.git_binary}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Command timeout:     {settings.command_timeout}")
        console.print(f"  Download timeout:    {settings.download_timeout}")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")


if __name__ == "__main__":
    app()
