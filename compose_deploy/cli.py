"""Thin CLI wrapper for compose_deploy.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.filesize import decimal
from rich.logging import RichHandler

from compose_deploy import __version__
from compose_deploy.config import Settings, get_settings, print_settings_json

app = typer.Typer(
    name="compose-deploy",
    help="Build multi-container projects and deploy them as releases",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

DEFAULT_ARCH = "amd64"
DEFAULT_DEVICE_TYPE = "generic-amd64"


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"compose-deploy version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Route log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


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
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """Build multi-container projects and deploy them as releases."""
    settings = get_settings()
    setup_logging("DEBUG" if verbose else settings.log_level)


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
        console.print(print_settings_json(settings), soft_wrap=True)
    else:
        token_display = settings.token_endpoint or "(none)"
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Emulator cache:      {settings.bin_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Registry:[/bold]")
        console.print(f"  Registry host:       {settings.registry_host}")
        console.print(f"  Token endpoint:      {token_display}")
        console.print()
        console.print("[bold]Concurrency:[/bold]")
        console.print(f"  Max builds:          {settings.max_concurrent_builds}")
        console.print(f"  Max pushes:          {settings.max_concurrent_pushes}")
        console.print()
        console.print("[bold]Push retry:[/bold]")
        console.print(f"  Attempts:            {settings.push_retries}")
        console.print(f"  Initial delay:       {settings.push_retry_delay}s")
        console.print(f"  Backoff:             {settings.push_retry_backoff}x")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Download timeout:    {settings.download_timeout}")
        console.print(f"  Token timeout:       {settings.token_timeout}")


SourceArg = Annotated[
    Path,
    typer.Argument(
        exists=True, file_okay=False, dir_okay=True, help="Project directory"
    ),
]
ArchOpt = Annotated[str, typer.Option("--arch", "-A", help="Target architecture")]
DeviceTypeOpt = Annotated[
    str, typer.Option("--device-type", "-d", help="Target device type")
]
EmulatedOpt = Annotated[
    bool, typer.Option("--emulated", "-e", help="Build through the emulator")
]
LogsOpt = Annotated[
    bool, typer.Option("--logs", help="Print build output line by line")
]
NoGitignoreOpt = Annotated[
    bool,
    typer.Option(
        "--nogitignore", "-G", help="Ignore .gitignore files; use only .dockerignore"
    ),
]
ConvertEolOpt = Annotated[
    bool,
    typer.Option("--convert-eol", "-l", help="Convert CRLF line endings (Windows)"),
]
DockerfileOpt = Annotated[
    str | None,
    typer.Option("--dockerfile", help="Dockerfile path, relative to the source"),
]
ProjectNameOpt = Annotated[
    str | None,
    typer.Option("--project-name", "-n", help="Project name (default: directory)"),
]


def _run_build(
    settings: Settings,
    source: Path,
    arch: str,
    device_type: str,
    emulated: bool,
    logs: bool,
    nogitignore: bool,
    convert_eol: bool,
    dockerfile: str | None,
    project_name: str | None,
):
    """Load a project, build it, and return (project, daemon, images)."""
    from compose_deploy.builds.daemon import DaemonError, DockerDaemon
    from compose_deploy.builds.scheduler import ServiceBuildError, build_project
    from compose_deploy.builds.tasks import BuildTaskError
    from compose_deploy.compose.project import CompositionError, load_project
    from compose_deploy.context.tarball import ContextPackagingError
    from compose_deploy.emulation.qemu import EmulationError

    try:
        project = load_project(source, project_name, dockerfile)
        daemon = DockerDaemon()
        images = build_project(
            daemon,
            project.path,
            project.name,
            project.composition,
            arch,
            device_type,
            emulated=emulated,
            inline_logs=logs or not console.is_terminal,
            convert_eol=convert_eol,
            dockerfile_path=dockerfile,
            nogitignore=nogitignore,
            settings=settings,
            console=console,
        )
    except ServiceBuildError as e:
        err_console.print(f"[red]Build failed for service {e.service_name}: {e}[/red]")
        raise typer.Exit(code=1) from None
    except (
        BuildTaskError,
        CompositionError,
        ContextPackagingError,
        DaemonError,
        EmulationError,
    ) as e:
        err_console.print(f"[red]{e} ({e.code})[/red]")
        raise typer.Exit(code=1) from None

    return project, daemon, images


@app.command()
def build(
    source: SourceArg,
    arch: ArchOpt = DEFAULT_ARCH,
    device_type: DeviceTypeOpt = DEFAULT_DEVICE_TYPE,
    emulated: EmulatedOpt = False,
    logs: LogsOpt = False,
    nogitignore: NoGitignoreOpt = False,
    convert_eol: ConvertEolOpt = False,
    dockerfile: DockerfileOpt = None,
    project_name: ProjectNameOpt = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build every service of a project."""
    settings = get_settings()
    _, _, images = _run_build(
        settings,
        source,
        arch,
        device_type,
        emulated,
        logs,
        nogitignore,
        convert_eol,
        dockerfile,
        project_name,
    )

    if json_output:
        output = [
            {
                "service_name": image.service_name,
                "name": image.name,
                "size": image.size,
                "project_type": image.project_type,
            }
            for image in images
        ]
        console.print(json.dumps(output, indent=2), soft_wrap=True)
    else:
        for image in images:
            console.print(
                f"[green]✓[/green] {image.service_name}: {image.name} "
                f"({decimal(image.size or 0)})"
            )


@app.command()
def deploy(
    source: SourceArg,
    app_id: Annotated[int, typer.Argument(help="Application ID")],
    arch: ArchOpt = DEFAULT_ARCH,
    device_type: DeviceTypeOpt = DEFAULT_DEVICE_TYPE,
    emulated: EmulatedOpt = False,
    logs: LogsOpt = False,
    nogitignore: NoGitignoreOpt = False,
    convert_eol: ConvertEolOpt = False,
    dockerfile: DockerfileOpt = None,
    project_name: ProjectNameOpt = None,
    user_id: Annotated[
        int | None,
        typer.Option("--user-id", help="User ID recorded on the release"),
    ] = None,
    skip_log_upload: Annotated[
        bool,
        typer.Option("--skip-log-upload", help="Do not store build logs"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build a project and deploy it as a release of an application."""
    from compose_deploy.builds.daemon import DaemonError
    from compose_deploy.db import open_release_store
    from compose_deploy.release.backend import SqlReleaseBackend
    from compose_deploy.release.deploy import deploy_project
    from compose_deploy.release.registry import ImageLocationError
    from compose_deploy.types import ReleaseStatus

    settings = get_settings()
    project, daemon, images = _run_build(
        settings,
        source,
        arch,
        device_type,
        emulated,
        logs,
        nogitignore,
        convert_eol,
        dockerfile,
        project_name,
    )

    backend = SqlReleaseBackend(
        open_release_store(settings.db_url), settings.registry_host
    )

    try:
        release = deploy_project(
            daemon,
            backend,
            project.composition,
            images,
            app_id,
            user_id=user_id,
            skip_log_upload=skip_log_upload,
            settings=settings,
            console=console,
        )
    except (DaemonError, ImageLocationError) as e:
        err_console.print(f"[red]Deploy failed: {e} ({e.code})[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        console.print(
            release.model_dump_json(indent=2, exclude={"composition"}), soft_wrap=True
        )
    elif release.status is ReleaseStatus.SUCCESS:
        console.print(f"[green]✓ Release {release.commit} deployed[/green]")
    else:
        console.print(f"[red]✗ Release {release.commit} failed[/red]")

    if release.status is not ReleaseStatus.SUCCESS:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
