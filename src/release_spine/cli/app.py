"""
Root Typer application for the release-spine CLI.

The release launcher invokes one of two commands with no arguments::

    release-spine migrate
    release-spine migrate-and-seed

Everything else comes from ``RELEASE_SPINE_*`` environment variables, which
the global options below override.  The process exit status is the run's
exit code.
"""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from release_spine.config import ReleaseConfig
from release_spine.controller import Operation, ReleaseTask
from release_spine.errors import ConfigError, ExitCode
from release_spine.logging import configure_logging, flush_logging, get_logger
from release_spine.settings import ReleaseSettings

app = typer.Typer(
    name="release-spine",
    help="release-spine: prepare data stores before a release starts serving.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

err_console = Console(stderr=True)
logger = get_logger(__name__)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from release_spine import __version__

        typer.echo(f"release-spine {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Release configuration file (default: $RELEASE_SPINE_CONFIG or release.toml).",
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING or ERROR."),
    json_logs: bool | None = typer.Option(
        None,
        "--json-logs/--console-logs",
        help="Force JSON or console log output (default: JSON unless on a terminal).",
    ),
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """release-spine: migrate and seed stores as a one-shot release task."""
    overrides: dict[str, object] = {}
    if config is not None:
        overrides["config_path"] = config
    if log_level is not None:
        overrides["log_level"] = log_level
    if json_logs is not None:
        overrides["json_logs"] = json_logs
    try:
        ctx.obj = ReleaseSettings(**overrides)
    except ValidationError as exc:
        err_console.print(f"[bold red]Error[/bold red] (CONFIG): invalid settings: {escape(str(exc))}")
        raise typer.Exit(code=int(ExitCode.CONFIG)) from exc


def _run(ctx: typer.Context, operation: Operation) -> None:
    settings: ReleaseSettings = ctx.obj
    configure_logging(
        level=settings.log_level,
        json_format=settings.json_logs,
        service=settings.service_name,
    )

    try:
        config = ReleaseConfig.from_toml(settings.config_path)
    except ConfigError as exc:
        summary = f"{operation.value} failed while trying to load configuration: {exc.message}"
        logger.error("failed", summary=summary, **exc.to_dict())
        flush_logging()
        err_console.print(f"[bold red]Error[/bold red] (CONFIG): {escape(summary)}")
        raise typer.Exit(code=int(exc.exit_code)) from exc

    report = ReleaseTask(config).run(operation)
    if not report.succeeded:
        err_console.print(f"[bold red]Error[/bold red] ({report.failed_stage}): {escape(report.summary)}")
    raise typer.Exit(code=report.exit_code or 0)


@app.command("migrate")
def migrate(ctx: typer.Context) -> None:
    """Apply every pending migration to every configured store."""
    _run(ctx, Operation.MIGRATE)


@app.command("migrate-and-seed")
def migrate_and_seed(ctx: typer.Context) -> None:
    """Migrate every store, then run each store's seed if it has one."""
    _run(ctx, Operation.MIGRATE_AND_SEED)
