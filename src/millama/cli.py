from __future__ import annotations

from functools import partial
from pathlib import Path

import anyio
import typer

from . import __version__
from .config import DEFAULT_CONFIG_PATH, ConfigError, MillamaSettings, load_settings
from .logging import get_logger, setup_logging

logger = get_logger(__name__)

app = typer.Typer(
    add_completion=False,
    help="AI-powered Telegram reply drafts with operator approval.",
)

_CONFIG_OPTION = typer.Option(
    DEFAULT_CONFIG_PATH,
    "--config",
    "-c",
    help="Path to the TOML configuration file.",
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


def _load_or_exit(config: Path) -> MillamaSettings:
    try:
        settings, _ = load_settings(config)
    except ConfigError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from None
    return settings


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """Millama watches tracked users and drafts replies for your approval."""


@app.command()
def run(
    config: Path = _CONFIG_OPTION,
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging."),
) -> None:
    """Start the assistant."""
    setup_logging(debug=debug)
    settings = _load_or_exit(config)
    logger.info("startup.config_loaded", path=str(config), users=len(settings.users))

    from .bridge import run_main_loop

    try:
        anyio.run(partial(run_main_loop, settings), backend="asyncio")
    except KeyboardInterrupt:
        logger.info("shutdown.interrupted")


@app.command()
def check(config: Path = _CONFIG_OPTION) -> None:
    """Validate the configuration and list tracked users."""
    settings = _load_or_exit(config)
    typer.echo(f"config ok: {config}")
    typer.echo(
        f"model: {settings.ai.model} (temperature {settings.ai.temperature})"
    )
    typer.echo(
        f"debounce: {settings.settings.debounce_seconds}s, "
        f"history limit: {settings.settings.history_limit}"
    )
    if not settings.users:
        typer.echo("no tracked users configured")
        return
    for user in settings.users:
        typer.echo(f"- {user.name} ({user.id})")


if __name__ == "__main__":
    app()
