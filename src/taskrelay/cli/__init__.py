"""CLI module for taskrelay."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

import click

from taskrelay.config import get_config
from taskrelay.jobs.scheduler import JobScheduler
from taskrelay.logging import configure_logging

logger = logging.getLogger(__name__)


def _build_scheduler(
    config_path: Path | None,
    db_path: Path | None,
    log_level: str | None,
) -> JobScheduler:
    """Load configuration, set up logging and open the job store."""
    try:
        config = get_config(
            config_path=config_path, database_path=db_path, log_level=log_level
        )
    except ValueError as e:
        raise click.ClickException(f"Invalid configuration: {e}") from e

    configure_logging(config.logging)

    try:
        return JobScheduler.from_config(config)
    except (sqlite3.Error, OSError) as e:
        logger.warning("Failed to open job store: %s", e)
        raise click.ClickException(f"Failed to open job store: {e}") from e


@click.group()
@click.version_option(package_name="taskrelay")
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to the job database (default: ~/.taskrelay/jobs.db).",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to the config file (default: ~/.taskrelay/config.toml).",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    help="Override log level (default: info).",
)
@click.pass_context
def main(
    ctx: click.Context,
    db_path: Path | None,
    config_path: Path | None,
    log_level: str | None,
) -> None:
    """taskrelay - run and manage background jobs."""
    ctx.ensure_object(dict)

    # Preserve a scheduler passed in by tests
    if "scheduler" not in ctx.obj:
        ctx.obj["scheduler"] = _build_scheduler(config_path, db_path, log_level)
        ctx.call_on_close(ctx.obj["scheduler"].conn.close)


def _register_commands() -> None:
    from taskrelay.cli.jobs import jobs_group

    main.add_command(jobs_group)


_register_commands()
