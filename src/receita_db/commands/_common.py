"""Shared utilities used across CLI command modules."""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

import click

from receita_db.errors import ConnectivityError


def _configure_logging(verbose: bool) -> None:
    """Configure logging for receita-db."""
    level = logging.DEBUG if verbose else logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
        force=True,
    )

    for logger_name in [
        "receita_db",
        "receita_db.staging",
        "receita_db.pipeline",
        "receita_db.consolidate",
        "receita_db.postgres",
    ]:
        logging.getLogger(logger_name).setLevel(level)

    # Suppress noisy third-party loggers
    for noisy_logger in [
        "httpcore",
        "httpx",
        "psycopg",
        "psycopg.pool",
        "uvicorn.access",
        "asyncio",
    ]:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


def _is_verbose(verbose: bool) -> bool:
    """A command's own -v, or the one given to the main group."""
    if verbose:
        return True
    ctx = click.get_current_context(silent=True)
    while ctx is not None:
        if ctx.obj and ctx.obj.get("verbose"):
            return True
        ctx = ctx.parent
    return False


def _resolve_staging_dir(staging_dir: Optional[str] = None) -> Path:
    """Explicit --staging-dir, then RECEITA_STAGING_DIR, then the default cache path."""
    from receita_db.staging import DEFAULT_STAGING_DIR

    if staging_dir:
        return Path(staging_dir)
    env = os.environ.get("RECEITA_STAGING_DIR")
    return Path(env) if env else DEFAULT_STAGING_DIR


def _open_database(database_url: Optional[str], schema: str):
    """Connect to PostgreSQL or fail with a readable CLI error."""
    from receita_db.postgres import PostgreSQL

    if not database_url:
        raise click.UsageError("Provide --database-url or set DATABASE_URL")
    try:
        return PostgreSQL(database_url, schema=schema)
    except ConnectivityError as e:
        raise click.ClickException(str(e))


database_url_option = click.option(
    "--database-url",
    envvar="DATABASE_URL",
    help="PostgreSQL URI (default: $DATABASE_URL)",
)
schema_option = click.option(
    "--schema",
    envvar="POSTGRES_SCHEMA",
    default="public",
    show_default=True,
    help="PostgreSQL schema (default: $POSTGRES_SCHEMA)",
)
verbose_option = click.option("-v", "--verbose", is_flag=True, help="Verbose output")
