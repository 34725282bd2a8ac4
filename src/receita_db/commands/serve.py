"""Serve command - start the HTTP API."""

from typing import Optional

import click

from ._common import _configure_logging, _is_verbose, database_url_option, schema_option


@click.command("serve")
@click.option("--port", default=8000, help="Port to listen on.")
@click.option("--host", default="0.0.0.0", help="Host to bind to.")
@click.option("--no-warmup", is_flag=True, help="Connect to the database on the first request instead of at startup.")
@database_url_option
@schema_option
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def serve_cmd(port: int, host: str, no_warmup: bool, database_url: Optional[str], schema: str, verbose: bool):
    """Start the HTTP API."""
    from receita_db.errors import ConnectivityError
    from receita_db.server import run_server

    _configure_logging(_is_verbose(verbose))
    try:
        run_server(
            host=host,
            port=port,
            database_url=database_url,
            schema=schema,
            do_warmup=not no_warmup,
            verbose=verbose,
        )
    except ConnectivityError as e:
        raise click.ClickException(str(e))
