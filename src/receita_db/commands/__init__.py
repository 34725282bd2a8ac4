"""CLI commands package: main click group and command registration."""

import click

from receita_db import __version__


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Verbose output")
@click.pass_context
def main(ctx: click.Context, verbose: bool):
    """
    Consolidate the CNPJ open data into PostgreSQL and query it.

    \b
    Commands:
        transform       Import registry files into PostgreSQL
        create-indexes  Index extra JSON fields
        drop            Drop the company table
        get             Show one company by CNPJ
        search          Search companies
        status          Show the last import date and totals
        serve           Start the HTTP API

    \b
    Examples:
        receita-db transform data/
        receita-db create-indexes capital_social qsa.nome_socio
        receita-db get 33.683.111/0002-80
        receita-db search --uf SP --cnae 6201501
        receita-db serve --port 8000
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


# Register all commands
from .imports import transform

main.add_command(transform)

from .search import db_get, db_search

main.add_command(db_get)
main.add_command(db_search)

from .management import db_create_indexes, db_drop, db_status

main.add_command(db_status)
main.add_command(db_drop)
main.add_command(db_create_indexes)

from .serve import serve_cmd

main.add_command(serve_cmd)
