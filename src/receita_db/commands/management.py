"""Database management commands: status, drop, extra indexes."""

from typing import Optional

import click

from receita_db.errors import NotFoundError, ReceitaDBError

from ._common import _configure_logging, _is_verbose, _open_database, database_url_option, schema_option, verbose_option


@click.command("status")
@database_url_option
@schema_option
@verbose_option
def db_status(database_url: Optional[str], schema: str, verbose: bool):
    """
    Show the last import date and the number of loaded companies.

    \b
    Examples:
        receita-db status
        receita-db status --schema receita
    """
    _configure_logging(_is_verbose(verbose))
    from receita_db.postgres import TOTAL_KEY, UPDATED_AT_KEY

    db = _open_database(database_url, schema)
    try:
        click.echo("\nReceita DB Status")
        click.echo("=" * 40)
        click.echo(f"Table: {db.company_table_full_name}")
        for label, key in (("Updated at", UPDATED_AT_KEY), ("Total", TOTAL_KEY)):
            try:
                value = db.meta_read(key)
            except NotFoundError:
                value = "unknown"
            click.echo(f"{label}: {value}")
    except ReceitaDBError as e:
        raise click.ClickException(str(e))
    finally:
        db.close()


@click.command("drop")
@database_url_option
@schema_option
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@verbose_option
def db_drop(database_url: Optional[str], schema: str, yes: bool, verbose: bool):
    """
    Drop the company table. Metadata is kept.

    \b
    Examples:
        receita-db drop
        receita-db drop --yes
    """
    _configure_logging(_is_verbose(verbose))

    db = _open_database(database_url, schema)
    try:
        if not yes:
            click.confirm(f"Drop {db.company_table_full_name}?", abort=True)
        db.drop()
        click.echo(f"Dropped {db.company_table_full_name}")
    except ReceitaDBError as e:
        raise click.ClickException(str(e))
    finally:
        db.close()


@click.command("create-indexes")
@click.argument("names", nargs=-1, required=True)
@database_url_option
@schema_option
@verbose_option
def db_create_indexes(names: tuple[str, ...], database_url: Optional[str], schema: str, verbose: bool):
    """
    Create GIN indexes over extra JSON fields of the company documents.

    Each NAME is a top-level field (capital_social) or a field inside a
    list of objects (qsa.nome_socio). All indexes are created in one
    transaction.

    \b
    Examples:
        receita-db create-indexes capital_social
        receita-db create-indexes qsa.nome_socio cnaes_secundarios.codigo
    """
    _configure_logging(_is_verbose(verbose))
    from receita_db.postgres import validate_indexes

    try:
        validate_indexes(list(names))
    except ReceitaDBError as e:
        raise click.ClickException(str(e))

    db = _open_database(database_url, schema)
    try:
        specs = db.create_extra_indexes(list(names))
    except ReceitaDBError as e:
        raise click.ClickException(str(e))
    finally:
        db.close()

    for spec in specs:
        click.echo(f"  {spec.name}  ({spec.path})")
    click.echo(f"{len(specs)} indexes ready on {db.company_table_full_name}")
