"""Lookup and search commands."""

from typing import Optional

import click
import orjson
import pydantic

from receita_db.errors import NotFoundError, ReceitaDBError

from ._common import _configure_logging, _is_verbose, _open_database, database_url_option, schema_option, verbose_option


def _echo_json(data) -> None:
    click.echo(orjson.dumps(data, option=orjson.OPT_INDENT_2).decode())


@click.command("get")
@click.argument("number")
@database_url_option
@schema_option
@verbose_option
def db_get(number: str, database_url: Optional[str], schema: str, verbose: bool):
    """
    Print the JSON document of one CNPJ.

    \b
    Examples:
        receita-db get 33683111000280
        receita-db get 33.683.111/0002-80
    """
    _configure_logging(_is_verbose(verbose))
    from receita_db import cnpj

    try:
        key = cnpj.normalize_full(number)
    except ReceitaDBError as e:
        raise click.BadParameter(str(e), param_hint="NUMBER")
    if not cnpj.is_valid(key):
        raise click.BadParameter(f"invalid CNPJ: {number}", param_hint="NUMBER")

    db = _open_database(database_url, schema)
    try:
        _echo_json(orjson.loads(db.get_company(key)))
    except NotFoundError:
        raise click.ClickException(f"CNPJ {cnpj.format_cnpj(key)} not found")
    except ReceitaDBError as e:
        raise click.ClickException(str(e))
    finally:
        db.close()


@click.command("search")
@click.option("--uf", multiple=True, help="State code, e.g. SP (repeatable)")
@click.option("--cnae-fiscal", type=int, multiple=True, help="Main activity code (repeatable)")
@click.option("--cnae", type=int, multiple=True, help="Main or secondary activity code (repeatable)")
@click.option("--cnpf", multiple=True, help="Partner CPF or CNPJ (repeatable)")
@click.option("--cursor", type=int, help="Cursor returned by the previous page")
@click.option("--limit", type=int, default=20, show_default=True, help="Results per page (1-1000)")
@database_url_option
@schema_option
@verbose_option
def db_search(
    uf: tuple[str, ...],
    cnae_fiscal: tuple[int, ...],
    cnae: tuple[int, ...],
    cnpf: tuple[str, ...],
    cursor: Optional[int],
    limit: int,
    database_url: Optional[str],
    schema: str,
    verbose: bool,
):
    """
    Search companies and print one page of results as JSON.

    \b
    Examples:
        receita-db search --uf SP --cnae 6201501
        receita-db search --cnpf "***123456**" --limit 5
        receita-db search --uf RJ --cursor 1042
    """
    _configure_logging(_is_verbose(verbose))
    from receita_db.models import SearchQuery

    try:
        query = SearchQuery(
            uf=list(uf),
            cnae_fiscal=list(cnae_fiscal),
            cnae=list(cnae),
            cnpf=list(cnpf),
            cursor=cursor,
            limit=limit,
        )
    except pydantic.ValidationError as e:
        raise click.UsageError(str(e))

    db = _open_database(database_url, schema)
    try:
        page = db.search(query)
    except ReceitaDBError as e:
        raise click.ClickException(str(e))
    finally:
        db.close()

    _echo_json(page.model_dump())
    if not page.data:
        click.echo("No results found.", err=True)
