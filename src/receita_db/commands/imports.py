"""Import command: registry files -> staging -> PostgreSQL."""

from typing import Optional

import click

from receita_db.errors import ReceitaDBError

from ._common import (
    _configure_logging,
    _is_verbose,
    _open_database,
    _resolve_staging_dir,
    database_url_option,
    schema_option,
    verbose_option,
)


@click.command("transform")
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
@database_url_option
@schema_option
@click.option("--staging-dir", type=click.Path(file_okay=False), help="Staging directory (default: $RECEITA_STAGING_DIR or ~/.cache/receita-db/staging)")
@click.option("--workers", type=int, default=8, show_default=True, help="Threads reading source files")
@click.option("--batch-size", type=int, default=8192, show_default=True, help="Documents per bulk-load batch")
@click.option("--shards", type=int, default=1, show_default=True, help="Consolidation threads (key ranges)")
@click.option("--index", "extra_indexes", multiple=True, help="Extra JSON field to index, e.g. capital_social or qsa.nome_socio (repeatable)")
@click.option("--limit", type=int, help="Limit records read from each file")
@click.option("--keep-staging", is_flag=True, help="Keep the staging directory after a successful import")
@verbose_option
def transform(
    directory: str,
    database_url: Optional[str],
    schema: str,
    staging_dir: Optional[str],
    workers: int,
    batch_size: int,
    shards: int,
    extra_indexes: tuple[str, ...],
    limit: Optional[int],
    keep_staging: bool,
    verbose: bool,
):
    """
    Import the CNPJ registry files in DIRECTORY into PostgreSQL.

    Drops and recreates the company table, so a failed import can simply
    be run again.

    \b
    Examples:
        receita-db transform data/
        receita-db transform data/ --workers 4 --index capital_social
        receita-db transform data/ --limit 1000 -v
    """
    _configure_logging(_is_verbose(verbose))

    from receita_db.pipeline import find_source_files, import_all
    from receita_db.postgres import validate_indexes
    from receita_db.staging import StagingStore

    try:
        validate_indexes(list(extra_indexes))
        paths = find_source_files(directory)
    except ReceitaDBError as e:
        raise click.ClickException(str(e))
    if not paths:
        raise click.ClickException(f"No registry files found in {directory}")

    staging_path = _resolve_staging_dir(staging_dir)
    click.echo(f"Importing {len(paths)} files from {directory} (staging at {staging_path})...", err=True)

    db = _open_database(database_url, schema)
    store = StagingStore(staging_path)
    try:
        report = import_all(
            store,
            db,
            paths,
            workers=workers,
            batch_size=batch_size,
            shards=shards,
            extra_indexes=list(extra_indexes),
            limit=limit,
        )
        if not keep_staging:
            store.reset()
    except ReceitaDBError as e:
        raise click.ClickException(f"Import failed: {e}")
    finally:
        store.close()
        db.close()

    click.echo("\nImport complete")
    click.echo("=" * 40)
    click.echo(f"Files:      {report.staging.files}")
    for namespace, count in sorted(report.staging.records.items()):
        click.echo(f"  {namespace:<10}{count:>14,}")
    click.echo(f"Companies:  {report.consolidation.companies:,}")
    click.echo(f"Documents:  {report.consolidation.documents:,}")
    if report.consolidation.orphans:
        click.echo(f"Orphans:    {report.consolidation.orphans:,}")
    if report.extra_indexes:
        click.echo(f"Indexes:    {', '.join(report.extra_indexes)}")
    click.echo(f"Elapsed:    {report.elapsed:.1f}s")
