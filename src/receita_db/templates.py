"""
SQL templates for the PostgreSQL loader and query layer.

Every statement lives in ``TEMPLATES`` under a short key and is rendered
by ``render``. Schema, table and column names are configurable and are
always substituted as quoted identifiers (``psycopg.sql.Identifier``);
values travel as bound parameters. Nothing user-controlled is pasted into
SQL text.
"""

from dataclasses import dataclass
from typing import Any

from psycopg import sql

COMPANY_TABLE = "cnpj"
META_TABLE = "meta"
CURSOR_FIELD = "cursor"
ID_FIELD = "id"
JSON_FIELD = "json"
KEY_FIELD = "key"
VALUE_FIELD = "value"
COPY_TABLE = "cnpj_copy"
COPY_SEQ_FIELD = "seq"

TEMPLATES: dict[str, str] = {
    "create": """
        CREATE TABLE IF NOT EXISTS {company_table} (
            {cursor} BIGSERIAL,
            {id} CHAR(14) PRIMARY KEY NOT NULL,
            {json} JSONB NOT NULL
        );
        CREATE UNIQUE INDEX IF NOT EXISTS {cursor_index} ON {company_table} ({cursor});
        CREATE TABLE IF NOT EXISTS {meta_table} (
            {key} VARCHAR(16) PRIMARY KEY NOT NULL,
            {value} TEXT NOT NULL
        );
    """,
    "drop": "DROP TABLE IF EXISTS {company_table};",
    "count": "SELECT COUNT(*) FROM {company_table}",
    "get": "SELECT {json}::text FROM {company_table} WHERE {id} = %(id)s",
    "meta_read": "SELECT {value} FROM {meta_table} WHERE {key} = %(key)s",
    "meta_save": """
        INSERT INTO {meta_table} ({key}, {value}) VALUES (%(key)s, %(value)s)
        ON CONFLICT ({key}) DO UPDATE SET {value} = EXCLUDED.{value}
    """,
    "pre_load": """
        ALTER TABLE {company_table}
        SET (autovacuum_enabled = false, toast.autovacuum_enabled = false);
    """,
    "post_load": """
        ALTER TABLE {company_table}
        SET (autovacuum_enabled = true, toast.autovacuum_enabled = true);
    """,
    "copy_table": """
        CREATE TEMP TABLE IF NOT EXISTS {copy_table} (
            {seq} BIGSERIAL,
            {id} CHAR(14) NOT NULL,
            {json} JSONB NOT NULL
        ) ON COMMIT DROP
    """,
    "copy": "COPY {copy_table} ({id}, {json}) FROM STDIN",
    # Last occurrence of an id inside a batch wins, and so does the batch
    # over a row already stored.
    "upsert": """
        INSERT INTO {company_table} ({id}, {json})
        SELECT DISTINCT ON ({id}) {id}, {json}
        FROM {copy_table}
        ORDER BY {id}, {seq} DESC
        ON CONFLICT ({id}) DO UPDATE SET {json} = EXCLUDED.{json}
    """,
    "search": """
        SELECT {cursor}, {json}
        FROM {company_table}
        WHERE {cursor} > %(cursor)s
        {filters}
        ORDER BY {cursor}
        LIMIT %(limit)s
    """,
    "filter_uf": "AND ({json} ->> 'uf') = ANY(%(uf)s::text[])",
    "filter_cnae_fiscal": "AND (({json} ->> 'cnae_fiscal')::integer) = ANY(%(cnae_fiscal)s::integer[])",
    "filter_cnae": """
        AND (
            (({json} ->> 'cnae_fiscal')::integer) = ANY(%(cnae)s::integer[])
            OR {secondary}
        )
    """,
    "filter_secondary_cnae": "jsonb_path_query_array({json}, '$.cnaes_secundarios[*].codigo') @> {value}::jsonb",
    "filter_cnpf": "AND jsonb_path_query_array({json}, '$.qsa[*].cnpj_cpf_do_socio') ?| %(cnpf)s::text[]",
    "search_indexes": """
        CREATE INDEX IF NOT EXISTS {uf_index} ON {company_table} (({json} ->> 'uf'));
        CREATE INDEX IF NOT EXISTS {cnae_fiscal_index}
            ON {company_table} ((({json} ->> 'cnae_fiscal')::integer));
        CREATE INDEX IF NOT EXISTS {cnaes_index}
            ON {company_table} USING GIN (jsonb_path_query_array({json}, '$.cnaes_secundarios[*].codigo'));
        CREATE INDEX IF NOT EXISTS {cnpf_index}
            ON {company_table} USING GIN (jsonb_path_query_array({json}, '$.qsa[*].cnpj_cpf_do_socio'));
    """,
    "extra_index": """
        CREATE INDEX IF NOT EXISTS {name}
            ON {company_table} USING GIN (jsonb_path_query_array({json}, {path}::jsonpath));
    """,
}


def index_name(table: str, suffix: str) -> str:
    """Index names carry the table name; PostgreSQL scopes them to the schema."""
    return f"{table}_{suffix}_idx"


@dataclass
class TemplateParams:
    """Names shared by every template."""
    schema: str = "public"
    company_table: str = COMPANY_TABLE
    meta_table: str = META_TABLE
    cursor_field: str = CURSOR_FIELD
    id_field: str = ID_FIELD
    json_field: str = JSON_FIELD
    key_field: str = KEY_FIELD
    value_field: str = VALUE_FIELD

    @property
    def company_table_full_name(self) -> str:
        return f"{self.schema}.{self.company_table}"

    @property
    def meta_table_full_name(self) -> str:
        return f"{self.schema}.{self.meta_table}"

    def index_name(self, suffix: str) -> str:
        return index_name(self.company_table, suffix)

    def identifiers(self) -> dict[str, sql.Composable]:
        return {
            "company_table": sql.Identifier(self.schema, self.company_table),
            "meta_table": sql.Identifier(self.schema, self.meta_table),
            "copy_table": sql.Identifier(COPY_TABLE),
            "cursor": sql.Identifier(self.cursor_field),
            "id": sql.Identifier(self.id_field),
            "json": sql.Identifier(self.json_field),
            "key": sql.Identifier(self.key_field),
            "value": sql.Identifier(self.value_field),
            "seq": sql.Identifier(COPY_SEQ_FIELD),
            "cursor_index": sql.Identifier(self.index_name("cursor")),
            "uf_index": sql.Identifier(self.index_name("uf")),
            "cnae_fiscal_index": sql.Identifier(self.index_name("cnae_fiscal")),
            "cnaes_index": sql.Identifier(self.index_name("cnaes")),
            "cnpf_index": sql.Identifier(self.index_name("cnpf")),
        }


def render(key: str, params: TemplateParams, **extra: Any) -> sql.Composed:
    """
    Render the template stored under ``key``.

    Args:
        key: Template key (see TEMPLATES)
        params: Schema, table and column names
        **extra: Additional ``sql.Composable`` values (filters, index name, path)

    Raises:
        KeyError: If no template exists for ``key``
    """
    try:
        source = TEMPLATES[key]
    except KeyError:
        raise KeyError(f"template {key} not found") from None
    values = params.identifiers()
    values.update(extra)
    # Composed.format only picks the placeholders each template uses.
    return sql.SQL(source.strip()).format(**values)
