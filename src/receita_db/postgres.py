"""
PostgreSQL loader and query layer.

Consolidated companies live in a single table as ``jsonb`` documents
keyed by their 14-digit CNPJ, next to a small key/value metadata table.
All SQL comes from ``templates`` and runs through a bounded psycopg
connection pool.

Lifecycle of the company table:

    absent -> create() -> pre_load() -> create_companies()* -> post_load()
    -> create_search_indexes() / create_extra_indexes() -> queryable

``drop()`` brings it back to absent from any state.
"""

import logging
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

import orjson
import psycopg
from psycopg import sql
from psycopg.types.json import set_json_loads
from psycopg_pool import ConnectionPool, PoolTimeout

from .errors import ConnectivityError, DatabaseError, NotFoundError, PartialIndexFailure, ValidationError
from .models import Page, SearchQuery
from .templates import COMPANY_TABLE, TemplateParams, index_name, render

logger = logging.getLogger(__name__)

# Pool defaults
MIN_CONNECTIONS = 1
MAX_CONNECTIONS = 128
MAX_IDLE_SECONDS = 5 * 60
MAX_LIFETIME_SECONDS = 30 * 60
ACQUIRE_TIMEOUT_SECONDS = 30.0

META_KEY_MAX_LENGTH = 16
UPDATED_AT_KEY = "updated-at"
TOTAL_KEY = "total"

# PostgreSQL truncates identifiers longer than this
MAX_IDENTIFIER_LENGTH = 63

# A top-level field ("capital_social") or one level into a list of
# objects ("qsa.nome_socio").
_INDEX_VALUE = re.compile(r"^[a-z_][a-z0-9_]*(\.[a-z_][a-z0-9_]*)?$")

_CONNECTIVITY_ERRORS = (psycopg.OperationalError, PoolTimeout)


@dataclass(frozen=True)
class ExtraIndexSpec:
    """A GIN index over one JSON path of the company document."""
    is_root: bool
    name: str
    value: str

    @property
    def path(self) -> str:
        if self.is_root:
            return f"$.{self.value}"
        parent, child = self.value.split(".", 1)
        return f"$.{parent}[*].{child}"

    @classmethod
    def from_value(cls, value: str, table: str = COMPANY_TABLE) -> "ExtraIndexSpec":
        """Validate a requested field and derive the index name (prefixed with ``table``) and path."""
        if not isinstance(value, str) or not _INDEX_VALUE.match(value):
            raise ValidationError(
                f"invalid index {value!r}: use a top-level field or parent.child with lowercase letters, digits and _"
            )
        name = index_name(table, f"json.{value}")
        if len(name) > MAX_IDENTIFIER_LENGTH:
            raise ValidationError(f"index name {name!r} is longer than {MAX_IDENTIFIER_LENGTH} characters")
        return cls(is_root="." not in value, name=name, value=value)


def validate_indexes(values: list[str], table: str = COMPANY_TABLE) -> list[ExtraIndexSpec]:
    """Turn requested fields into index specs; rejects the whole list on the first bad name."""
    return [ExtraIndexSpec.from_value(value, table) for value in values]


def _configure_connection(conn: psycopg.Connection) -> None:
    set_json_loads(orjson.loads, conn)


class PostgreSQL:
    """
    Bulk loader and query interface for the consolidated company table.

    Safe to share between threads; every call borrows its own connection
    from the pool.
    """

    def __init__(
        self,
        uri: str,
        schema: str = "public",
        min_connections: int = MIN_CONNECTIONS,
        max_connections: int = MAX_CONNECTIONS,
        max_idle: float = MAX_IDLE_SECONDS,
        max_lifetime: float = MAX_LIFETIME_SECONDS,
        timeout: float = ACQUIRE_TIMEOUT_SECONDS,
        statement_timeout: Optional[float] = None,
        params: Optional[TemplateParams] = None,
    ):
        """
        Open the connection pool and ping the database.

        Args:
            uri: PostgreSQL connection URI
            schema: Schema holding the company and meta tables
            min_connections: Connections kept open at all times
            max_connections: Upper bound on concurrent connections
            max_idle: Seconds an idle connection above the minimum is kept
            max_lifetime: Seconds after which a connection is recycled
            timeout: Seconds to wait for a free connection
            statement_timeout: Optional per-statement timeout in seconds
            params: Table and column names (defaults use ``schema``)

        Raises:
            ConnectivityError: If the database cannot be reached
        """
        self._params = params or TemplateParams(schema=schema)
        kwargs = {}
        if statement_timeout:
            kwargs["options"] = f"-c statement_timeout={int(statement_timeout * 1000)}"

        self._pool = ConnectionPool(
            uri,
            min_size=min_connections,
            max_size=max_connections,
            max_idle=max_idle,
            max_lifetime=max_lifetime,
            timeout=timeout,
            kwargs=kwargs,
            configure=_configure_connection,
            name="receita-db",
            open=False,
        )
        try:
            self._pool.open(wait=True, timeout=timeout)
            with self._pool.connection() as conn:
                conn.execute("SELECT 1")
        except _CONNECTIVITY_ERRORS as e:
            self._pool.close()
            raise ConnectivityError("connect", self.company_table_full_name, e) from e

        self._get_query = render("get", self._params)
        self._meta_read_query = render("meta_read", self._params)
        logger.debug(f"Connected to PostgreSQL (pool {min_connections}-{max_connections}, schema {self._params.schema})")

    @property
    def params(self) -> TemplateParams:
        return self._params

    @property
    def company_table_full_name(self) -> str:
        return self._params.company_table_full_name

    @property
    def meta_table_full_name(self) -> str:
        return self._params.meta_table_full_name

    @contextmanager
    def _connection(self, operation: str) -> Iterator[psycopg.Connection]:
        """Borrow a pooled connection; committed on success, rolled back on error."""
        try:
            with self._pool.connection() as conn:
                yield conn
        except _CONNECTIVITY_ERRORS as e:
            raise ConnectivityError(operation, self.company_table_full_name, e) from e
        except psycopg.Error as e:
            raise DatabaseError(operation, self.company_table_full_name, e) from e

    def _execute(self, operation: str, statement: sql.Composable, params: Optional[dict] = None) -> None:
        with self._connection(operation) as conn:
            conn.execute(statement, params)

    def ping(self) -> None:
        with self._connection("ping") as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self._pool.close()

    def __enter__(self) -> "PostgreSQL":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -----------------------------------------------------------------
    # Schema
    # -----------------------------------------------------------------

    def create(self) -> None:
        """Create the company and meta tables if they do not exist."""
        logger.info(f"Creating table {self.company_table_full_name}")
        self._execute("create", render("create", self._params))

    def drop(self) -> None:
        """Drop the company table. The meta table is kept."""
        logger.info(f"Dropping table {self.company_table_full_name}")
        self._execute("drop", render("drop", self._params))

    def pre_load(self) -> None:
        """Disable autovacuum on the company table for the bulk load."""
        self._execute("pre_load", render("pre_load", self._params))

    def post_load(self) -> None:
        """Re-enable autovacuum on the company table."""
        self._execute("post_load", render("post_load", self._params))

    def create_search_indexes(self) -> None:
        """Create the indexes used by ``search`` (state, CNAEs, partner documents)."""
        t0 = time.time()
        logger.info(f"Creating search indexes on {self.company_table_full_name}")
        self._execute("create_search_indexes", render("search_indexes", self._params))
        logger.info(f"Search indexes ready ({time.time() - t0:.1f}s)")

    def create_extra_indexes(self, values: list[str]) -> list[ExtraIndexSpec]:
        """
        Create GIN indexes over extra JSON paths, all in one transaction.

        Args:
            values: Top-level fields (``capital_social``) or nested list
                fields (``qsa.nome_socio``)

        Returns:
            The specs of the indexes now present

        Raises:
            ValidationError: If any name is invalid (nothing is created)
            PartialIndexFailure: If the database rejected the batch
            ConnectivityError: If the database could not be reached
        """
        specs = validate_indexes(values, self._params.company_table)
        if not specs:
            return []

        statement = sql.SQL("\n").join(
            render("extra_index", self._params, name=sql.Identifier(spec.name), path=sql.Literal(spec.path))
            for spec in specs
        )
        try:
            with self._pool.connection() as conn:
                with conn.transaction():
                    conn.execute(statement)
        except _CONNECTIVITY_ERRORS as e:
            raise ConnectivityError("create_extra_indexes", self.company_table_full_name, e) from e
        except psycopg.Error as e:
            raise PartialIndexFailure([spec.name for spec in specs], e) from e

        logger.info(f"{len(specs)} indexes created in {self.company_table_full_name}")
        return specs

    # -----------------------------------------------------------------
    # Companies
    # -----------------------------------------------------------------

    def create_companies(self, batch: list[tuple[str, str]]) -> int:
        """
        Bulk load a batch of ``(id, json)`` rows.

        Rows are copied into a transaction-local table and upserted from
        there, so ids already stored (or repeated inside the batch) end up
        holding the last JSON given for them.

        Returns:
            Number of rows received
        """
        if not batch:
            return 0
        with self._connection("create_companies") as conn:
            with conn.transaction():
                conn.execute(render("copy_table", self._params))
                with conn.cursor() as cur:
                    with cur.copy(render("copy", self._params)) as copy:
                        for row in batch:
                            copy.write_row(row)
                    cur.execute(render("upsert", self._params))
        logger.debug(f"Loaded batch of {len(batch):,} companies")
        return len(batch)

    def get_company(self, id: str) -> str:
        """
        Return the JSON text stored for a 14-digit CNPJ.

        Raises:
            NotFoundError: If no company has that id
        """
        with self._connection("get_company") as conn:
            row = conn.execute(self._get_query, {"id": id}).fetchone()
        if row is None:
            logger.debug(f"Company {id} not found")
            raise NotFoundError(f"company {id} not found")
        return row[0]

    def count(self) -> int:
        with self._connection("count") as conn:
            row = conn.execute(render("count", self._params)).fetchone()
        return row[0]

    # -----------------------------------------------------------------
    # Metadata
    # -----------------------------------------------------------------

    def meta_save(self, key: str, value: str) -> None:
        """Upsert a metadata entry; keys are at most 16 characters long."""
        if len(key) > META_KEY_MAX_LENGTH:
            raise ValidationError(f"metadata keys are at most {META_KEY_MAX_LENGTH} characters long, got {key!r}")
        self._execute("meta_save", render("meta_save", self._params), {"key": key, "value": value})

    def meta_read(self, key: str) -> str:
        with self._connection("meta_read") as conn:
            row = conn.execute(self._meta_read_query, {"key": key}).fetchone()
        if row is None:
            logger.debug(f"Metadata key {key} not found")
            raise NotFoundError(f"metadata key {key} not found")
        return row[0]

    # -----------------------------------------------------------------
    # Search
    # -----------------------------------------------------------------

    def _search_statement(self, query: SearchQuery) -> tuple[sql.Composed, dict]:
        filters: list[sql.Composable] = []
        params: dict = {"cursor": query.cursor or 0, "limit": query.limit}

        if query.uf:
            filters.append(render("filter_uf", self._params))
            params["uf"] = query.uf
        if query.cnae_fiscal:
            filters.append(render("filter_cnae_fiscal", self._params))
            params["cnae_fiscal"] = query.cnae_fiscal
        if query.cnae:
            secondary = sql.SQL(" OR ").join(
                render("filter_secondary_cnae", self._params, value=sql.Placeholder(f"cnae_{i}"))
                for i in range(len(query.cnae))
            )
            filters.append(render("filter_cnae", self._params, secondary=secondary))
            params["cnae"] = query.cnae
            for i, code in enumerate(query.cnae):
                params[f"cnae_{i}"] = orjson.dumps([code]).decode()
        if query.cnpf:
            filters.append(render("filter_cnpf", self._params))
            params["cnpf"] = query.cnpf

        statement = render("search", self._params, filters=sql.SQL("\n").join(filters))
        return statement, params

    def search(self, query: SearchQuery) -> Page:
        """
        Return one page of companies matching the query, ordered by cursor.

        Sequential scans are disabled for the transaction so the planner
        sticks to the search indexes. The page cursor is the last row's
        cursor, or None when the page is empty.
        """
        statement, params = self._search_statement(query)
        t0 = time.time()
        with self._connection("search") as conn:
            with conn.transaction():
                conn.execute("SET LOCAL enable_seqscan = off")
                rows = conn.execute(statement, params).fetchall()

        logger.debug(f"Search returned {len(rows)} rows in {time.time() - t0:.3f}s")
        cursor = str(rows[-1][0]) if rows else None
        return Page(data=[document for _, document in rows], cursor=cursor)
