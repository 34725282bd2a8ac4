"""
HTTP API for CNPJ lookups and search.

Keeps a PostgreSQL connection pool open between requests.

Usage:
    receita-db serve                    # Start on 0.0.0.0:8000
    receita-db serve --port 9000        # Custom port
"""

import logging
import os
import time
from typing import Any, Optional

import pydantic
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response

from . import cnpj as cnpj_keys
from .errors import ConnectivityError, NotFoundError, ValidationError
from .models import SearchQuery

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8000

# ---------------------------------------------------------------------------
# Globals populated at startup
# ---------------------------------------------------------------------------

_db = None
_metrics = None
_database_url: Optional[str] = None
_schema: Optional[str] = None


def configure(database_url: Optional[str] = None, schema: Optional[str] = None, db=None, metrics=None) -> None:
    """Set the connection settings, or inject ready-made database and metrics objects."""
    global _database_url, _schema, _db, _metrics
    if database_url:
        _database_url = database_url
    if schema:
        _schema = schema
    if db is not None:
        _db = db
    if metrics is not None:
        _metrics = metrics


def _get_db():
    global _db
    if _db is None:
        from .postgres import PostgreSQL
        url = _database_url or os.environ.get("DATABASE_URL")
        if not url:
            raise ConnectivityError("connect", None, RuntimeError("DATABASE_URL is not set"))
        _db = PostgreSQL(url, schema=_schema or os.environ.get("POSTGRES_SCHEMA", "public"))
    return _db


def _get_metrics():
    global _metrics
    if _metrics is None:
        from .metrics import Metrics
        _metrics = Metrics()
    return _metrics


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Receita DB",
    description="Lookup and search over the consolidated CNPJ registry.",
)


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    t0 = time.time()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    _get_metrics().record_request(request.method, response.status_code, endpoint, (time.time() - t0) * 1000)
    return response


@app.exception_handler(NotFoundError)
def not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"message": str(exc)})


@app.exception_handler(ConnectivityError)
def unavailable(request: Request, exc: ConnectivityError):
    logger.error(f"Database unavailable for {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"message": "database unavailable"})


@app.exception_handler(ValidationError)
def bad_request(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"message": str(exc)})


@app.get("/")
def health():
    """Health check and status info."""
    result: dict[str, Any] = {
        "status": "ok",
        "database": _db.company_table_full_name if _db is not None else None,
    }
    if _db is not None:
        try:
            result["updated_at"] = _db.meta_read("updated-at")
        except (NotFoundError, ConnectivityError):
            result["updated_at"] = None
    return result


@app.get("/healthz")
def healthz():
    """Liveness probe; 503 when the database does not answer."""
    _get_db().ping()
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    from .metrics import CONTENT_TYPE
    return Response(content=_get_metrics().render(), media_type=CONTENT_TYPE)


@app.get("/updated")
def updated():
    """Date of the last completed import."""
    return {"updated_at": _get_db().meta_read("updated-at")}


def _split(values: list[str]) -> list[str]:
    """Accept both repeated parameters and comma-separated values."""
    return [part.strip() for value in values for part in value.split(",") if part.strip()]


def _split_ints(name: str, values: list[str]) -> list[int]:
    parts = _split(values)
    try:
        return [int(cnpj_keys.digits(part) or part) for part in parts]
    except ValueError:
        raise ValidationError(f"{name} must be a list of numeric codes") from None


@app.get("/search")
def search(
    uf: list[str] = Query(default=[]),
    cnae_fiscal: list[str] = Query(default=[]),
    cnae: list[str] = Query(default=[]),
    cnpf: list[str] = Query(default=[]),
    cursor: Optional[str] = None,
    limit: Optional[int] = None,
):
    """Search companies by state, activity codes or partner documents, one page at a time."""
    t0 = time.time()
    try:
        query = SearchQuery(
            uf=_split(uf),
            cnae_fiscal=_split_ints("cnae_fiscal", cnae_fiscal),
            cnae=_split_ints("cnae", cnae),
            cnpf=_split(cnpf),
            cursor=int(cursor) if cursor else None,
            **({"limit": limit} if limit is not None else {}),
        )
    except (pydantic.ValidationError, ValueError) as e:
        raise ValidationError(f"invalid search query: {e}") from None

    page = _get_db().search(query)
    logger.info(f"Search returned {len(page.data)} results in {time.time() - t0:.3f}s")
    return page.model_dump()


@app.get("/{number:path}")
def get_company(number: str):
    """Company document for a CNPJ, with or without punctuation."""
    digits = cnpj_keys.digits(number)
    if not digits or len(digits) > cnpj_keys.FULL_LENGTH:
        raise ValidationError(f"invalid CNPJ: {number!r}")
    key = digits.zfill(cnpj_keys.FULL_LENGTH)
    if not cnpj_keys.is_valid(key):
        raise ValidationError(f"invalid CNPJ: {number!r}")
    return Response(content=_get_db().get_company(key), media_type="application/json")


# ---------------------------------------------------------------------------
# Warmup and run
# ---------------------------------------------------------------------------


def warmup() -> None:
    """Open the connection pool before accepting requests."""
    logger.info("Connecting to the database...")
    t0 = time.time()
    db = _get_db()
    logger.info(f"  Connected to {db.company_table_full_name} ({time.time() - t0:.1f}s)")


def run_server(
    host: str = "0.0.0.0",
    port: int = DEFAULT_PORT,
    database_url: Optional[str] = None,
    schema: Optional[str] = None,
    do_warmup: bool = True,
    verbose: bool = False,
):
    """Run the server with uvicorn."""
    import uvicorn

    configure(database_url=database_url, schema=schema)
    log_level = "debug" if verbose else "info"

    if do_warmup:
        warmup()

    logger.info(f"Starting receita-db server on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level=log_level)
