"""
Shared test fixtures for receita-db.

Provides fresh staging stores under tmp_path, sample registry records,
writers for small registry files, and a PostgreSQL instance for the
integration tests (only when TEST_POSTGRES_URL is set).
"""

import os
import uuid
import zipfile
from pathlib import Path

import pytest

from receita_db.models import BaseRecord, BranchRecord, Cnae, PartnerRecord, TaxRecord
from receita_db.staging import StagingStore


# ---------------------------------------------------------------------------
# Server singletons (autouse) -- clears module-level globals every test
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_server_globals():
    """Clear the server's cached database and metrics so tests are isolated."""
    import receita_db.server as _server

    yield

    _server._db = None
    _server._metrics = None
    _server._database_url = None
    _server._schema = None


# ---------------------------------------------------------------------------
# Staging store
# ---------------------------------------------------------------------------

@pytest.fixture
def staging_dir(tmp_path: Path) -> Path:
    return tmp_path / "staging"


@pytest.fixture
def store(staging_dir: Path):
    """StagingStore with a few shards so multi-shard paths are exercised."""
    s = StagingStore(staging_dir, shards=4, busy_timeout=30.0)
    yield s
    s.close()


# ---------------------------------------------------------------------------
# Sample records
# ---------------------------------------------------------------------------

@pytest.fixture
def base_record() -> BaseRecord:
    return BaseRecord(
        razao_social="Empresa Teste Ltda",
        codigo_natureza_juridica=2062,
        qualificacao_do_responsavel=49,
        capital_social=1000.5,
        codigo_porte=1,
        porte="MICRO EMPRESA",
    )


@pytest.fixture
def tax_record() -> TaxRecord:
    return TaxRecord(
        opcao_pelo_simples=True,
        data_opcao_pelo_simples="2018-01-01",
        opcao_pelo_mei=False,
    )


@pytest.fixture
def branch_record() -> BranchRecord:
    return BranchRecord(
        cnpj="12345678000195",
        identificador_matriz_filial=1,
        descricao_identificador_matriz_filial="MATRIZ",
        nome_fantasia="Teste",
        situacao_cadastral=2,
        descricao_situacao_cadastral="ATIVA",
        cnae_fiscal=6201501,
        cnaes_secundarios=[Cnae(codigo=6202300), Cnae(codigo=6209100)],
        uf="SP",
        codigo_municipio=7107,
    )


def make_partner(name: str, document: str = "***123456**") -> PartnerRecord:
    return PartnerRecord(identificador_de_socio=2, nome_socio=name, cnpj_cpf_do_socio=document)


# ---------------------------------------------------------------------------
# Registry files
# ---------------------------------------------------------------------------

def write_registry_file(path: Path, rows: list[list[str]], zipped: bool = False) -> Path:
    """Write rows the way Receita Federal publishes them: ; separated, quoted, Latin-1."""
    text = "".join(";".join(f'"{value}"' for value in row) + "\n" for row in rows)
    data = text.encode("latin-1")
    if zipped:
        with zipfile.ZipFile(path, "w") as archive:
            archive.writestr(path.stem, data)
    else:
        path.write_bytes(data)
    return path


def base_row(base: str, name: str, capital: str = "1000,50") -> list[str]:
    return [base, name, "2062", "49", capital, "01", ""]


def branch_row(base: str, order: str, check: str, uf: str = "SP", cnae: str = "6201501") -> list[str]:
    row = [""] * 30
    row[0], row[1], row[2] = base, order, check
    row[3] = "1" if order == "0001" else "2"
    row[4] = "FANTASIA"
    row[5] = "02"
    row[6] = "20050101"
    row[7] = "00"
    row[10] = "20000101"
    row[11] = cnae
    row[12] = "6202300,6209100"
    row[13] = "RUA"
    row[14] = "DAS FLORES"
    row[15] = "10"
    row[17] = "CENTRO"
    row[18] = "01001000"
    row[19] = uf
    row[20] = "7107"
    row[21], row[22] = "11", "12345678"
    row[27] = "contato@example.com"
    return row


def partner_row(base: str, name: str, document: str = "***123456**") -> list[str]:
    return [base, "2", name, document, "49", "20100101", "", "***000000**", "", "00", "5"]


def taxes_row(base: str) -> list[str]:
    return [base, "S", "20180101", "00000000", "N", "00000000", "00000000"]


# ---------------------------------------------------------------------------
# PostgreSQL (integration)
# ---------------------------------------------------------------------------

@pytest.fixture
def postgres():
    """PostgreSQL on a throwaway schema; skipped unless TEST_POSTGRES_URL is set."""
    url = os.environ.get("TEST_POSTGRES_URL")
    if not url:
        pytest.skip("TEST_POSTGRES_URL is not set")

    import psycopg
    from psycopg import sql

    from receita_db.postgres import PostgreSQL

    schema = f"test_{uuid.uuid4().hex[:12]}"
    with psycopg.connect(url, autocommit=True) as conn:
        conn.execute(sql.SQL("CREATE SCHEMA {}").format(sql.Identifier(schema)))

    db = PostgreSQL(url, schema=schema, max_connections=4)
    db.create()
    yield db
    db.close()

    with psycopg.connect(url, autocommit=True) as conn:
        conn.execute(sql.SQL("DROP SCHEMA {} CASCADE").format(sql.Identifier(schema)))
