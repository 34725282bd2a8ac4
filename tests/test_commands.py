"""Tests for the receita-db CLI."""

from unittest.mock import MagicMock, patch

import orjson
import pytest
from click.testing import CliRunner

from conftest import base_row, write_registry_file
from receita_db.commands import main
from receita_db.errors import ConnectivityError, NotFoundError
from receita_db.models import Page


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def db():
    db = MagicMock()
    db.company_table_full_name = "public.cnpj"
    return db


def _patch_db(module: str, db):
    return patch(f"receita_db.commands.{module}._open_database", return_value=db)


class TestMain:
    def test_help_lists_commands(self, runner):
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for name in ["transform", "get", "search", "status", "drop", "create-indexes", "serve"]:
            assert name in result.output

    def test_missing_database_url(self, runner, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        result = runner.invoke(main, ["status"])
        assert result.exit_code == 2
        assert "DATABASE_URL" in result.output

    def test_unreachable_database(self, runner):
        error = ConnectivityError("connect", "public.cnpj", OSError("refused"))
        with patch("receita_db.postgres.PostgreSQL", side_effect=error):
            result = runner.invoke(main, ["status", "--database-url", "postgresql://localhost/x"])
        assert result.exit_code == 1
        assert "database unavailable" in result.output


class TestGet:
    def test_prints_document(self, runner, db):
        db.get_company.return_value = '{"cnpj": "33683111000280"}'
        with _patch_db("search", db):
            result = runner.invoke(main, ["get", "33.683.111/0002-80"])
        assert result.exit_code == 0
        assert orjson.loads(result.output) == {"cnpj": "33683111000280"}
        db.get_company.assert_called_once_with("33683111000280")
        db.close.assert_called_once()

    def test_invalid_number(self, runner, db):
        with _patch_db("search", db) as open_db:
            result = runner.invoke(main, ["get", "12345678901234"])
        assert result.exit_code == 2
        open_db.assert_not_called()

    def test_not_found(self, runner, db):
        db.get_company.side_effect = NotFoundError("company 33683111000280 not found")
        with _patch_db("search", db):
            result = runner.invoke(main, ["get", "33683111000280"])
        assert result.exit_code == 1
        assert "33.683.111/0002-80 not found" in result.output


class TestSearch:
    def test_builds_query(self, runner, db):
        db.search.return_value = Page(data=[{"cnpj": "33683111000280"}], cursor="3")
        with _patch_db("search", db):
            result = runner.invoke(main, ["search", "--uf", "sp", "--cnae", "6201501", "--limit", "5"])
        assert result.exit_code == 0
        query = db.search.call_args.args[0]
        assert query.uf == ["SP"]
        assert query.cnae == [6201501]
        assert query.limit == 5
        assert orjson.loads(result.stdout)["cursor"] == "3"

    def test_invalid_limit(self, runner, db):
        with _patch_db("search", db):
            result = runner.invoke(main, ["search", "--limit", "0"])
        assert result.exit_code == 2
        db.search.assert_not_called()


class TestManagement:
    def test_status(self, runner, db):
        def meta_read(key):
            if key == "updated-at":
                return "2024-01-13"
            raise NotFoundError(key)

        db.meta_read.side_effect = meta_read
        with _patch_db("management", db):
            result = runner.invoke(main, ["status"])
        assert result.exit_code == 0
        assert "Updated at: 2024-01-13" in result.output
        assert "Total: unknown" in result.output

    def test_drop_asks_for_confirmation(self, runner, db):
        with _patch_db("management", db):
            result = runner.invoke(main, ["drop"], input="n\n")
        assert result.exit_code == 1
        db.drop.assert_not_called()

    def test_drop_yes(self, runner, db):
        with _patch_db("management", db):
            result = runner.invoke(main, ["drop", "--yes"])
        assert result.exit_code == 0
        db.drop.assert_called_once()

    def test_create_indexes_validates_first(self, runner, db):
        with _patch_db("management", db) as open_db:
            result = runner.invoke(main, ["create-indexes", "capital_social", "bogus;drop table x"])
        assert result.exit_code == 1
        open_db.assert_not_called()

    def test_create_indexes(self, runner, db):
        from receita_db.postgres import ExtraIndexSpec

        db.create_extra_indexes.return_value = [ExtraIndexSpec.from_value("qsa.nome_socio")]
        with _patch_db("management", db):
            result = runner.invoke(main, ["create-indexes", "qsa.nome_socio"])
        assert result.exit_code == 0
        assert "json.qsa.nome_socio" in result.output
        assert "$.qsa[*].nome_socio" in result.output


class TestTransform:
    def test_empty_directory(self, runner, tmp_path):
        result = runner.invoke(main, ["transform", str(tmp_path)])
        assert result.exit_code == 1
        assert "No registry files" in result.output

    def test_runs_import(self, runner, db, tmp_path):
        data = tmp_path / "data"
        data.mkdir()
        write_registry_file(data / "K3241.EMPRECSV", [base_row("12345678", "EMPRESA TESTE LTDA")])
        db.create_companies.side_effect = lambda batch: len(batch)

        with _patch_db("imports", db):
            result = runner.invoke(
                main, ["transform", str(data), "--staging-dir", str(tmp_path / "staging"), "--workers", "2"]
            )

        assert result.exit_code == 0, result.output
        assert "Import complete" in result.output
        assert "Documents:  1" in result.output
        db.create_search_indexes.assert_called_once()
        db.close.assert_called_once()

    def test_bad_index(self, runner, db, tmp_path):
        with _patch_db("imports", db) as open_db:
            result = runner.invoke(main, ["transform", str(tmp_path), "--index", "Bad Name"])
        assert result.exit_code == 1
        open_db.assert_not_called()


class TestServe:
    def test_passes_options(self, runner):
        with patch("receita_db.server.run_server") as run:
            result = runner.invoke(
                main, ["serve", "--port", "9000", "--no-warmup", "--database-url", "postgresql://localhost/x"]
            )
        assert result.exit_code == 0
        kwargs = run.call_args.kwargs
        assert kwargs["port"] == 9000
        assert kwargs["do_warmup"] is False
        assert kwargs["database_url"] == "postgresql://localhost/x"

    def test_unreachable_database(self, runner):
        error = ConnectivityError("connect", "public.cnpj", OSError("refused"))
        with patch("receita_db.server.run_server", side_effect=error):
            result = runner.invoke(main, ["serve"])
        assert result.exit_code == 1
