"""
Tests for receita_db.postgres.

Index name validation and query building run without a database; the
rest needs a live PostgreSQL (TEST_POSTGRES_URL) and is skipped otherwise.
"""

from unittest.mock import MagicMock, patch

import orjson
import psycopg
import pytest
from psycopg_pool import PoolTimeout

from conftest import make_partner
from receita_db.consolidate import Consolidator
from receita_db.errors import ConnectivityError, DatabaseError, NotFoundError, ValidationError
from receita_db.merge import BASE, PARTNERS, TAXES, merge_partners, replace
from receita_db.models import SearchQuery, to_bytes
from receita_db.postgres import ExtraIndexSpec, PostgreSQL, validate_indexes
from receita_db.templates import TemplateParams


class TestExtraIndexSpec:
    def test_root_field(self):
        spec = ExtraIndexSpec.from_value("capital_social")
        assert spec.is_root
        assert spec.name == "cnpj_json.capital_social_idx"
        assert spec.path == "$.capital_social"

    def test_nested_field(self):
        spec = ExtraIndexSpec.from_value("qsa.nome_socio")
        assert not spec.is_root
        assert spec.path == "$.qsa[*].nome_socio"

    @pytest.mark.parametrize(
        "value",
        ["bogus;drop table x", "", "Capital", "a.b.c", "qsa.", "1abc", "x" * 60],
    )
    def test_rejected(self, value):
        with pytest.raises(ValidationError):
            ExtraIndexSpec.from_value(value)

    def test_name_carries_table(self):
        assert ExtraIndexSpec.from_value("capital_social", table="empresas").name == "empresas_json.capital_social_idx"

    def test_one_bad_name_rejects_all(self):
        with pytest.raises(ValidationError):
            validate_indexes(["capital_social", "bogus;drop table x"])


class TestConnect:
    def test_unreachable_database(self):
        with pytest.raises(ConnectivityError) as exc:
            PostgreSQL("postgresql://nobody@127.0.0.1:1/nothing", timeout=0.5)
        assert exc.value.operation == "connect"


class TestSearchStatement:
    def test_params(self):
        with patch("receita_db.postgres.ConnectionPool"):
            db = PostgreSQL("postgresql://localhost/test")
        query = SearchQuery(uf=["sp"], cnae=[6201501, 6202300], cnpf=["***123456**"], cursor="41", limit=5)

        _, params = db._search_statement(query)

        assert params["cursor"] == 41
        assert params["limit"] == 5
        assert params["uf"] == ["SP"]
        assert params["cnae"] == [6201501, 6202300]
        assert params["cnae_0"] == "[6201501]"
        assert params["cnae_1"] == "[6202300]"
        assert params["cnpf"] == ["***123456**"]
        assert "cnae_fiscal" not in params

    def test_no_filters_starts_from_zero(self):
        with patch("receita_db.postgres.ConnectionPool"):
            db = PostgreSQL("postgresql://localhost/test")
        _, params = db._search_statement(SearchQuery())
        assert params == {"cursor": 0, "limit": 20}


class TestErrorMapping:
    @pytest.fixture
    def db(self):
        with patch("receita_db.postgres.ConnectionPool"):
            return PostgreSQL("postgresql://localhost/test")

    def test_pool_timeout_on_extra_indexes(self, db):
        db._pool.connection.side_effect = PoolTimeout("couldn't get a connection after 30.00 sec")
        with pytest.raises(ConnectivityError) as exc:
            db.create_extra_indexes(["capital_social"])
        assert exc.value.operation == "create_extra_indexes"

    def test_rejected_statement(self, db):
        conn = MagicMock()
        conn.execute.side_effect = psycopg.errors.UndefinedTable('relation "cnpj" does not exist')
        db._pool.connection.return_value.__enter__.return_value = conn
        with pytest.raises(DatabaseError) as exc:
            db.pre_load()
        assert exc.value.operation == "pre_load"
        assert exc.value.target == "public.cnpj"


class TestSchema:
    def test_drop_is_idempotent(self, postgres):
        postgres.drop()
        postgres.drop()
        postgres.create()
        assert postgres.count() == 0

    def test_drop_keeps_meta(self, postgres):
        postgres.meta_save("answer", "42")
        postgres.drop()
        postgres.create()
        assert postgres.meta_read("answer") == "42"


class TestCompanies:
    def test_get_missing(self, postgres):
        with pytest.raises(NotFoundError):
            postgres.get_company("33683111000280")

    def test_round_trip_is_byte_identical(self, postgres):
        # Canonical jsonb text: keys ordered by length then bytes, ", " and ": " separators
        text = '{"qsa": [{"name": 42}, {"name": "forty-two"}], "answer": 42}'
        postgres.create_companies([("33683111000280", text)])
        assert postgres.get_company("33683111000280") == text

    def test_duplicates_keep_last(self, postgres):
        postgres.create_companies([("33683111000280", '{"v": 1}'), ("33683111000280", '{"v": 2}')])
        postgres.create_companies([("33683111000280", '{"v": 3}')])
        assert postgres.count() == 1
        assert orjson.loads(postgres.get_company("33683111000280")) == {"v": 3}

    def test_empty_batch(self, postgres):
        assert postgres.create_companies([]) == 0

    def test_load_cycle(self, postgres):
        postgres.pre_load()
        postgres.create_companies([("33683111000280", '{"v": 1}')])
        postgres.post_load()
        assert postgres.count() == 1

    def test_value_too_long(self, postgres):
        with pytest.raises(DatabaseError) as exc:
            postgres.create_companies([("3368311100028000", '{"v": 1}')])
        assert exc.value.operation == "create_companies"

    def test_load_on_missing_table(self, postgres):
        postgres.drop()
        with pytest.raises(DatabaseError):
            postgres.pre_load()


class TestMeta:
    def test_overwrite(self, postgres):
        postgres.meta_save("answer", "42")
        postgres.meta_save("answer", "forty-two")
        assert postgres.meta_read("answer") == "forty-two"

    def test_missing(self, postgres):
        with pytest.raises(NotFoundError):
            postgres.meta_read("updated-at")

    def test_long_key_rejected(self, postgres):
        with pytest.raises(ValidationError):
            postgres.meta_save("k" * 17, "value")
        with pytest.raises(NotFoundError):
            postgres.meta_read("k" * 17)


class TestIndexes:
    def _index_names(self, db, pattern: str) -> list[str]:
        with psycopg.connect(db._pool.conninfo) as conn:
            rows = conn.execute(
                "SELECT indexname FROM pg_indexes WHERE schemaname = %s AND indexname ILIKE %s",
                (db.params.schema, pattern),
            ).fetchall()
        return [row[0] for row in rows]

    def test_extra_index_created(self, postgres):
        specs = postgres.create_extra_indexes(["capital_social", "qsa.nome_socio"])
        assert [spec.name for spec in specs] == ["cnpj_json.capital_social_idx", "cnpj_json.qsa.nome_socio_idx"]
        assert self._index_names(postgres, "%capital_social%") == ["cnpj_json.capital_social_idx"]

    def test_bad_name_creates_nothing(self, postgres):
        with pytest.raises(ValidationError):
            postgres.create_extra_indexes(["capital_social", "bogus;drop table x"])
        assert self._index_names(postgres, "%json.%") == []

    def test_search_indexes(self, postgres):
        postgres.create_search_indexes()
        postgres.create_search_indexes()
        assert len(self._index_names(postgres, "cnpj_%_idx")) >= 4

    def test_second_table_in_same_schema(self, postgres):
        postgres.create_extra_indexes(["capital_social"])
        params = TemplateParams(schema=postgres.params.schema, company_table="cnpj_other")
        with PostgreSQL(postgres._pool.conninfo, params=params, max_connections=2) as other:
            other.create()
            other.create_extra_indexes(["capital_social"])
        assert sorted(self._index_names(postgres, "%capital_social%")) == [
            "cnpj_json.capital_social_idx",
            "cnpj_other_json.capital_social_idx",
        ]


class TestSearch:
    @pytest.fixture
    def loaded(self, postgres):
        docs = [
            ("12345678000195", {"uf": "SP", "cnae_fiscal": 6201501, "cnaes_secundarios": [{"codigo": 6202300}],
                                "qsa": [{"cnpj_cpf_do_socio": "***123456**"}]}),
            ("12345678000276", {"uf": "RJ", "cnae_fiscal": 4711302, "cnaes_secundarios": [], "qsa": []}),
            ("33683111000280", {"uf": "SP", "cnae_fiscal": 4711302, "cnaes_secundarios": [{"codigo": 6201501}],
                                "qsa": []}),
        ]
        postgres.create_companies([(key, orjson.dumps(doc).decode()) for key, doc in docs])
        postgres.create_search_indexes()
        return postgres

    def test_by_uf(self, loaded):
        page = loaded.search(SearchQuery(uf=["sp"]))
        assert len(page.data) == 2
        assert page.cursor is not None

    def test_by_cnae_matches_main_or_secondary(self, loaded):
        page = loaded.search(SearchQuery(cnae=[6201501]))
        assert len(page.data) == 2

    def test_by_cnae_fiscal(self, loaded):
        page = loaded.search(SearchQuery(cnae_fiscal=[4711302]))
        assert len(page.data) == 2

    def test_by_partner_document(self, loaded):
        page = loaded.search(SearchQuery(cnpf=["***123456**"]))
        assert len(page.data) == 1
        assert page.data[0]["uf"] == "SP"

    def test_pagination(self, loaded):
        first = loaded.search(SearchQuery(uf=["SP", "RJ"], limit=2))
        second = loaded.search(SearchQuery(uf=["SP", "RJ"], limit=2, cursor=first.cursor))
        assert len(first.data) == 2
        assert len(second.data) == 1
        last = loaded.search(SearchQuery(uf=["SP", "RJ"], limit=2, cursor=second.cursor))
        assert last.data == []
        assert last.cursor is None


class TestEndToEnd:
    def test_consolidated_company_is_searchable(self, postgres, store, base_record, tax_record):
        store.write(BASE, "12345678", replace, to_bytes(base_record))
        for name in ("Nome 1", "Nome 2"):
            store.write(PARTNERS, "12345678", merge_partners, to_bytes(make_partner(name)))
        store.write(TAXES, "12345678", replace, to_bytes(tax_record))

        report = Consolidator(store, postgres.create_companies).run()
        postgres.create_search_indexes()

        assert report.documents == 1
        page = postgres.search(SearchQuery(cnpf=["***123456**"]))
        assert [doc["cnpj"] for doc in page.data] == ["12345678000195"]
        assert [p["nome_socio"] for p in page.data[0]["qsa"]] == ["Nome 1", "Nome 2"]
        assert page.data[0]["opcao_pelo_simples"] is True
        assert page.cursor
        assert orjson.loads(postgres.get_company("12345678000195"))["razao_social"] == "Empresa Teste Ltda"
