"""Tests for the Consolidator in receita_db.consolidate."""

import orjson
import pytest

from conftest import make_partner
from receita_db.consolidate import Consolidator, key_ranges
from receita_db.errors import StorageCorruption
from receita_db.merge import BASE, BRANCHES, PARTNERS, TAXES, merge_partners, replace
from receita_db.models import BranchRecord, to_bytes


def _stage_company(store, base_record, tax_record=None, partners=("Nome 1", "Nome 2"), base_key="12345678"):
    store.write(BASE, base_key, replace, to_bytes(base_record))
    for name in partners:
        store.write(PARTNERS, base_key, merge_partners, to_bytes(make_partner(name)))
    if tax_record is not None:
        store.write(TAXES, base_key, replace, to_bytes(tax_record))


class TestCompaniesFor:
    def test_end_to_end_scenario(self, store, base_record, tax_record):
        _stage_company(store, base_record, tax_record)

        [company] = Consolidator(store).companies_for("12345678")

        assert company.cnpj == "12345678000195"
        assert [p.nome_socio for p in company.qsa] == ["Nome 1", "Nome 2"]
        assert company.opcao_pelo_simples is True
        assert company.data_opcao_pelo_simples == "2018-01-01"
        assert company.razao_social == "Empresa Teste Ltda"

    def test_one_document_per_branch(self, store, base_record, branch_record):
        _stage_company(store, base_record)
        store.write(BRANCHES, branch_record.cnpj, replace, to_bytes(branch_record))
        filial = BranchRecord(cnpj="12345678000276", identificador_matriz_filial=2, uf="RJ")
        store.write(BRANCHES, filial.cnpj, replace, to_bytes(filial))

        companies = Consolidator(store).companies_for("12345678")

        assert [c.cnpj for c in companies] == ["12345678000195", "12345678000276"]
        assert [c.uf for c in companies] == ["SP", "RJ"]
        # Company-wide facets are shared by every branch
        assert all(len(c.qsa) == 2 for c in companies)
        assert all(c.razao_social == "Empresa Teste Ltda" for c in companies)

    def test_no_partners_no_taxes(self, store, base_record):
        _stage_company(store, base_record, partners=())
        [company] = Consolidator(store).companies_for("12345678")
        assert company.qsa == []
        assert company.opcao_pelo_simples is None

    def test_missing_base(self, store):
        store.write(PARTNERS, "12345678", merge_partners, to_bytes(make_partner("Nome 1")))
        assert Consolidator(store).companies_for("12345678") == []

    def test_branch_of_neighbour_not_mixed_in(self, store, base_record, branch_record):
        _stage_company(store, base_record)
        other = BranchRecord(cnpj="12345679000100")
        store.write(BRANCHES, other.cnpj, replace, to_bytes(other))
        [company] = Consolidator(store).companies_for("12345678")
        assert company.cnpj == "12345678000195"

    def test_corrupt_base(self, store):
        store.write(BASE, "12345678", replace, b"{not json")
        with pytest.raises(StorageCorruption) as exc:
            Consolidator(store).companies_for("12345678")
        assert exc.value.namespace == BASE
        assert exc.value.key == "12345678"


class TestRun:
    def test_batches_reach_sink(self, store, base_record):
        for i in range(5):
            _stage_company(store, base_record, base_key=f"1000000{i}", partners=())
        batches: list[list[tuple[str, str]]] = []

        report = Consolidator(store, batches.append, batch_size=2).run()

        assert report.companies == 5
        assert report.documents == 5
        assert report.batches == 3
        assert [len(b) for b in batches] == [2, 2, 1]
        ids = [row[0] for batch in batches for row in batch]
        assert ids == sorted(ids)
        assert orjson.loads(batches[0][0][1])["razao_social"] == "Empresa Teste Ltda"

    def test_orphans_counted_and_skipped(self, store, base_record):
        _stage_company(store, base_record, partners=())
        store.write(PARTNERS, "99999999", merge_partners, to_bytes(make_partner("Sem empresa")))
        store.write(TAXES, "99999999", replace, b"{}")
        store.write(BRANCHES, "88888888000100", replace, to_bytes(BranchRecord(cnpj="88888888000100")))
        rows: list = []

        report = Consolidator(store, rows.extend).run()

        assert report.documents == 1
        assert report.orphans == 3
        assert [row[0] for row in rows] == ["12345678000195"]

    def test_empty_store(self, store):
        report = Consolidator(store).run()
        assert report.companies == 0
        assert report.batches == 0

    def test_invalid_batch_size(self, store):
        with pytest.raises(ValueError):
            Consolidator(store, batch_size=0)


class TestKeyRanges:
    def test_single_range(self):
        assert key_ranges(1) == [(None, None)]

    def test_ranges_are_contiguous(self):
        ranges = key_ranges(4)
        assert ranges[0][0] is None
        assert ranges[-1][1] is None
        for (_, stop), (start, _) in zip(ranges, ranges[1:]):
            assert stop == start
        assert ranges[0][1] == "24999999"

    def test_sharded_runs_cover_every_key_once(self, store, base_record):
        keys = ["00000001", "24999999", "25000000", "49999999", "75000000", "99999999"]
        for key in keys:
            _stage_company(store, base_record, base_key=key, partners=())

        seen: list[str] = []
        for start_after, stop_at in key_ranges(4):
            rows: list = []
            Consolidator(store, rows.extend).run(start_after, stop_at)
            seen.extend(row[0][:8] for row in rows)

        assert sorted(seen) == keys

    def test_invalid(self):
        with pytest.raises(ValueError):
            key_ranges(0)
