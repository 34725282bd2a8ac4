"""
Consolidation: join the staged facets of each company into final documents.

Walks the ``base`` namespace in key order and, for each base CNPJ, reads
the partner list, the tax record and every branch staged under it. One
document is produced per branch; a company with no staged branch gets a
single document for its head office. Documents are handed to a sink in
fixed-size batches of ``(id, json)`` rows.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Type, TypeVar

import orjson
import pydantic

from . import cnpj
from .errors import StorageCorruption
from .merge import BASE, BRANCHES, PARTNERS, TAXES
from .models import BaseRecord, BranchRecord, ConsolidatedCompany, PartnerRecord, TaxRecord
from .staging import StagingStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 8192
PROGRESS_EVERY = 100_000

# Sorts after any digit, so "<base>~" bounds every full key of that base.
_KEY_SENTINEL = "~"

Row = tuple[str, str]
Sink = Callable[[list[Row]], None]
M = TypeVar("M", bound=pydantic.BaseModel)


@dataclass
class ConsolidationReport:
    """Counters for one consolidation run."""
    companies: int = 0
    documents: int = 0
    orphans: int = 0
    batches: int = 0
    elapsed: float = 0.0


def key_ranges(shards: int) -> list[tuple[Optional[str], Optional[str]]]:
    """
    Split the base-key space into non-overlapping ``(start_after, stop_at)`` ranges.

    Each range can be handed to its own Consolidator; together they cover
    every base key exactly once.
    """
    if shards < 1:
        raise ValueError("shards must be >= 1")
    space = 10 ** cnpj.BASE_LENGTH
    bounds = [str(space * i // shards - 1).zfill(cnpj.BASE_LENGTH) for i in range(1, shards)]
    starts: list[Optional[str]] = [None] + bounds
    stops: list[Optional[str]] = bounds + [None]
    return list(zip(starts, stops))


class Consolidator:
    """Builds ConsolidatedCompany documents out of a populated StagingStore."""

    def __init__(
        self,
        store: StagingStore,
        sink: Optional[Sink] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        """
        Args:
            store: Staging store holding every source file
            sink: Called with each batch of (id, json) rows (e.g. PostgreSQL.create_companies)
            batch_size: Rows per batch
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._store = store
        self._sink = sink
        self._batch_size = batch_size

    @staticmethod
    def _decode(namespace: str, key: str, raw: bytes, model: Type[M]) -> M:
        try:
            return model.model_validate(orjson.loads(raw))
        except (orjson.JSONDecodeError, pydantic.ValidationError) as e:
            raise StorageCorruption(namespace, key, str(e)) from e

    def base_of(self, base_key: str) -> Optional[BaseRecord]:
        raw = self._store.read(BASE, base_key)
        return self._decode(BASE, base_key, raw, BaseRecord) if raw is not None else None

    def partners_of(self, base_key: str) -> list[PartnerRecord]:
        raw = self._store.read(PARTNERS, base_key)
        if raw is None:
            return []
        try:
            items = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise StorageCorruption(PARTNERS, base_key, str(e)) from e
        if not isinstance(items, list):
            raise StorageCorruption(PARTNERS, base_key, "expected a list of partners")
        try:
            return [PartnerRecord.model_validate(item) for item in items]
        except pydantic.ValidationError as e:
            raise StorageCorruption(PARTNERS, base_key, str(e)) from e

    def taxes_of(self, base_key: str) -> Optional[TaxRecord]:
        raw = self._store.read(TAXES, base_key)
        return self._decode(TAXES, base_key, raw, TaxRecord) if raw is not None else None

    def branches_of(self, base_key: str) -> list[BranchRecord]:
        return [
            self._decode(BRANCHES, key, raw, BranchRecord)
            for key, raw in self._store.scan_prefix(BRANCHES, base_key)
        ]

    def companies_for(self, base_key: str) -> list[ConsolidatedCompany]:
        """All documents for one base key; empty when no base record is staged."""
        base = self.base_of(base_key)
        if base is None:
            return []
        partners = self.partners_of(base_key)
        taxes = self.taxes_of(base_key)
        branches = self.branches_of(base_key)
        if not branches:
            return [ConsolidatedCompany.assemble(cnpj.head_office_of(base_key), base, partners, taxes)]
        return [
            ConsolidatedCompany.assemble(branch.cnpj, base, partners, taxes, branch)
            for branch in branches
        ]

    def count_orphans(self, start_after: Optional[str] = None, stop_at: Optional[str] = None) -> int:
        """Count staged partners, taxes and branches whose base record is missing."""
        orphans = 0
        for namespace in (PARTNERS, TAXES, BRANCHES):
            after, stop = start_after, stop_at
            if namespace == BRANCHES:
                after = start_after + _KEY_SENTINEL if start_after else None
                stop = stop_at + _KEY_SENTINEL if stop_at else None
            missing: set[str] = set()
            for key in self._store.scan_keys(namespace, start_after=after, stop_at=stop):
                base_key = key[:cnpj.BASE_LENGTH]
                if base_key in missing:
                    continue
                if self._store.read(BASE, base_key) is None:
                    missing.add(base_key)
                    logger.debug(f"Orphan {namespace} entry for base CNPJ {base_key}")
            orphans += len(missing)
        return orphans

    def _flush(self, batch: list[Row], report: ConsolidationReport) -> None:
        if self._sink is not None:
            self._sink(batch)
        report.batches += 1

    def run(self, start_after: Optional[str] = None, stop_at: Optional[str] = None) -> ConsolidationReport:
        """
        Consolidate every base key in the given range and feed the sink.

        Args:
            start_after: Exclusive lower bound on base keys (None = from the start)
            stop_at: Inclusive upper bound on base keys (None = to the end)

        Returns:
            ConsolidationReport with counts of companies, documents, orphans and batches
        """
        t0 = time.time()
        report = ConsolidationReport()
        batch: list[Row] = []

        for base_key in self._store.scan_keys(BASE, start_after=start_after, stop_at=stop_at):
            companies = self.companies_for(base_key)
            report.companies += 1
            for company in companies:
                batch.append(company.to_row())
                report.documents += 1
                if len(batch) >= self._batch_size:
                    self._flush(batch, report)
                    batch = []
            if report.companies % PROGRESS_EVERY == 0:
                logger.info(f"Consolidated {report.companies:,} companies ({report.documents:,} documents)...")

        if batch:
            self._flush(batch, report)

        report.orphans = self.count_orphans(start_after, stop_at)
        if report.orphans:
            logger.warning(f"Skipped {report.orphans:,} base CNPJs with partners/taxes/branches but no base record")

        report.elapsed = time.time() - t0
        logger.info(
            f"Consolidation complete: {report.companies:,} companies, {report.documents:,} documents "
            f"in {report.batches:,} batches ({report.elapsed:.1f}s)"
        )
        return report
