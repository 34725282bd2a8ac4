"""
Import pipeline: registry files -> staging store -> PostgreSQL.

Staging runs several reader threads against the shared StagingStore.
Base, branch and tax files replace whole values, so they are staged one
file per worker in any order. Partner files append to per-company lists;
they all go through a single worker, in filename order, so the partner
order of every company is the file order regardless of scheduling.

Consolidation runs one thread per key range, feeding a bounded queue that
the calling thread drains into ``PostgreSQL.create_companies``.
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from .consolidate import DEFAULT_BATCH_SIZE, ConsolidationReport, Consolidator, key_ranges
from .errors import ValidationError
from .merge import merge_function_for
from .models import to_bytes
from .readers import SourceKind, detect_kind, read_source
from .staging import StagingStore

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 8
DEFAULT_STAGING_BATCH_SIZE = 4096
LOAD_QUEUE_SIZE = 4


@dataclass
class StagingReport:
    files: int = 0
    records: dict[str, int] = field(default_factory=dict)
    elapsed: float = 0.0

    @property
    def total(self) -> int:
        return sum(self.records.values())


@dataclass
class ImportReport:
    staging: StagingReport
    consolidation: ConsolidationReport
    extra_indexes: list[str] = field(default_factory=list)
    elapsed: float = 0.0


def find_source_files(directory: str | Path) -> list[Path]:
    """Registry files found directly under ``directory``, sorted by name."""
    directory = Path(directory)
    if not directory.is_dir():
        raise ValidationError(f"{directory} is not a directory")
    return sorted(p for p in directory.iterdir() if p.is_file() and detect_kind(p) is not None)


def stage_file(
    store: StagingStore,
    path: str | Path,
    kind: Optional[SourceKind] = None,
    batch_size: int = DEFAULT_STAGING_BATCH_SIZE,
    limit: Optional[int] = None,
    shutdown_event: Optional[threading.Event] = None,
) -> int:
    """
    Stream one registry file into the staging store.

    Returns:
        Number of records staged
    """
    kind = kind or detect_kind(path)
    if kind is None:
        raise ValidationError(f"cannot tell which registry file {path} is")
    namespace = kind.value
    merge_fn = merge_function_for(namespace)

    count = 0
    batch: list[tuple[str, bytes]] = []
    for key, record in read_source(path, kind, limit):
        if shutdown_event is not None and shutdown_event.is_set():
            logger.info(f"Stopping {path}: shutdown requested")
            return count
        batch.append((key, to_bytes(record)))
        if len(batch) >= batch_size:
            count += store.write_many(namespace, batch, merge_fn)
            batch = []
    if batch:
        count += store.write_many(namespace, batch, merge_fn)

    logger.info(f"Staged {count:,} {namespace} records from {Path(path).name}")
    return count


def _plan(paths: Iterable[str | Path]) -> list[tuple[SourceKind, list[Path]]]:
    """Group files into units of work: one per file, except all partner files together."""
    groups: list[tuple[SourceKind, list[Path]]] = []
    partners: list[Path] = []
    for path in sorted(Path(p) for p in paths):
        kind = detect_kind(path)
        if kind is None:
            raise ValidationError(f"cannot tell which registry file {path} is")
        if kind == SourceKind.PARTNERS:
            partners.append(path)
        else:
            groups.append((kind, [path]))
    if partners:
        groups.append((SourceKind.PARTNERS, partners))
    return groups


def _staging_worker(
    store: StagingStore,
    work: queue.Queue,
    report: StagingReport,
    report_lock: threading.Lock,
    batch_size: int,
    limit: Optional[int],
    shutdown_event: threading.Event,
    thread_errors: list[Exception],
) -> None:
    """Take groups off ``work`` until it is empty; files in one group are staged in order."""
    while not shutdown_event.is_set():
        try:
            kind, files = work.get_nowait()
        except queue.Empty:
            return
        try:
            for path in files:
                count = stage_file(store, path, kind, batch_size, limit, shutdown_event)
                with report_lock:
                    report.records[kind.value] = report.records.get(kind.value, 0) + count
                    report.files += 1
        except Exception as e:
            thread_errors.append(e)
            shutdown_event.set()
            return


def stage_files(
    store: StagingStore,
    paths: Iterable[str | Path],
    workers: int = DEFAULT_WORKERS,
    batch_size: int = DEFAULT_STAGING_BATCH_SIZE,
    limit: Optional[int] = None,
) -> StagingReport:
    """
    Stage registry files concurrently.

    Args:
        store: Target staging store
        paths: Registry files (any mix of kinds)
        workers: Maximum number of reader threads
        batch_size: Records per ``write_many`` call
        limit: Stop each file after this many records

    Returns:
        StagingReport with per-namespace record counts

    Raises:
        The first error raised by any worker; the others stop at their next record.
    """
    if workers < 1:
        raise ValueError("workers must be >= 1")
    t0 = time.time()
    groups = _plan(paths)
    report = StagingReport()
    if not groups:
        logger.warning("No registry files to stage")
        return report

    work: queue.Queue = queue.Queue()
    for group in groups:
        work.put(group)

    report_lock = threading.Lock()
    shutdown_event = threading.Event()
    thread_errors: list[Exception] = []
    threads = [
        threading.Thread(
            target=_staging_worker,
            args=(store, work, report, report_lock, batch_size, limit, shutdown_event, thread_errors),
            daemon=True,
            name=f"staging-{i}",
        )
        for i in range(min(workers, len(groups)))
    ]
    logger.info(f"Staging {sum(len(files) for _, files in groups)} files with {len(threads)} workers")
    for thread in threads:
        thread.start()
    try:
        for thread in threads:
            thread.join()
    except KeyboardInterrupt:
        shutdown_event.set()
        raise

    if thread_errors:
        raise thread_errors[0]

    report.elapsed = time.time() - t0
    logger.info(f"Staged {report.total:,} records from {report.files} files ({report.elapsed:.1f}s)")
    return report


def _consolidation_worker(
    store: StagingStore,
    start_after: Optional[str],
    stop_at: Optional[str],
    batch_size: int,
    load_queue: queue.Queue,
    reports: list[ConsolidationReport],
    shutdown_event: threading.Event,
    thread_errors: list[Exception],
) -> None:
    def put(batch: list[tuple[str, str]]) -> None:
        while not shutdown_event.is_set():
            try:
                load_queue.put(batch, timeout=1.0)
                return
            except queue.Full:
                continue
        raise RuntimeError("consolidation cancelled")

    try:
        reports.append(Consolidator(store, put, batch_size).run(start_after, stop_at))
    except Exception as e:
        if not shutdown_event.is_set():
            thread_errors.append(e)
        shutdown_event.set()
    finally:
        # Sentinel: this range is done
        load_queue.put(None)


def consolidate_into(
    store: StagingStore,
    db,
    batch_size: int = DEFAULT_BATCH_SIZE,
    shards: int = 1,
) -> ConsolidationReport:
    """
    Consolidate the staged data and bulk load it through ``db.create_companies``.

    Each of ``shards`` threads walks its own key range; the calling thread
    owns every database write.
    """
    load_queue: queue.Queue = queue.Queue(maxsize=LOAD_QUEUE_SIZE)
    shutdown_event = threading.Event()
    thread_errors: list[Exception] = []
    reports: list[ConsolidationReport] = []
    ranges = key_ranges(shards)
    threads = [
        threading.Thread(
            target=_consolidation_worker,
            args=(store, start_after, stop_at, batch_size, load_queue, reports, shutdown_event, thread_errors),
            daemon=True,
            name=f"consolidate-{i}",
        )
        for i, (start_after, stop_at) in enumerate(ranges)
    ]
    for thread in threads:
        thread.start()

    loaded = 0
    finished = 0
    try:
        while finished < len(threads):
            if thread_errors:
                raise thread_errors[0]
            try:
                batch = load_queue.get(timeout=1.0)
            except queue.Empty:
                continue
            if batch is None:
                finished += 1
                continue
            loaded += db.create_companies(batch)
        if thread_errors:
            raise thread_errors[0]
    finally:
        shutdown_event.set()
        # Unblock producers waiting on a full queue
        while any(thread.is_alive() for thread in threads):
            try:
                load_queue.get(timeout=0.1)
            except queue.Empty:
                pass

    total = ConsolidationReport()
    for report in reports:
        total.companies += report.companies
        total.documents += report.documents
        total.orphans += report.orphans
        total.batches += report.batches
        total.elapsed = max(total.elapsed, report.elapsed)
    logger.info(f"Loaded {loaded:,} documents into {db.company_table_full_name}")
    return total


def import_all(
    store: StagingStore,
    db,
    paths: Iterable[str | Path],
    workers: int = DEFAULT_WORKERS,
    batch_size: int = DEFAULT_BATCH_SIZE,
    shards: int = 1,
    extra_indexes: Optional[list[str]] = None,
    limit: Optional[int] = None,
) -> ImportReport:
    """
    Run a full import from scratch.

    Steps: reset staging, stage every file, drop and recreate the company
    table, bulk load with autovacuum off, build the search indexes and any
    extra indexes, then record ``updated-at`` and ``total`` in the meta table.

    Args:
        store: Staging store (wiped first)
        db: PostgreSQL instance
        paths: Registry files
        workers: Staging threads
        batch_size: Documents per bulk-load batch
        shards: Consolidation threads (non-overlapping key ranges)
        extra_indexes: Extra JSON fields to index (validated before anything runs)
        limit: Stop each file after this many records
    """
    from .postgres import TOTAL_KEY, UPDATED_AT_KEY, validate_indexes

    t0 = time.time()
    specs = validate_indexes(extra_indexes or [])
    paths = list(paths)

    store.reset()
    staging = stage_files(store, paths, workers=workers, limit=limit)

    db.drop()
    db.create()
    db.pre_load()
    try:
        consolidation = consolidate_into(store, db, batch_size=batch_size, shards=shards)
    finally:
        db.post_load()

    db.create_search_indexes()
    created: list[str] = []
    if specs:
        created = [spec.name for spec in db.create_extra_indexes([spec.value for spec in specs])]

    db.meta_save(UPDATED_AT_KEY, datetime.now(timezone.utc).date().isoformat())
    db.meta_save(TOTAL_KEY, str(consolidation.documents))

    report = ImportReport(staging, consolidation, created, time.time() - t0)
    logger.info(
        f"Import complete: {consolidation.documents:,} documents from {staging.files} files "
        f"({report.elapsed:.1f}s)"
    )
    return report
