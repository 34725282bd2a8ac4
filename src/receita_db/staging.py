"""
On-disk staging store used to join the registry files during an import.

A durable, ordered key-value map backed by SQLite. Keys are namespaced
(base, branches, partners, taxes) and stored in a WITHOUT ROWID table so
they come back sorted. Data is spread across a few shard files by base
key; every shard has its own write lock, so writers touching different
companies do not wait on each other, while read-merge-write for a single
key always runs inside one IMMEDIATE transaction on one shard.

The store is scratch space: it lives for one import run and is wiped by
``reset()`` before the next one.
"""

import heapq
import logging
import shutil
import sqlite3
import threading
import zlib
from pathlib import Path
from typing import Iterable, Iterator, Optional

from .errors import StorageCorruption
from .merge import MergeFunction

logger = logging.getLogger(__name__)

DEFAULT_STAGING_DIR = Path.home() / ".cache" / "receita-db" / "staging"
DEFAULT_SHARDS = 8
SCAN_PAGE_SIZE = 10_000
BUSY_TIMEOUT_SECONDS = 60.0

_CREATE_TABLE = """
    CREATE TABLE IF NOT EXISTS staged (
        namespace TEXT NOT NULL,
        key TEXT NOT NULL,
        value BLOB NOT NULL,
        PRIMARY KEY (namespace, key)
    ) WITHOUT ROWID
"""


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    """Apply write-heavy performance PRAGMAs to a staging connection.

    Uses WAL with synchronous=NORMAL, 256MB mmap, in-memory temp store and
    a 200MB page cache per connection.
    """
    cache_kb = 200 * 1024

    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute("PRAGMA mmap_size = 268435456")
    conn.execute(f"PRAGMA cache_size = -{cache_kb}")
    conn.execute("PRAGMA temp_store = MEMORY")
    logger.debug(f"Applied staging PRAGMAs: WAL, cache_size={cache_kb // 1024}MB")


def _prefix_upper_bound(prefix: str) -> str:
    """Smallest string greater than every string starting with ``prefix``."""
    return prefix[:-1] + chr(ord(prefix[-1]) + 1)


class StagingStore:
    """
    Ordered, namespaced key-value store on local disk.

    Safe to share between threads: each thread gets its own SQLite
    connection per shard.
    """

    def __init__(
        self,
        directory: Optional[str | Path] = None,
        shards: int = DEFAULT_SHARDS,
        busy_timeout: float = BUSY_TIMEOUT_SECONDS,
    ):
        """
        Open (or create) a staging store.

        Args:
            directory: Directory holding the shard files (created if missing)
            shards: Number of SQLite files keys are distributed over
            busy_timeout: Seconds a writer waits for a shard lock
        """
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._dir = Path(directory) if directory else DEFAULT_STAGING_DIR
        self._shards = shards
        self._busy_timeout = busy_timeout
        self._local = threading.local()
        self._generation = 0
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._open()

    @property
    def directory(self) -> Path:
        return self._dir

    def _shard_path(self, shard: int) -> Path:
        return self._dir / f"staging-{shard:02d}.db"

    def _open(self) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        for conn in self._shard_connections():
            conn.execute(_CREATE_TABLE)
        logger.debug(f"Opened staging store at {self._dir} ({self._shards} shards)")

    def _shard_connections(self) -> list[sqlite3.Connection]:
        """Connections of the calling thread, one per shard."""
        conns = getattr(self._local, "conns", None)
        if conns is not None and self._local.generation == self._generation:
            return conns

        conns = []
        for shard in range(self._shards):
            conn = sqlite3.connect(
                str(self._shard_path(shard)),
                timeout=self._busy_timeout,
                isolation_level=None,  # transactions are managed explicitly
                check_same_thread=False,
            )
            _apply_pragmas(conn)
            conns.append(conn)
        with self._connections_lock:
            self._connections.extend(conns)
        self._local.conns = conns
        self._local.generation = self._generation
        return conns

    def _shard_for(self, key: str) -> int:
        # Branches are keyed by full CNPJ; hashing the base part keeps every
        # facet of one company in the same shard.
        return zlib.crc32(key[:8].encode()) % self._shards

    def _conn_for(self, key: str) -> sqlite3.Connection:
        return self._shard_connections()[self._shard_for(key)]

    @staticmethod
    def _get(conn: sqlite3.Connection, namespace: str, key: str) -> Optional[bytes]:
        row = conn.execute(
            "SELECT value FROM staged WHERE namespace = ? AND key = ?",
            (namespace, key),
        ).fetchone()
        return row[0] if row else None

    @staticmethod
    def _merge_one(
        conn: sqlite3.Connection,
        namespace: str,
        key: str,
        merge_fn: MergeFunction,
        incoming: bytes,
    ) -> None:
        current = StagingStore._get(conn, namespace, key)
        try:
            merged = merge_fn(current, incoming)
        except StorageCorruption as e:
            raise StorageCorruption(namespace, key, e.reason) from e
        conn.execute(
            "INSERT OR REPLACE INTO staged (namespace, key, value) VALUES (?, ?, ?)",
            (namespace, key, merged),
        )

    def write(self, namespace: str, key: str, merge_fn: MergeFunction, incoming: bytes) -> None:
        """Read the value at (namespace, key), merge ``incoming`` into it and store the result atomically."""
        conn = self._conn_for(key)
        conn.execute("BEGIN IMMEDIATE")
        try:
            self._merge_one(conn, namespace, key, merge_fn, incoming)
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def write_many(
        self,
        namespace: str,
        items: Iterable[tuple[str, bytes]],
        merge_fn: MergeFunction,
    ) -> int:
        """
        Merge a batch of (key, incoming) pairs, in the given order.

        Pairs are grouped by shard and each group is applied in a single
        transaction. Repeated keys inside the batch are merged one after
        the other, exactly as separate ``write`` calls would.

        Returns:
            Number of pairs written
        """
        by_shard: dict[int, list[tuple[str, bytes]]] = {}
        for key, incoming in items:
            by_shard.setdefault(self._shard_for(key), []).append((key, incoming))

        conns = self._shard_connections()
        count = 0
        for shard in sorted(by_shard):
            conn = conns[shard]
            conn.execute("BEGIN IMMEDIATE")
            try:
                for key, incoming in by_shard[shard]:
                    self._merge_one(conn, namespace, key, merge_fn, incoming)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            count += len(by_shard[shard])
        return count

    def read(self, namespace: str, key: str) -> Optional[bytes]:
        """Return the staged value, or None when the key is absent."""
        return self._get(self._conn_for(key), namespace, key)

    def _scan_shard(
        self,
        shard: int,
        namespace: str,
        start_after: Optional[str],
        prefix: Optional[str],
        with_values: bool,
        stop_at: Optional[str] = None,
    ) -> Iterator[tuple]:
        """Page through one shard in key order without holding a cursor open between pages."""
        columns = "key, value" if with_values else "key"
        clauses = ["namespace = ?", "key > ?"]
        last = start_after or ""
        bounds: list[str] = []
        if prefix:
            clauses += ["key >= ?", "key < ?"]
            bounds += [prefix, _prefix_upper_bound(prefix)]
        if stop_at is not None:
            clauses.append("key <= ?")
            bounds.append(stop_at)
        query = (
            f"SELECT {columns} FROM staged WHERE {' AND '.join(clauses)} "
            f"ORDER BY key LIMIT {SCAN_PAGE_SIZE}"
        )

        while True:
            conn = self._shard_connections()[shard]
            rows = conn.execute(query, (namespace, last, *bounds)).fetchall()
            if not rows:
                return
            for row in rows:
                yield tuple(row)
            last = rows[-1][0]
            if len(rows) < SCAN_PAGE_SIZE:
                return

    def scan_keys(
        self,
        namespace: str,
        start_after: Optional[str] = None,
        prefix: Optional[str] = None,
        stop_at: Optional[str] = None,
    ) -> Iterator[str]:
        """
        Lazily iterate keys of a namespace in ascending order.

        The scan is restartable: pass the last key seen as ``start_after``
        to resume. ``stop_at`` (inclusive) bounds a key range.
        """
        shard_iters = [
            self._scan_shard(s, namespace, start_after, prefix, with_values=False, stop_at=stop_at)
            for s in range(self._shards)
        ]
        for (key,) in heapq.merge(*shard_iters):
            yield key

    def scan_prefix(self, namespace: str, prefix: str) -> Iterator[tuple[str, bytes]]:
        """Lazily iterate (key, value) pairs whose key starts with ``prefix``, in key order."""
        if not prefix:
            raise ValueError("prefix cannot be empty")
        shard_iters = [
            self._scan_shard(s, namespace, None, prefix, with_values=True)
            for s in range(self._shards)
        ]
        yield from heapq.merge(*shard_iters, key=lambda row: row[0])

    def count(self, namespace: str) -> int:
        """Number of keys staged in a namespace."""
        total = 0
        for conn in self._shard_connections():
            row = conn.execute("SELECT COUNT(*) FROM staged WHERE namespace = ?", (namespace,)).fetchone()
            total += row[0]
        return total

    def drop(self, namespace: str) -> None:
        """Delete every key of a namespace."""
        for conn in self._shard_connections():
            conn.execute("DELETE FROM staged WHERE namespace = ?", (namespace,))
        logger.info(f"Dropped staging namespace '{namespace}'")

    def _close_connections(self) -> None:
        with self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
            self._generation += 1

    def reset(self) -> None:
        """Delete the staging directory and start from an empty store."""
        self._close_connections()
        if self._dir.exists():
            shutil.rmtree(self._dir)
        logger.info(f"Reset staging store at {self._dir}")
        self._open()

    def close(self) -> None:
        """Close every connection opened by any thread."""
        self._close_connections()

    def __enter__(self) -> "StagingStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
