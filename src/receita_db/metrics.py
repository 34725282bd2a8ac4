"""
Prometheus telemetry for the HTTP API.

A ``Metrics`` instance owns its own ``CollectorRegistry``; build one and
hand it to whoever records requests or serves ``/metrics``. Process and
database gauges are refreshed from psutil every time the registry is
scraped.
"""

import logging
import os
from typing import Optional

import psutil
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger(__name__)

LABELS = ("method", "status_code", "endpoint")
DURATION_BUCKETS_MS = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)
DB_PROCESS_MARKERS = ("postgres",)

CONTENT_TYPE = CONTENT_TYPE_LATEST


def _is_db_process(name: str, cmdline: str) -> bool:
    name, cmdline = name.lower(), cmdline.lower()
    return any(marker in name or marker in cmdline for marker in DB_PROCESS_MARKERS)


class Metrics:
    """Request counters and resource gauges registered in a private registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, pid: Optional[int] = None):
        self.registry = registry or CollectorRegistry()
        self._process = psutil.Process(pid or os.getpid())
        # Kept between scrapes so cpu_percent has a baseline to diff against
        self._db_processes: dict[int, psutil.Process] = {}

        self.requests = Counter(
            "total_requests", "The total number of requests served", LABELS, registry=self.registry
        )
        self.duration = Histogram(
            "request_duration",
            "The duration of requests in milliseconds",
            LABELS,
            buckets=DURATION_BUCKETS_MS,
            registry=self.registry,
        )
        self.app_cpu = Gauge("app_cpu_percent", "CPU percent used by this application", registry=self.registry)
        self.db_cpu = Gauge("db_cpu_percent", "CPU percent used by the database", registry=self.registry)
        self.app_memory = Gauge("app_memory_bytes", "Memory used by this application in bytes", registry=self.registry)
        self.db_memory = Gauge("db_memory_bytes", "Memory used by the database in bytes", registry=self.registry)
        self.app_network_sent = Gauge(
            "app_network_sent_bytes", "Bytes written by this application", registry=self.registry
        )
        self.app_network_recv = Gauge(
            "app_network_recv_bytes", "Bytes read by this application", registry=self.registry
        )

    def record_request(self, method: str, status_code: int, endpoint: str, duration_ms: float) -> None:
        labels = (method, str(status_code), endpoint)
        self.requests.labels(*labels).inc()
        self.duration.labels(*labels).observe(duration_ms)

    def _refresh_app(self) -> None:
        with self._process.oneshot():
            self.app_cpu.set(self._process.cpu_percent())
            self.app_memory.set(self._process.memory_info().rss)
        try:
            io = self._process.io_counters()
        except (AttributeError, psutil.AccessDenied):
            # io_counters is missing on macOS
            return
        self.app_network_sent.set(io.write_bytes)
        self.app_network_recv.set(io.read_bytes)

    def _refresh_db(self) -> None:
        cpu = 0.0
        memory = 0
        seen: set[int] = set()
        for proc in psutil.process_iter(["pid", "name", "cmdline"]):
            info = proc.info
            if not _is_db_process(info.get("name") or "", " ".join(info.get("cmdline") or [])):
                continue
            pid = info["pid"]
            tracked = self._db_processes.setdefault(pid, proc)
            try:
                cpu += tracked.cpu_percent()
                memory += tracked.memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            seen.add(pid)
        for pid in set(self._db_processes) - seen:
            del self._db_processes[pid]
        self.db_cpu.set(cpu)
        self.db_memory.set(memory)

    def refresh(self) -> None:
        """Update the resource gauges from psutil."""
        try:
            self._refresh_app()
        except psutil.Error as e:
            logger.debug(f"Could not read application process stats: {e}")
        self._refresh_db()

    def render(self) -> bytes:
        """Refresh the gauges and return the registry in Prometheus text format."""
        self.refresh()
        return generate_latest(self.registry)
