"""Prometheus-style metrics registry with a text exporter over HTTP."""

from __future__ import annotations

import bisect
import logging
import math
import os
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Iterator

from chainindex.errors import IndexerError

logger = logging.getLogger(__name__)

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
EXPORT_INTERVAL = 5.0

_Sample = tuple[str, tuple[tuple[str, str], ...], float]


def _format_value(value: float) -> str:
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "+Inf" if value > 0 else "-Inf"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _escape_help(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def _format_labels(labels: tuple[tuple[str, str], ...]) -> str:
    if not labels:
        return ""
    inner = ",".join(f'{name}="{_escape_label(value)}"' for name, value in labels)
    return "{" + inner + "}"


class Counter:
    """A monotonically increasing value."""

    kind = "counter"

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        return self._value

    def inc(self, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError("counters can only increase")
        with self._lock:
            self._value += amount

    def _samples(self, name: str) -> Iterator[_Sample]:
        yield name, (), self._value


class Gauge:
    """A value that can go up and down."""

    kind = "gauge"

    def __init__(self) -> None:
        self._value: float = 0
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        return self._value

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    def inc(self, amount: float = 1) -> None:
        with self._lock:
            self._value += amount

    def _samples(self, name: str) -> Iterator[_Sample]:
        yield name, (), self._value


class Histogram:
    """Observations counted into cumulative buckets."""

    kind = "histogram"

    def __init__(self, buckets: tuple[float, ...] = DEFAULT_BUCKETS) -> None:
        self.buckets = tuple(sorted(buckets))
        self._counts = [0] * len(self.buckets)
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    @property
    def count(self) -> int:
        return self._count

    @property
    def sum(self) -> float:
        return self._sum

    def observe(self, value: float) -> None:
        index = bisect.bisect_left(self.buckets, value)
        with self._lock:
            if index < len(self._counts):
                self._counts[index] += 1
            self._sum += value
            self._count += 1

    @contextmanager
    def timer(self) -> Iterator[None]:
        """Observe the wall-clock duration of the enclosed block."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - started)

    def _samples(self, name: str) -> Iterator[_Sample]:
        with self._lock:
            counts = list(self._counts)
            total, count = self._sum, self._count
        cumulative = 0
        for bound, bucket_count in zip(self.buckets, counts):
            cumulative += bucket_count
            yield f"{name}_bucket", (("le", _format_value(float(bound))),), cumulative
        yield f"{name}_bucket", (("le", "+Inf"),), count
        yield f"{name}_sum", (), total
        yield f"{name}_count", (), count


class MetricVec:
    """A family of metrics of one kind, told apart by label values."""

    def __init__(self, labels: tuple[str, ...] | list[str], factory: Callable[[], object]) -> None:
        self.labels = tuple(labels)
        self._factory = factory
        self.kind = factory().kind  # type: ignore[attr-defined]
        self._children: dict[tuple[str, ...], object] = {}
        self._lock = threading.Lock()

    def with_label_values(self, *args: str):
        if len(args) != len(self.labels):
            raise ValueError(
                f"expected {len(self.labels)} label values, got {len(args)}"
            )
        key = tuple(str(arg) for arg in args)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._factory()
            return child

    def _samples(self, name: str) -> Iterator[_Sample]:
        with self._lock:
            children = sorted(self._children.items())
        for values, child in children:
            base = tuple(zip(self.labels, values))
            for sample_name, extra, value in child._samples(name):  # type: ignore[attr-defined]
                yield sample_name, base + extra, value


@dataclass(frozen=True)
class _Family:
    name: str
    help: str
    metric: object


@dataclass(frozen=True)
class ProcessStats:
    """Resource usage of the running process."""

    utime: float
    rss: int
    fds: int


class Metrics:
    """A registry of metrics, served in the Prometheus text format."""

    def __init__(self, addr: tuple[str, int]) -> None:
        self.addr = addr
        self._families: dict[str, _Family] = {}
        self._lock = threading.Lock()

    def _register(self, name: str, help: str, metric):
        with self._lock:
            if name in self._families:
                raise ValueError(f"metric {name!r} is already registered")
            self._families[name] = _Family(name, help, metric)
        return metric

    def counter(self, name: str, help: str) -> Counter:
        return self._register(name, help, Counter())

    def counter_vec(self, name: str, help: str, labels) -> MetricVec:
        return self._register(name, help, MetricVec(labels, Counter))

    def gauge(self, name: str, help: str) -> Gauge:
        return self._register(name, help, Gauge())

    def gauge_vec(self, name: str, help: str, labels) -> MetricVec:
        return self._register(name, help, MetricVec(labels, Gauge))

    def histogram(self, name: str, help: str) -> Histogram:
        return self._register(name, help, Histogram())

    def histogram_vec(self, name: str, help: str, labels) -> MetricVec:
        return self._register(name, help, MetricVec(labels, Histogram))

    def render(self) -> str:
        """Return every registered metric in the Prometheus text format."""
        with self._lock:
            families = sorted(self._families.values(), key=lambda f: f.name)
        lines = []
        for family in families:
            lines.append(f"# HELP {family.name} {_escape_help(family.help)}")
            lines.append(f"# TYPE {family.name} {family.metric.kind}")
            for name, labels, value in family.metric._samples(family.name):
                lines.append(f"{name}{_format_labels(labels)} {_format_value(value)}")
        return "".join(line + "\n" for line in lines)

    def start(self) -> ThreadingHTTPServer:
        """Serve the metrics over HTTP and export process statistics.

        Returns the running server so that callers may shut it down.
        """
        registry = self

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                body = registry.render().encode()
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; version=0.0.4")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            do_POST = do_GET

            def log_message(self, format: str, *args) -> None:
                logger.debug("metrics request: " + format, *args)

        try:
            server = ThreadingHTTPServer(self.addr, _Handler)
        except OSError as err:
            raise IndexerError(
                f"failed to start monitoring HTTP server at {self.addr}"
            ) from err
        self._start_process_exporter()
        threading.Thread(target=server.serve_forever, name="metrics", daemon=True).start()
        return server

    def _start_process_exporter(self) -> None:
        rss = self.gauge("process_memory_rss", "Resident memory size [bytes]")
        cpu = self.gauge_vec(
            "process_cpu_usage", "CPU usage by this process [seconds]", ["type"]
        )
        fds = self.gauge("process_fs_fds", "# of file descriptors")

        def export() -> None:
            while True:
                try:
                    stats = read_stats()
                except IndexerError as err:
                    logger.warning("failed to export stats: %s", err)
                else:
                    cpu.with_label_values("utime").set(stats.utime)
                    rss.set(stats.rss)
                    fds.set(stats.fds)
                time.sleep(EXPORT_INTERVAL)

        threading.Thread(target=export, name="exporter", daemon=True).start()


def parse_stats(stat_text: str, page_size: int, ticks_per_second: float, fds: int) -> ProcessStats:
    """Build process statistics from the contents of /proc/self/stat."""
    parts = stat_text.split()

    def part(index: int, name: str) -> int:
        if index >= len(parts):
            raise IndexerError(f"missing {name}: {parts!r}")
        text = parts[index]
        if not (text.isascii() and text.isdigit()):
            raise IndexerError(f"invalid {name}: {parts!r}")
        return int(text)

    utime = part(13, "utime") / ticks_per_second
    rss = part(23, "rss") * page_size
    return ProcessStats(utime=utime, rss=rss, fds=fds)


def read_stats() -> ProcessStats:
    """Read the statistics of the running process from /proc."""
    if sys.platform == "darwin":
        return ProcessStats(utime=0.0, rss=0, fds=0)
    try:
        with open("/proc/self/stat", encoding="ascii", errors="replace") as handle:
            text = handle.read()
    except OSError as err:
        raise IndexerError("failed to read stats") from err
    try:
        fds = len(os.listdir("/proc/self/fd"))
    except OSError as err:
        raise IndexerError("failed to read fd directory") from err
    page_size = os.sysconf("SC_PAGE_SIZE")
    ticks = float(os.sysconf("SC_CLK_TCK"))
    return parse_stats(text, page_size, ticks, fds)