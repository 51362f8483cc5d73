import re
import urllib.request

import pytest

from chainindex import metrics as metrics_module
from chainindex.errors import IndexerError
from chainindex.metrics import Histogram, Metrics, parse_stats, read_stats


@pytest.fixture
def registry():
    return Metrics(("127.0.0.1", 0))


def _stat_line(utime="250", rss="1000", count=52):
    parts = [str(i) for i in range(count)]
    parts[13] = utime
    parts[23] = rss
    return " ".join(parts)


def test_counter_increments_and_renders(registry):
    counter = registry.counter("requests", "number of requests")
    counter.inc()
    counter.inc(4)
    assert counter.value == 5
    text = registry.render()
    assert "# HELP requests number of requests\n" in text
    assert "# TYPE requests counter\n" in text
    assert "requests 5\n" in text


def test_counter_rejects_negative(registry):
    counter = registry.counter("c", "c")
    with pytest.raises(ValueError):
        counter.inc(-1)


def test_gauge_set_and_inc(registry):
    gauge = registry.gauge("height", "tip height")
    gauge.set(10)
    gauge.inc(-3)
    assert gauge.value == 7
    assert "height 7\n" in registry.render()


def test_vec_children_and_labels(registry):
    vec = registry.gauge_vec("mempool_count", "count", ["type"])
    vec.with_label_values("txs").set(3)
    assert vec.with_label_values("txs").value == 3
    assert 'mempool_count{type="txs"} 3\n' in registry.render()


def test_vec_rejects_wrong_label_count(registry):
    vec = registry.counter_vec("x", "x", ["a", "b"])
    with pytest.raises(ValueError):
        vec.with_label_values("only-one")


def test_duplicate_registration_fails(registry):
    registry.gauge("dup", "first")
    with pytest.raises(ValueError):
        registry.counter("dup", "second")


def test_histogram_buckets_are_cumulative(registry):
    hist = registry.histogram("lat", "latency")
    for value in (0.001, 0.3, 0.3, 20.0):
        hist.observe(value)
    text = registry.render()
    counts = [int(m) for m in re.findall(r'lat_bucket\{le="[^"]+"\} (\d+)', text)]
    assert counts == sorted(counts)
    assert counts[-1] == 4
    assert 'lat_bucket{le="0.5"} 3\n' in text
    assert "lat_count 4\n" in text


def test_histogram_timer_observes_once():
    hist = Histogram()
    with hist.timer():
        pass
    assert hist.count == 1
    assert hist.sum >= 0


def test_histogram_vec_labels(registry):
    vec = registry.histogram_vec("dur", "duration", ["step"])
    vec.with_label_values("add").observe(0.1)
    assert 'dur_count{step="add"} 1\n' in registry.render()


def test_parse_stats_values():
    page_size = 4096
    ticks = 100.0
    stats = parse_stats(_stat_line("250", "1000"), page_size, ticks, 7)
    assert stats.utime == 250 / ticks
    assert stats.rss == 1000 * page_size
    assert stats.fds == 7


def test_parse_stats_missing_field():
    with pytest.raises(IndexerError, match="missing utime"):
        parse_stats("1 2 3", 4096, 100.0, 0)


def test_parse_stats_invalid_field():
    with pytest.raises(IndexerError, match="invalid rss"):
        parse_stats(_stat_line(rss="abc"), 4096, 100.0, 0)


def test_read_stats_on_darwin_is_zero(monkeypatch):
    monkeypatch.setattr(metrics_module.sys, "platform", "darwin")
    stats = read_stats()
    assert (stats.utime, stats.rss, stats.fds) == (0.0, 0, 0)


def test_start_serves_metrics(registry):
    registry.counter("served", "served counter").inc(2)
    server = registry.start()
    try:
        port = server.server_address[1]
        with urllib.request.urlopen(f"http://127.0.0.1:{port}/", timeout=5) as resp:
            body = resp.read().decode()
    finally:
        server.shutdown()
        server.server_close()
    assert "served 2\n" in body
    assert "# TYPE process_memory_rss gauge" in body