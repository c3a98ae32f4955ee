import pytest
from aiohttp.test_utils import TestClient, TestServer

from bundlerelay.metrics import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Registry,
    metrics_app,
)


def _sample(text, name):
    for line in text.splitlines():
        if line.startswith(name + " "):
            return float(line.split(" ", 1)[1])
    raise AssertionError(f"{name} not rendered")


def test_counter_accumulates():
    counter = Counter("c_total", "things")
    counter.inc()
    counter.inc(2.5)
    assert counter.value == 1 + 2.5


def test_counter_rejects_negative():
    counter = Counter("c_total", "things")
    with pytest.raises(ValueError):
        counter.inc(-1)


def test_invalid_name_rejected():
    with pytest.raises(ValueError):
        Counter("bad name", "x")


def test_duplicate_registration_rejected():
    registry = Registry()
    registry.register(Counter("dup_total", "a"))
    with pytest.raises(ValueError):
        registry.register(Gauge("dup_total", "b"))


def test_counter_render_format():
    registry = Registry()
    registry.register(Counter("x_total", "help text")).inc()
    assert registry.render() == "# HELP x_total help text\n# TYPE x_total counter\nx_total 1\n"


def test_empty_registry_renders_nothing():
    assert Registry().render() == ""


def test_gauge_set_renders_value():
    registry = Registry()
    gauge = registry.register(Gauge("g", "gauge"))
    gauge.set(7)
    gauge.set(4)
    assert _sample(registry.render(), "g") == gauge.value
    assert "# TYPE g gauge" in registry.render()


def test_histogram_buckets_cumulative():
    registry = Registry()
    hist = registry.register(Histogram("lat", "latency", [1.0, 10.0, 100.0]))
    values = [0.5, 3, 1000, 10]
    for v in values:
        hist.observe(v)
    text = registry.render()
    buckets = [
        int(line.rsplit(" ", 1)[1])
        for line in text.splitlines()
        if line.startswith("lat_bucket")
    ]
    assert buckets == sorted(buckets)
    assert buckets[-1] == len(values)
    assert _sample(text, "lat_count") == len(values)
    assert _sample(text, "lat_sum") == sum(values)
    assert 'lat_bucket{le="+Inf"}' in text


def test_histogram_rejects_unsorted_buckets():
    with pytest.raises(ValueError):
        Histogram("h", "h", [5.0, 1.0])


def test_default_registry_has_source_metrics():
    text = REGISTRY.render()
    for name in ("bundle_in_total", "searcher_count", "seacher_packet_latency_ms", "packet_drop_total"):
        assert f"# TYPE {name}" in text


@pytest.mark.asyncio
async def test_app_serves_rendered_metrics():
    registry = Registry()
    registry.register(Counter("served_total", "served")).inc(3)
    async with TestClient(TestServer(metrics_app(registry))) as client:
        resp = await client.get("/metrics")
        body = await resp.text()
        other = await client.get("/anything")
        assert other.status == 200
    assert resp.status == 200
    assert body == registry.render()