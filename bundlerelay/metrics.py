"""Prometheus-style metrics and an HTTP endpoint that exposes them."""

from __future__ import annotations

import asyncio
import bisect
import math
import re
import sys
import threading
from collections.abc import Iterable, Sequence

from aiohttp import web

_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
LATENCY_BUCKETS = (1.0, 2.5, 5.0, 10.0, 25.0, 50.0, 100.0)
CONTENT_TYPE = "text/plain"


def _fmt(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer():
        return str(int(value))
    return repr(value)


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, help: str) -> None:
        if not _NAME_RE.match(name):
            raise ValueError(f"invalid metric name: {name!r}")
        self.name = name
        self.help = help
        self._lock = threading.Lock()

    def _samples(self) -> list[str]:
        raise NotImplementedError

    def _render(self) -> list[str]:
        return [
            f"# HELP {self.name} {_escape_help(self.help)}",
            f"# TYPE {self.name} {self.kind}",
            *self._samples(),
        ]


class Counter(_Metric):
    """A monotonically increasing value."""

    kind = "counter"

    def __init__(self, name: str, help: str) -> None:
        super().__init__(name, help)
        self._value = 0.0

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def inc(self, amount: float = 1.0) -> None:
        """Add a non-negative amount."""
        if amount < 0:
            raise ValueError("counters can only increase")
        with self._lock:
            self._value += amount

    def _samples(self) -> list[str]:
        return [f"{self.name} {_fmt(self.value)}"]


class Gauge(_Metric):
    """A value that can go up and down."""

    kind = "gauge"

    def __init__(self, name: str, help: str) -> None:
        super().__init__(name, help)
        self._value: float = 0

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def set(self, value: float) -> None:
        with self._lock:
            self._value = value

    def _samples(self) -> list[str]:
        return [f"{self.name} {_fmt(self.value)}"]


class Histogram(_Metric):
    """Observations counted into cumulative buckets."""

    kind = "histogram"

    def __init__(self, name: str, help: str, buckets: Iterable[float] = DEFAULT_BUCKETS) -> None:
        super().__init__(name, help)
        bounds = [float(b) for b in buckets if not math.isinf(float(b))]
        if not bounds:
            raise ValueError("a histogram needs at least one finite bucket")
        if any(a >= b for a, b in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be strictly increasing")
        self.buckets = tuple(bounds)
        self._counts = [0] * (len(bounds) + 1)
        self._sum = 0.0

    @property
    def count(self) -> int:
        with self._lock:
            return sum(self._counts)

    @property
    def sum(self) -> float:
        with self._lock:
            return self._sum

    def observe(self, value: float) -> None:
        with self._lock:
            self._counts[bisect.bisect_left(self.buckets, value)] += 1
            self._sum += value

    def _samples(self) -> list[str]:
        with self._lock:
            counts = list(self._counts)
            total = self._sum
        lines = []
        running = 0
        for bound, count in zip(self.buckets, counts):
            running += count
            lines.append(f'{self.name}_bucket{{le="{_fmt(bound)}"}} {running}')
        running += counts[-1]
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {running}')
        lines.append(f"{self.name}_sum {_fmt(total)}")
        lines.append(f"{self.name}_count {running}")
        return lines


class Registry:
    """A named collection of metrics rendered in the text exposition format."""

    def __init__(self) -> None:
        self._metrics: dict[str, _Metric] = {}
        self._lock = threading.Lock()

    def register(self, metric: _Metric) -> _Metric:
        """Add a metric; raise ValueError if its name is taken."""
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"duplicate metric: {metric.name}")
            self._metrics[metric.name] = metric
        return metric

    def render(self) -> str:
        with self._lock:
            metrics = sorted(self._metrics.values(), key=lambda m: m.name)
        lines = [line for metric in metrics for line in metric._render()]
        return "\n".join(lines) + "\n" if lines else ""


REGISTRY = Registry()


def _counter(name: str, help: str) -> Counter:
    return REGISTRY.register(Counter(name, help))


def _latency(name: str, help: str) -> Histogram:
    return REGISTRY.register(Histogram(name, help, LATENCY_BUCKETS))


BUNDLE_IN_TOTAL = _counter("bundle_in_total", "Bundles Received")
BUNDLE_OUT_TOTAL = _counter("bundle_out_total", "Bundles Transmit")
SEARCHER_BUNDLE_IN_TOTAL = _counter("searcher_bundle_in_total", "Searcher Bundles Received")
SEARCHER_BUNDLE_OUT_TOTAL = _counter("searcher_bundle_out_total", "Searcher Bundles Transmit")
SEARCHER_BUNDLE_DROP_TOTAL = _counter("searcher_bundle_drop_total", "Searcher Bundles Drop")
SEARCHER_COUNT = REGISTRY.register(Gauge("searcher_count", "searcher Connection"))
PKT_IN_TOTAL = _counter("packet_in_total", "Packets Received")
PKT_OUT_TOTAL = _counter("packet_out_total", "Packets Transmit")
PACKET_DROP_TOTAL = _counter("packet_drop_total", "Dropped packets due to slow subscriber")
BUNDLE_DROP_TOTAL = _counter("bundle_drop_total", "Dropped bundles due to slow subscriber")
SEARCHER_PACKET_LATENCY_MS = _latency("seacher_packet_latency_ms", "relayer → searcher Latency(ms)")
SEARCHER_BUNDLE_LATENCY_MS = _latency("seacher_bundle_latency_ms", "searcher → validator Latency(ms)")


def metrics_app(registry: Registry | None = None) -> web.Application:
    """Build a web application answering every path with the rendered metrics."""
    source = registry if registry is not None else REGISTRY

    async def handle(_request: web.Request) -> web.Response:
        return web.Response(text=source.render(), content_type=CONTENT_TYPE, charset="utf-8")

    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", handle)
    return app


def _host_text(host: str | Sequence[int]) -> str:
    return host if isinstance(host, str) else ".".join(str(b) for b in host)


async def serve(addr: tuple[str | Sequence[int], int], registry: Registry | None = None) -> None:
    """Serve the metrics over HTTP until cancelled."""
    host, port = addr
    host_text = _host_text(host)
    runner = web.AppRunner(metrics_app(registry))
    await runner.setup()
    try:
        try:
            await web.TCPSite(runner, host_text, port).start()
        except OSError as exc:
            print(f"metrics server error: {exc}", file=sys.stderr)
            return
        print(f"📊 metrics listening on {host_text}:{port}")
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()