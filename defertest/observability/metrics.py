from __future__ import annotations

import math
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest
from prometheus_client.core import SummaryMetricFamily
from prometheus_client.exposition import choose_encoder
from prometheus_client.gc_collector import GCCollector
from prometheus_client.platform_collector import PlatformCollector
from prometheus_client.process_collector import ProcessCollector
from prometheus_client.registry import Collector
from prometheus_client.utils import floatToGoString


COUNTER_NAME = "counters_deferTest"
SUMMARY_NAME = "histograms_deferTest"
LABEL_NAMES: tuple[str, ...] = ("function", "variable", "type")

QUANTILE_ERROR = 0.05
SUMMARY_MAX_AGE_SECONDS = 5 * 60.0
DEFAULT_OBJECTIVES: dict[float, float] = {
    0.1: QUANTILE_ERROR,
    0.5: QUANTILE_ERROR,
    0.99: QUANTILE_ERROR,
}


class MetricsRegistrationError(ValueError):
    """Raised when a metric name is re-registered with a different schema."""


def _quantile(sorted_values: list[float], q: float) -> float:
    if not sorted_values:
        return math.nan
    # Nearest-rank; exact over the retained window, so well inside the objective error.
    rank = math.ceil(q * len(sorted_values)) - 1
    return sorted_values[min(len(sorted_values) - 1, max(0, rank))]


@dataclass
class SummarySnapshot:
    count: int = 0
    sum: float = 0.0
    quantiles: dict[float, float] = field(default_factory=dict)


class AgedSummaryChild:
    """Latency samples for one label tuple.

    ``count``/``sum`` are cumulative; quantiles only cover samples younger than ``max_age``.
    """

    def __init__(self, objectives: Mapping[float, float], max_age: float, clock: Callable[[], float]) -> None:
        self._lock = Lock()
        self._objectives = dict(objectives)
        self._max_age = max_age
        self._clock = clock
        self._samples: deque[tuple[float, float]] = deque()
        self._count = 0
        self._sum = 0.0

    def observe(self, amount: float) -> None:
        with self._lock:
            now = self._clock()
            self._count += 1
            self._sum += float(amount)
            self._samples.append((now, float(amount)))
            self._prune(now)

    def _prune(self, now: float) -> None:
        horizon = now - self._max_age
        while self._samples and self._samples[0][0] <= horizon:
            self._samples.popleft()

    def snapshot(self) -> SummarySnapshot:
        with self._lock:
            self._prune(self._clock())
            values = sorted(value for _, value in self._samples)
            count, total = self._count, self._sum
        return SummarySnapshot(
            count=count,
            sum=total,
            quantiles={q: _quantile(values, q) for q in sorted(self._objectives)},
        )


class AgedSummary(Collector):
    """Labelled summary with quantiles over a sliding age window.

    ``prometheus_client.Summary`` only exports count and sum, so this collector
    renders the quantile samples itself.
    """

    def __init__(
        self,
        name: str,
        documentation: str,
        labelnames: Iterable[str],
        *,
        objectives: Mapping[float, float] | None = None,
        max_age: float = SUMMARY_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        registry: CollectorRegistry | None = None,
    ) -> None:
        self.name = name
        self.documentation = documentation
        self.labelnames = tuple(labelnames)
        if "quantile" in self.labelnames:
            raise ValueError("'quantile' is reserved for summary quantile samples")
        self.objectives = dict(objectives or DEFAULT_OBJECTIVES)
        for q, err in self.objectives.items():
            if not 0.0 <= q <= 1.0 or err < 0.0:
                raise ValueError(f"invalid quantile objective {q}:{err}")
        self.max_age = max_age
        self._clock = clock
        self._lock = Lock()
        self._children: dict[tuple[str, ...], AgedSummaryChild] = {}
        if registry is not None:
            registry.register(self)

    def labels(self, *labelvalues: Any, **labelkwargs: Any) -> AgedSummaryChild:
        if labelvalues and labelkwargs:
            raise ValueError("Can't pass both *args and **kwargs")
        if labelkwargs:
            if sorted(labelkwargs) != sorted(self.labelnames):
                raise ValueError("Incorrect label names")
            values = tuple(str(labelkwargs[name]) for name in self.labelnames)
        else:
            if len(labelvalues) != len(self.labelnames):
                raise ValueError("Incorrect label count")
            values = tuple(str(v) for v in labelvalues)

        with self._lock:
            child = self._children.get(values)
            if child is None:
                child = AgedSummaryChild(self.objectives, self.max_age, self._clock)
                self._children[values] = child
            return child

    def describe(self) -> list[SummaryMetricFamily]:
        return [SummaryMetricFamily(self.name, self.documentation, labels=self.labelnames)]

    def collect(self) -> Iterable[SummaryMetricFamily]:
        family = SummaryMetricFamily(self.name, self.documentation, labels=self.labelnames)
        with self._lock:
            children = list(self._children.items())
        for values, child in children:
            snap = child.snapshot()
            labels = dict(zip(self.labelnames, values))
            for q, value in snap.quantiles.items():
                family.add_sample(self.name, {**labels, "quantile": floatToGoString(q)}, value)
            family.add_metric(list(values), count_value=snap.count, sum_value=snap.sum)
        yield family


class MetricsRegistry:
    """Process metrics, constructed once at startup and injected where needed."""

    def __init__(
        self,
        registry: CollectorRegistry | None = None,
        *,
        objectives: Mapping[float, float] | None = None,
        max_age: float = SUMMARY_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        include_runtime_collectors: bool = False,
    ) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self._objectives = dict(objectives or DEFAULT_OBJECTIVES)
        self._max_age = max_age
        self._clock = clock
        self._lock = Lock()
        self._vectors: dict[str, tuple[str, tuple[str, ...], Any]] = {}

        if include_runtime_collectors:
            ProcessCollector(registry=self.registry)
            PlatformCollector(registry=self.registry)
            GCCollector(registry=self.registry)

        self.counters = self.counter_vec(COUNTER_NAME, "deferTest counters", LABEL_NAMES)
        self.latencies = self.summary_vec(SUMMARY_NAME, "deferTest latencies in seconds", LABEL_NAMES)

    def _lookup(self, kind: str, name: str, labelnames: tuple[str, ...]) -> Any | None:
        existing = self._vectors.get(name)
        if existing is None:
            return None
        existing_kind, existing_labels, collector = existing
        if existing_kind != kind or existing_labels != labelnames:
            raise MetricsRegistrationError(
                f"metric {name!r} already registered as {existing_kind}{list(existing_labels)}, "
                f"not {kind}{list(labelnames)}"
            )
        return collector

    def counter_vec(self, name: str, documentation: str, labelnames: Iterable[str]) -> Counter:
        labelnames = tuple(labelnames)
        with self._lock:
            collector = self._lookup("counter", name, labelnames)
            if collector is None:
                collector = Counter(name, documentation, labelnames=labelnames, registry=self.registry)
                self._vectors[name] = ("counter", labelnames, collector)
            return collector

    def summary_vec(self, name: str, documentation: str, labelnames: Iterable[str]) -> AgedSummary:
        labelnames = tuple(labelnames)
        with self._lock:
            collector = self._lookup("summary", name, labelnames)
            if collector is None:
                collector = AgedSummary(
                    name,
                    documentation,
                    labelnames,
                    objectives=self._objectives,
                    max_age=self._max_age,
                    clock=self._clock,
                    registry=self.registry,
                )
                self._vectors[name] = ("summary", labelnames, collector)
            return collector

    @staticmethod
    def _check_label_values(values: tuple[str, ...]) -> None:
        for value in values:
            if not isinstance(value, str) or not value:
                raise ValueError(f"label values must be non-empty strings, got {values!r}")

    def counter(self, function: str, variable: str, kind: str) -> Counter:
        """Register-and-get the counter child for ``(function, variable, kind)``."""

        values = (function, variable, kind)
        self._check_label_values(values)
        return self.counters.labels(*values)

    def summary(self, function: str, variable: str, kind: str) -> AgedSummaryChild:
        """Register-and-get the latency summary child for ``(function, variable, kind)``."""

        values = (function, variable, kind)
        self._check_label_values(values)
        return self.latencies.labels(*values)

    def render(self, accept_header: str | None = None, *, openmetrics: bool = True) -> tuple[bytes, str]:
        """Encode the registry, negotiating OpenMetrics from the Accept header when enabled."""

        if openmetrics:
            encoder, content_type = choose_encoder(accept_header or "")
        else:
            encoder, content_type = generate_latest, CONTENT_TYPE_LATEST
        return encoder(self.registry), content_type
