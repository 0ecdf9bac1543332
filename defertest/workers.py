"""Timed sleep workers, instrumented with two scope-exit styles.

``sleep_with_defer_since`` hands the observation to a guard object entered
before the work starts. ``sleep_with_defer_func_since`` registers a closure on
an ``ExitStack`` instead. Both observe the elapsed time when the scope closes,
exactly once, whether the sleep returns, raises or is cancelled.
"""

from __future__ import annotations

import asyncio
from contextlib import ExitStack
from time import perf_counter
from typing import Any, Callable

import structlog

from defertest.observability.metrics import MetricsRegistry


logger = structlog.get_logger(__name__)

SLEEP_WITH_DEFER_SINCE = "sleepWithDeferSince"
SLEEP_WITH_DEFER_FUNC_SINCE = "sleepWithDeferFuncSince"


class LatencyTimer:
    """Observes seconds elapsed since ``__enter__`` into the labelled summary on exit.

    The summary child is looked up only when the observation is made, so a label
    tuple shows up in a scrape once it has at least one sample.
    """

    def __init__(
        self,
        metrics: MetricsRegistry,
        labels: tuple[str, str, str],
        clock: Callable[[], float] = perf_counter,
    ) -> None:
        self._metrics = metrics
        self._labels = labels
        self._clock = clock
        self._start: float | None = None
        self.elapsed: float | None = None

    def __enter__(self) -> LatencyTimer:
        self._start = self._clock()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if self._start is None or self.elapsed is not None:
            return
        self.elapsed = self._clock() - self._start
        self._metrics.summary(*self._labels).observe(self.elapsed)


async def sleep_with_defer_since(metrics: MetricsRegistry, sleep_seconds: float) -> None:
    with LatencyTimer(metrics, (SLEEP_WITH_DEFER_SINCE, "start", "complete")):
        metrics.counter(SLEEP_WITH_DEFER_SINCE, "start", "counter").inc()

        await asyncio.sleep(sleep_seconds)


async def sleep_with_defer_func_since(metrics: MetricsRegistry, sleep_seconds: float) -> None:
    start = perf_counter()
    with ExitStack() as deferred:

        @deferred.callback
        def _observe() -> None:
            metrics.summary(SLEEP_WITH_DEFER_FUNC_SINCE, "start", "complete").observe(perf_counter() - start)

        metrics.counter(SLEEP_WITH_DEFER_FUNC_SINCE, "start", "counter").inc()

        await asyncio.sleep(sleep_seconds)


def launch_workers(metrics: MetricsRegistry, *, pairs: int, sleep_seconds: float) -> list[asyncio.Task[None]]:
    """Start ``pairs`` of both variants concurrently; must be called from a running loop."""

    tasks: list[asyncio.Task[None]] = []
    for i in range(pairs):
        tasks.append(
            asyncio.create_task(sleep_with_defer_since(metrics, sleep_seconds), name=f"{SLEEP_WITH_DEFER_SINCE}-{i}")
        )
        tasks.append(
            asyncio.create_task(
                sleep_with_defer_func_since(metrics, sleep_seconds), name=f"{SLEEP_WITH_DEFER_FUNC_SINCE}-{i}"
            )
        )
    logger.info("workers.launched", pairs=pairs, sleep_seconds=sleep_seconds)
    return tasks
