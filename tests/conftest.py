from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient

from defertest.config import Settings, get_settings
from defertest.observability.metrics import MetricsRegistry
from defertest.server import create_app


LABELS_A = {"function": "sleepWithDeferSince", "variable": "start"}
LABELS_B = {"function": "sleepWithDeferFuncSince", "variable": "start"}


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def counter_value(metrics: MetricsRegistry, labels: dict[str, str]) -> float | None:
    return metrics.registry.get_sample_value("counters_deferTest_total", {**labels, "type": "counter"})


def summary_value(metrics: MetricsRegistry, suffix: str, labels: dict[str, str]) -> float | None:
    return metrics.registry.get_sample_value(f"histograms_deferTest{suffix}", {**labels, "type": "complete"})


@pytest.fixture(autouse=True)
def test_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "PROM_LISTEN",
        "PROM_PATH",
        "PROM_MAX_REQUESTS_IN_FLIGHT",
        "PROM_ENABLE_OPENMETRICS",
        "DEBUG_LEVEL",
        "LOG_LEVEL",
        "SLEEP_SECONDS",
        "WORKER_PAIRS",
        "SHUTDOWN_GRACE_SECONDS",
        "BUILD_COMMIT",
        "BUILD_DATE",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        prom_listen="127.0.0.1:0",
        sleep_seconds=0.05,
        shutdown_grace_seconds=1.0,
    )


@pytest.fixture
def metrics() -> MetricsRegistry:
    return MetricsRegistry()


@pytest.fixture
async def api_client(metrics: MetricsRegistry, settings: Settings) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=create_app(metrics, settings))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
