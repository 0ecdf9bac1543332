from __future__ import annotations

import contextlib
from collections.abc import Iterator

import structlog
import uvicorn
from fastapi import FastAPI

from defertest.api.metrics import build_metrics_router
from defertest.config import Settings
from defertest.observability.metrics import MetricsRegistry
from defertest.observability.middleware import InFlightLimitMiddleware
from defertest.version import __version__


logger = structlog.get_logger(__name__)


class MetricsServerError(RuntimeError):
    """The metrics listener could not be started."""


def create_app(metrics: MetricsRegistry, settings: Settings) -> FastAPI:
    app = FastAPI(
        title="deferTest metrics",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.include_router(
        build_metrics_router(
            metrics,
            path=settings.prom_path,
            enable_openmetrics=settings.prom_enable_openmetrics,
        )
    )
    app.add_middleware(
        InFlightLimitMiddleware,
        max_in_flight=settings.prom_max_requests_in_flight,
        limited_paths={settings.prom_path},
    )
    return app


class _Server(uvicorn.Server):
    # Signals belong to LifecycleController, not uvicorn.
    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class MetricsServer:
    """Runs the metrics app with uvicorn inside the current event loop."""

    def __init__(self, app: FastAPI, host: str, port: int) -> None:
        self.host = host
        self.port = port
        config = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_config=None,
            access_log=False,
            lifespan="off",
        )
        self._server = _Server(config)

    @property
    def started(self) -> bool:
        return self._server.started

    @property
    def bound_port(self) -> int | None:
        for server in self._server.servers:
            for sock in server.sockets:
                return sock.getsockname()[1]
        return None

    async def serve(self) -> None:
        logger.info("metrics_server.start", host=self.host, port=self.port)
        try:
            await self._server.serve()
        except SystemExit as exc:
            # uvicorn exits the process when the bind fails.
            raise MetricsServerError(f"cannot listen on {self.host}:{self.port}") from exc
        if not self._server.started and not self._server.should_exit:
            raise MetricsServerError(f"cannot listen on {self.host}:{self.port}")
        logger.info("metrics_server.stopped")

    def stop(self) -> None:
        self._server.should_exit = True
