from __future__ import annotations

import asyncio
import sys
from typing import IO

import structlog

from defertest.config import Settings
from defertest.console import read_line
from defertest.lifecycle import LifecycleController
from defertest.observability.metrics import MetricsRegistry
from defertest.server import MetricsServer, create_app
from defertest.workers import launch_workers


logger = structlog.get_logger("main")

PROMPT = "Enter text: "


async def run(
    settings: Settings,
    *,
    metrics: MetricsRegistry | None = None,
    lifecycle: LifecycleController | None = None,
    stdin: IO[str] | None = None,
    stdout: IO[str] | None = None,
) -> int:
    """Serve metrics, run the workers and wait for one console line or a signal.

    Returns the process exit code.
    """

    stdin = stdin if stdin is not None else sys.stdin
    stdout = stdout if stdout is not None else sys.stdout
    if metrics is None:
        metrics = MetricsRegistry(include_runtime_collectors=True)
    if lifecycle is None:
        lifecycle = LifecycleController()

    loop = asyncio.get_running_loop()
    lifecycle.install(loop)

    logger.info(
        "startup",
        prom_listen=settings.prom_listen,
        prom_path=settings.prom_path,
        debug_level=settings.debug_level,
    )

    server = MetricsServer(create_app(metrics, settings), settings.listen_host, settings.listen_port)
    server_task = asyncio.create_task(server.serve(), name="metrics-server")
    workers = launch_workers(metrics, pairs=settings.worker_pairs, sleep_seconds=settings.sleep_seconds)

    stdout.write(PROMPT)
    stdout.flush()
    line_future = read_line(stdin)
    cancelled_wait = asyncio.create_task(lifecycle.cancelled.wait(), name="lifecycle-wait")

    try:
        done, _ = await asyncio.wait(
            {line_future, cancelled_wait, server_task},
            return_when=asyncio.FIRST_COMPLETED,
        )

        if server_task in done and not server_task.cancelled() and server_task.exception() is not None:
            logger.error("prometheus error", error=str(server_task.exception()))
            return 1

        if lifecycle.terminating:
            for task in workers:
                task.cancel()
            return 0

        if line_future in done:
            try:
                line = line_future.result()
            except (EOFError, OSError, ValueError) as exc:
                stdout.write(f"An error occured while reading input. Please try again {exc}\n")
                stdout.flush()
                logger.error("console.read_failed", error=str(exc) or type(exc).__name__)
                return 0

            stdout.write(line.rstrip("\n").rstrip("\r") + "\n")
            stdout.flush()
            logger.info("main: That's all Folks!")
        return 0
    finally:
        cancelled_wait.cancel()
        line_future.cancel()
        server.stop()
        await lifecycle.drain([server_task, *workers, cancelled_wait], timeout=settings.shutdown_grace_seconds)
        lifecycle.uninstall()
