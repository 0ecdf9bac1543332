from __future__ import annotations

import asyncio
import signal
from collections.abc import Iterable
from enum import Enum
from typing import Any

import structlog


logger = structlog.get_logger(__name__)

SHUTDOWN_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)


class LifecycleState(str, Enum):
    RUNNING = "running"
    TERMINATING = "terminating"


class LifecycleController:
    """Process-wide cancellation, driven by SIGINT/SIGTERM.

    ``cancelled`` is the one event background activities share. Once set the
    controller never goes back to running.
    """

    def __init__(self, signals: Iterable[signal.Signals] = SHUTDOWN_SIGNALS) -> None:
        self.signals = tuple(signals)
        self.state = LifecycleState.RUNNING
        self.cancelled = asyncio.Event()
        self.received_signal: int | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._previous_handlers: dict[int, Any] = {}

    @property
    def terminating(self) -> bool:
        return self.state is LifecycleState.TERMINATING

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        for sig in self.signals:
            try:
                loop.add_signal_handler(sig, self.request_shutdown, sig)
            except (NotImplementedError, RuntimeError):
                # Windows loops, or not on the main thread's loop.
                self._previous_handlers[sig] = signal.signal(sig, self._threadsafe_handler)

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for sig in self.signals:
            if sig in self._previous_handlers:
                signal.signal(sig, self._previous_handlers.pop(sig))
            else:
                self._loop.remove_signal_handler(sig)
        self._loop = None

    def _threadsafe_handler(self, signum: int, frame: Any) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.request_shutdown, signum)

    def request_shutdown(self, signum: int | None = None) -> None:
        if self.terminating:
            return
        self.state = LifecycleState.TERMINATING
        self.received_signal = signum
        name = signal.Signals(signum).name if signum is not None else None
        logger.info("signal caught, closing application", signal=name)
        self.cancelled.set()

    async def drain(self, tasks: Iterable[asyncio.Task[Any]], timeout: float) -> None:
        """Wait up to ``timeout`` seconds for ``tasks``, then cancel the stragglers."""

        pending = {task for task in tasks if not task.done()}
        if pending and timeout > 0:
            _, pending = await asyncio.wait(pending, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("shutdown.cancelled_pending", tasks=sorted(task.get_name() for task in pending))
