from __future__ import annotations

import asyncio
import threading
from typing import IO


def read_line(stream: IO[str]) -> asyncio.Future[str]:
    """Read one line from ``stream`` on a daemon thread.

    The blocking read cannot be interrupted, so the thread is a daemon and an
    abandoned read never holds up interpreter exit. EOF resolves to ``EOFError``.
    """

    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()

    def _resolve(line: str | None, exc: BaseException | None) -> None:
        if future.done():
            return
        if exc is not None:
            future.set_exception(exc)
        elif not line or not line.endswith("\n"):
            future.set_exception(EOFError("EOF"))
        else:
            future.set_result(line)

    def _reader() -> None:
        line: str | None = None
        error: BaseException | None = None
        try:
            line = stream.readline()
        except (OSError, ValueError) as exc:
            error = exc
        try:
            loop.call_soon_threadsafe(_resolve, line, error)
        except RuntimeError:
            # The loop closed while we were blocked; nobody is waiting any more.
            pass

    threading.Thread(target=_reader, name="console-reader", daemon=True).start()
    return future
