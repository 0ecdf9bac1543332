import asyncio
import io
import os
import signal
import socket

from structlog.testing import capture_logs

from defertest.config import Settings
from defertest.lifecycle import LifecycleController
from defertest.runner import PROMPT, run

from conftest import LABELS_A, LABELS_B, counter_value, summary_value


def _blocking_stdin() -> tuple[io.TextIOWrapper, int]:
    read_fd, write_fd = os.pipe()
    return os.fdopen(read_fd, "r"), write_fd


async def _release(stdin: io.TextIOWrapper, write_fd: int) -> None:
    os.close(write_fd)
    await asyncio.sleep(0.05)
    stdin.close()


async def test_empty_line_is_echoed_and_exits_zero(settings, metrics) -> None:
    stdout = io.StringIO()
    with capture_logs() as logs:
        code = await run(settings, metrics=metrics, stdin=io.StringIO("\n"), stdout=stdout)

    assert code == 0
    assert stdout.getvalue() == PROMPT + "\n"
    assert any(entry["event"] == "main: That's all Folks!" for entry in logs)


async def test_line_is_trimmed_and_echoed(settings, metrics) -> None:
    stdout = io.StringIO()
    code = await run(settings, metrics=metrics, stdin=io.StringIO("hello world\r\n"), stdout=stdout)

    assert code == 0
    assert stdout.getvalue() == PROMPT + "hello world\n"


async def test_workers_finish_within_grace_period(settings, metrics) -> None:
    code = await run(settings, metrics=metrics, stdin=io.StringIO("x\n"), stdout=io.StringIO())

    assert code == 0
    assert counter_value(metrics, LABELS_A) == 5.0
    assert counter_value(metrics, LABELS_B) == 5.0
    assert summary_value(metrics, "_count", LABELS_A) == 5.0
    assert summary_value(metrics, "_count", LABELS_B) == 5.0


async def test_read_failure_is_logged_and_returns(settings, metrics) -> None:
    stdout = io.StringIO()
    with capture_logs() as logs:
        code = await run(settings, metrics=metrics, stdin=io.StringIO(""), stdout=stdout)

    assert code == 0
    assert "An error occured while reading input" in stdout.getvalue()
    assert any(entry["event"] == "console.read_failed" for entry in logs)
    assert not any(entry["event"] == "main: That's all Folks!" for entry in logs)


async def test_signal_shuts_down_promptly_without_waiting_for_workers(metrics) -> None:
    settings = Settings(prom_listen="127.0.0.1:0", sleep_seconds=30, shutdown_grace_seconds=1.0)
    lifecycle = LifecycleController()
    stdin, write_fd = _blocking_stdin()
    loop = asyncio.get_running_loop()
    loop.call_later(0.2, lifecycle.request_shutdown, signal.SIGTERM)

    started = loop.time()
    try:
        code = await asyncio.wait_for(
            run(settings, metrics=metrics, lifecycle=lifecycle, stdin=stdin, stdout=io.StringIO()),
            timeout=5,
        )
    finally:
        await _release(stdin, write_fd)

    assert code == 0
    assert loop.time() - started < 5
    assert lifecycle.terminating
    # Each worker started, was cancelled, and its timer still fired.
    assert counter_value(metrics, LABELS_A) == 5.0
    assert summary_value(metrics, "_count", LABELS_A) == 5.0
    assert summary_value(metrics, "_sum", LABELS_A) < 5 * 30


async def test_bind_failure_is_fatal(metrics) -> None:
    holder = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    holder.bind(("127.0.0.1", 0))
    holder.listen(1)
    port = holder.getsockname()[1]

    settings = Settings(prom_listen=f"127.0.0.1:{port}", sleep_seconds=0.01, shutdown_grace_seconds=1.0)
    stdin, write_fd = _blocking_stdin()
    try:
        with capture_logs() as logs:
            code = await asyncio.wait_for(
                run(settings, metrics=metrics, stdin=stdin, stdout=io.StringIO()),
                timeout=5,
            )
    finally:
        holder.close()
        await _release(stdin, write_fd)

    assert code == 1
    assert any(entry["event"] == "prometheus error" for entry in logs)
