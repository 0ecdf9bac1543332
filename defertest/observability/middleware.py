from __future__ import annotations

import uuid
from time import perf_counter
from typing import Any, Callable

import structlog
from starlette.datastructures import MutableHeaders


class InFlightLimitMiddleware:
    """Caps concurrent scrapes, adds request_id context and access logs.

    Requests beyond ``max_in_flight`` on the limited paths are answered with 503
    straight away instead of being queued. ``max_in_flight <= 0`` disables the cap.
    """

    def __init__(self, app: Callable[..., Any], *, max_in_flight: int, limited_paths: set[str] | None = None) -> None:
        self.app = app
        self.max_in_flight = max_in_flight
        self.limited_paths = limited_paths
        # Only touched from the event loop thread.
        self.in_flight = 0

    def _is_limited(self, path: str | None) -> bool:
        if self.max_in_flight <= 0:
            return False
        return self.limited_paths is None or path in self.limited_paths

    async def _reject(self, send: Callable[..., Any]) -> None:
        body = f"Limit of concurrent requests reached ({self.max_in_flight}), try again later.\n".encode()
        await send(
            {
                "type": "http.response.start",
                "status": 503,
                "headers": [
                    (b"content-type", b"text/plain; charset=utf-8"),
                    (b"content-length", str(len(body)).encode()),
                ],
            }
        )
        await send({"type": "http.response.body", "body": body})

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = str(uuid.uuid4())
        path = scope.get("path")
        method = scope.get("method")

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=path,
            method=method,
        )

        start = perf_counter()
        status_code: int = 500
        limited = self._is_limited(path)

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code

            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 500))
                headers = MutableHeaders(scope=message)
                headers["X-Request-ID"] = request_id

            await send(message)

        try:
            if limited and self.in_flight >= self.max_in_flight:
                await self._reject(send_wrapper)
                return

            if limited:
                self.in_flight += 1
            try:
                await self.app(scope, receive, send_wrapper)
            finally:
                if limited:
                    self.in_flight -= 1
        finally:
            elapsed_ms = (perf_counter() - start) * 1000.0
            structlog.get_logger("access").info(
                "http_request",
                status_code=status_code,
                elapsed_ms=round(elapsed_ms, 2),
                in_flight=self.in_flight,
            )

            structlog.contextvars.clear_contextvars()
