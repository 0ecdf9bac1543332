from __future__ import annotations

from fastapi import APIRouter, Request, Response

from defertest.observability.metrics import MetricsRegistry


def build_metrics_router(metrics: MetricsRegistry, *, path: str, enable_openmetrics: bool) -> APIRouter:
    router = APIRouter(tags=["metrics"])

    # Sync handler: encoding runs in the threadpool so scrapes overlap with the workers.
    def scrape(request: Request) -> Response:
        body, content_type = metrics.render(request.headers.get("accept"), openmetrics=enable_openmetrics)
        return Response(content=body, media_type=content_type)

    router.add_api_route(path, scrape, methods=["GET"], include_in_schema=False)
    return router
