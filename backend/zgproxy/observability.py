import time
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Match
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter

REQ_COUNTER = Counter("http_requests_total", "Total HTTP Requests", ["method", "path", "status"])
REQ_LATENCY = Histogram("http_request_latency_seconds", "Request latency", ["method", "path"])

UPSTREAM_REQUESTS = Counter("upstream_requests_total", "Requests sent to 0G providers", ["status", "stream"])
UPSTREAM_LATENCY = Histogram("upstream_request_latency_seconds", "Time until upstream response headers", ["stream"])
PROVIDER_RESOLUTIONS = Counter("provider_resolutions_total", "Provider resolutions by outcome", ["outcome"])

UNMATCHED_PATH = "<unmatched>"


def route_template(request: Request) -> str:
    """Path label for a request: the route pattern, never the raw URL."""
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", UNMATCHED_PATH)
    return UNMATCHED_PATH


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            path = route_template(request)
            REQ_COUNTER.labels(request.method, path, status).inc()
            REQ_LATENCY.labels(request.method, path).observe(time.perf_counter() - start)


metrics_router = APIRouter(tags=["metrics"])


@metrics_router.get("/metrics", include_in_schema=False)
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
