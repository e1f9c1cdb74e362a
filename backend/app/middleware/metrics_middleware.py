"""
ASGI middleware for HTTP request metrics.
Records request count, duration and 4xx/5xx errors per normalized route.
"""
import re
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.utils.metrics import http_requests_total, http_request_duration_seconds, errors_total

# Numeric ids and generated references (PAY-..., TKT-..., REF-...) become placeholders
_NUMERIC_ID = re.compile(r'/\d+(?=/|$)')
_REFERENCE = re.compile(r'/(PAY|TKT|REF)-[0-9A-Za-z-]+(?=/|$)')

SKIPPED_PATHS = ("/metrics",)


def normalize_path(path: str) -> str:
    """Collapse ids so each route is a single label value."""
    path = _REFERENCE.sub(r'/{\1}', path)
    return _NUMERIC_ID.sub('/{id}', path)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to track HTTP metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in SKIPPED_PATHS:
            return await call_next(request)

        start_time = time.time()
        method = request.method
        path = normalize_path(request.url.path)

        try:
            response = await call_next(request)
        except Exception:
            errors_total.labels(error_type="exception").inc()
            raise

        status_code = response.status_code
        http_requests_total.labels(method=method, path=path, status=status_code).inc()
        http_request_duration_seconds.labels(method=method, path=path).observe(time.time() - start_time)

        if status_code >= 400:
            errors_total.labels(error_type=f"{status_code // 100}xx").inc()

        return response
