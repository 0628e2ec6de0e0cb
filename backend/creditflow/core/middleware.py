"""FastAPI middleware for metrics, tracing, correlation IDs and request logging."""

import logging
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from creditflow.core.logging import clear_correlation_id, get_correlation_id, set_correlation_id
from creditflow.core.metrics import HTTP_REQUEST_DURATION_SECONDS, HTTP_REQUESTS_TOTAL
from creditflow.core.tracing import create_span, record_exception

_UUID_RE = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}", re.IGNORECASE
)
_NUMERIC_RE = re.compile(r"/\d+(?=/|$)")


def normalize_path(path: str) -> str:
    """Replace UUIDs and numeric ids with ``{id}`` to bound label cardinality."""
    return _NUMERIC_RE.sub("/{id}", _UUID_RE.sub("{id}", path))


class MetricsMiddleware(BaseHTTPMiddleware):
    """Collect request counts and latencies."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        path = normalize_path(request.url.path)
        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            HTTP_REQUEST_DURATION_SECONDS.labels(method=method, endpoint=path).observe(
                time.perf_counter() - start_time
            )
            HTTP_REQUESTS_TOTAL.labels(
                method=method, endpoint=path, status_code=str(status_code)
            ).inc()


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Bind a correlation ID to the request, honouring an incoming header."""

    CORRELATION_ID_HEADER = "X-Correlation-ID"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(self.CORRELATION_ID_HEADER) or str(uuid.uuid4())
        set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
            response.headers[self.CORRELATION_ID_HEADER] = correlation_id
            return response
        finally:
            clear_correlation_id()


class TracingMiddleware(BaseHTTPMiddleware):
    """Wrap each request in a server span."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        method = request.method
        path = request.url.path

        with create_span(
            f"{method} {normalize_path(path)}",
            attributes={
                "http.method": method,
                "http.url": str(request.url),
                "http.route": path,
                "correlation_id": get_correlation_id(),
            },
            kind=trace.SpanKind.SERVER,
        ) as span:
            try:
                response = await call_next(request)
            except Exception as e:
                record_exception(e)
                raise
            span.set_attribute("http.status_code", response.status_code)
            return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log request start, completion and failure."""

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.logger = logging.getLogger("creditflow.requests")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        self.logger.info(
            "Request started",
            extra={
                "method": request.method,
                "path": request.url.path,
                "query": str(request.query_params),
                "client_ip": request.client.host if request.client else None,
            },
        )

        try:
            response = await call_next(request)
        except Exception as e:
            self.logger.error(
                "Request failed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
                    "error": str(e),
                },
                exc_info=True,
            )
            raise

        self.logger.info(
            "Request completed",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
            },
        )
        return response


__all__ = [
    "MetricsMiddleware",
    "CorrelationIdMiddleware",
    "TracingMiddleware",
    "RequestLoggingMiddleware",
    "normalize_path",
]
