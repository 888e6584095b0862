"""
Middleware shared by the probe and receiver listeners.
"""
import time
import uuid
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
import structlog


def _nack(status_code: int, error: str, message: str, **extra) -> JSONResponse:
    # A non-2xx answer is a NACK to CloudEvents senders; say so in the body too
    return JSONResponse(
        status_code=status_code,
        content={"result": "NACK", "error": error, "message": message, **extra},
    )


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Binds a correlation ID to the structlog context of every request.

    The X-Correlation-ID header wins; otherwise the CloudEvent ID (``ce-id``)
    is used, so a probe's log lines share the probe's event ID. Requests with
    neither get a fresh UUID. The ID is echoed in the response.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = (
            request.headers.get("x-correlation-id")
            or request.headers.get("ce-id")
            or str(uuid.uuid4())
        )

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            http_method=request.method,
            http_path=request.url.path,
        )
        ce_type = request.headers.get("ce-type")
        if ce_type:
            structlog.contextvars.bind_contextvars(ce_type=ce_type)

        response = await call_next(request)
        response.headers["x-correlation-id"] = correlation_id
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """
    Request count, latency and in-flight gauge for Prometheus.

    Args:
        metrics: The Metrics instance of the listener
        route_label: Optional callable mapping a request to its ``path``
            label; the receiver accepts arbitrary target paths and collapses
            them so label cardinality stays bounded
    """

    def __init__(self, app, metrics, route_label=None):
        super().__init__(app)
        self.metrics = metrics
        self.route_label = route_label

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith("/metrics"):
            return await call_next(request)

        path = self.route_label(request) if self.route_label else request.url.path
        log = structlog.get_logger()
        status = 500
        started = time.perf_counter()
        self.metrics.http_requests_active.inc()
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        except Exception as e:
            log.error("http_request_error", error=str(e), error_type=type(e).__name__)
            raise
        finally:
            duration = time.perf_counter() - started
            self.metrics.http_requests_active.dec()
            self.metrics.http_requests_total.labels(
                service=self.metrics.service_name,
                method=request.method,
                path=path,
                status=status,
            ).inc()
            self.metrics.http_request_duration.labels(
                service=self.metrics.service_name,
                method=request.method,
                path=path,
            ).observe(duration)
            log.info("http_request", http_status=status, duration_ms=round(duration * 1000, 2))


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Answers unhandled exceptions with a 500 NACK instead of dropping the connection."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            structlog.get_logger().error(
                "unhandled.exception",
                error=str(exc),
                error_type=exc.__class__.__name__,
                exc_info=True,
            )
            return _nack(500, "InternalServerError", "An unexpected error occurred", path=request.url.path)


class PayloadLimitMiddleware(BaseHTTPMiddleware):
    """Rejects events whose declared body size exceeds ``max_size`` bytes."""

    def __init__(self, app, max_size: int):
        super().__init__(app)
        self.max_size = max_size

    async def dispatch(self, request: Request, call_next):
        declared = request.headers.get("content-length", "")
        if request.method == "POST" and declared.isdigit() and int(declared) > self.max_size:
            size = int(declared)
            structlog.get_logger().warning("payload.too_large", size=size, max_size=self.max_size)
            return _nack(
                413,
                "PayloadTooLarge",
                f"Event exceeds maximum size of {self.max_size} bytes",
                max_size=self.max_size,
                received_size=size,
            )
        return await call_next(request)
