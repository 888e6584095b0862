"""
Probe Helper - synthetic round-trip prober for the event delivery platform.

Two listeners share one helper:
- the probe app (PROBE_PORT) runs a round trip per probe request and answers
  ACK/NACK once the platform delivered the triggered event back
- the receiver app (RECEIVER_PORT) accepts the events the platform delivers

Features:
- Structured logging with correlation IDs
- Prometheus metrics
- Health checks (liveness from the last successful round trip, and readiness)
"""
import asyncio
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from starlette.requests import Request
from .config import Settings, get_settings
from .logging import setup_logging, get_logger
from .api.router import probe_router, receiver_router
from .middleware import CorrelationIdMiddleware, ErrorHandlerMiddleware, MetricsMiddleware, PayloadLimitMiddleware
from .metrics import Metrics
from .health import HealthChecker
from .probe.helper import ProbeHelper
from .services.factory import build_helper

VERSION = "0.1.0"
SERVICE_NAME = "probe-helper"

# Initialize configuration
settings = get_settings()

# Setup logging
setup_logging(json_output=settings.LOG_JSON, service_name=SERVICE_NAME, level=settings.LOG_LEVEL)
logger = get_logger()


def _receiver_route_label(request: Request) -> str:
    if request.url.path in ("/healthz", "/health/ready"):
        return request.url.path
    return "/{target}"


def _build_app(title: str, helper: ProbeHelper, settings: Settings, route_label=None) -> FastAPI:
    app = FastAPI(title=title, version=VERSION)
    app.state.helper = helper
    health_checker = HealthChecker(helper, service_name=SERVICE_NAME, version=VERSION)

    # Added in reverse: correlation ID runs first, then metrics, errors, size limit
    app.add_middleware(PayloadLimitMiddleware, max_size=settings.MAX_EVENT_SIZE)
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(MetricsMiddleware, metrics=helper.metrics, route_label=route_label)
    app.add_middleware(CorrelationIdMiddleware)

    @app.get("/healthz")
    async def healthz():
        """
        Liveness probe.

        Returns:
            200: A round trip succeeded within the staleness window
            503: No round trip succeeded for longer than that
        """
        logger.debug("health_check_liveness")
        status_code = 200 if helper.healthy() else 503
        return JSONResponse(status_code=status_code, content=health_checker.liveness())

    @app.get("/health/ready")
    async def health_ready():
        """
        Readiness probe - comprehensive health check.

        Returns:
            200: Service is ready to handle traffic
            503: Service is not ready
        """
        logger.debug("health_check_readiness")
        result = await health_checker.readiness()
        status_code = 200 if result["status"] == "ready" else 503
        return JSONResponse(status_code=status_code, content=result)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Release waiting probes and close adapters."""
        logger.info("service_stopping", app=title)
        helper.metrics.app_up.labels(service=SERVICE_NAME, version=VERSION).set(0)
        await helper.shutdown()

    # Mount Prometheus metrics endpoint
    app.mount("/metrics", make_asgi_app(registry=helper.metrics.registry))
    return app


def create_probe_app(helper: ProbeHelper, settings: Settings | None = None) -> FastAPI:
    """Create the app that accepts probe requests."""
    app = _build_app("Probe Helper - probe", helper, settings or get_settings())
    app.include_router(probe_router)
    return app


def create_receiver_app(helper: ProbeHelper, settings: Settings | None = None) -> FastAPI:
    """Create the app that accepts delivered events."""
    app = _build_app("Probe Helper - receiver", helper, settings or get_settings(), route_label=_receiver_route_label)
    app.include_router(receiver_router)
    return app


# Initialize metrics and the helper
metrics = Metrics(service_name=SERVICE_NAME, version=VERSION)
helper = build_helper(settings, metrics)

probe_app = create_probe_app(helper, settings)
receiver_app = create_receiver_app(helper, settings)


async def serve():
    """
    Serve both listeners until either is told to exit.

    On exit every waiting probe is released as NACK before the servers
    finish draining their in-flight requests.
    """
    import uvicorn

    servers = [
        uvicorn.Server(uvicorn.Config(probe_app, host="0.0.0.0", port=settings.PROBE_PORT, log_config=None)),
        uvicorn.Server(uvicorn.Config(receiver_app, host="0.0.0.0", port=settings.RECEIVER_PORT, log_config=None)),
    ]

    async def release_on_exit():
        while not any(server.should_exit for server in servers):
            await asyncio.sleep(0.1)
        for server in servers:
            server.should_exit = True
        await helper.shutdown()

    logger.info(
        "service_starting",
        version=VERSION,
        env=settings.ENV,
        probe_port=settings.PROBE_PORT,
        receiver_port=settings.RECEIVER_PORT,
    )
    await asyncio.gather(*(server.serve() for server in servers), release_on_exit())


if __name__ == "__main__":
    asyncio.run(serve())
