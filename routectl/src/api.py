from __future__ import annotations

import logging
import os
import time

from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from routectl.src.config import parse_bool
from routectl.src.errors import ErrorKind, RouteControllingError
from routectl.src.schemas import OperationResult, RouteRuleDto, RouteRuleIdDto
from routectl.src.service import RouteRuleService

ERROR_STATUS: dict[ErrorKind, int] = {
    ErrorKind.UNDEFINED: 500,
    ErrorKind.CONCURRENCY_CONFLICT: 409,
    ErrorKind.UNMANAGED_PODS: 422,
    ErrorKind.BAD_POD_LABELS: 503,
    ErrorKind.BAD_RESOURCE: 400,
    ErrorKind.RESOURCE_NOT_FOUND: 404,
    ErrorKind.BAD_UPSTREAM: 503,
}

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)
REQUEST_IN_FLIGHT = Gauge(
    "http_in_flight_requests",
    "Current number of HTTP requests being processed",
)
KNOWN_METRIC_PATHS = {
    "/route-rules/all",
    "/route-rules/add",
    "/route-rules/delete",
    "/healthz",
    "/readyz",
    "/metrics",
}


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records per-request Prometheus counters and histograms.

    Skips the ``/metrics`` endpoint itself to avoid self-referential inflation.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)
        REQUEST_IN_FLIGHT.inc()
        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            duration = time.monotonic() - start
            metric_path = request.url.path if request.url.path in KNOWN_METRIC_PATHS else "other"
            REQUEST_COUNT.labels(method=request.method, path=metric_path, status=status_code).inc()
            REQUEST_DURATION.labels(method=request.method, path=metric_path).observe(duration)
            REQUEST_IN_FLIGHT.dec()
        return response


_TRACING_INITIALIZED = False


def configure_tracing(app: FastAPI, logger: logging.Logger) -> None:
    """Enable OpenTelemetry tracing when ``OTEL_ENABLED=true``.

    Spans cover inbound API requests and the outbound urllib3 calls the
    Kubernetes client makes. Without the OpenTelemetry packages tracing is
    skipped with a warning.
    """
    global _TRACING_INITIALIZED

    if not parse_bool(os.getenv("OTEL_ENABLED")):
        return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.instrumentation.fastapi import (
            FastAPIInstrumentor,
        )
        from opentelemetry.instrumentation.urllib3 import (
            URLLib3Instrumentor,
        )
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
        )
    except ImportError:
        logger.warning(
            "OTEL_ENABLED=true but OpenTelemetry packages are not installed; tracing disabled"
        )
        return

    if not _TRACING_INITIALIZED:
        endpoint_base = os.getenv(
            "OTEL_EXPORTER_OTLP_ENDPOINT",
            "http://otel-collector.monitoring.svc:4318",
        )
        endpoint = os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT") or (
            endpoint_base
            if endpoint_base.endswith("/v1/traces")
            else endpoint_base.rstrip("/") + "/v1/traces"
        )

        resource = Resource.create({
            "service.name": os.getenv("OTEL_SERVICE_NAME", "routectl"),
            "service.namespace": os.getenv("OTEL_SERVICE_NAMESPACE", "routectl"),
        })

        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
        trace.set_tracer_provider(provider)
        URLLib3Instrumentor().instrument()
        _TRACING_INITIALIZED = True
        logger.info("OpenTelemetry tracing enabled (OTLP endpoint=%s)", endpoint)

    FastAPIInstrumentor.instrument_app(app)


def create_app(service: RouteRuleService, version: str = "0.1.0") -> FastAPI:
    """Create the route-rule HTTP API around *service*.

    Endpoints:
        ``POST /route-rules/all``: List rules of a service matching a name.
        ``POST /route-rules/add``: Add one rule, optionally overwriting.
        ``POST /route-rules/delete``: Delete rules matching a name.
        ``GET /healthz`` / ``GET /readyz``: Probes.
        ``GET /metrics``: Prometheus metrics in text exposition format.

    Handlers are plain functions, so FastAPI runs them in its worker thread
    pool and calls for different services proceed concurrently.
    """
    logger = logging.getLogger(__name__)
    app = FastAPI(title="routectl", version=version)
    app.add_middleware(MetricsMiddleware)

    @app.exception_handler(RouteControllingError)
    async def route_controlling_error_handler(
        request: Request, exc: RouteControllingError
    ) -> JSONResponse:
        status_code = ERROR_STATUS.get(exc.kind, 500)
        if status_code >= 500:
            logger.error("Request %s %s failed upstream: %s", request.method, request.url.path, exc)
        else:
            logger.info("Request %s %s rejected: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.kind.value, "detail": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Return a standardized JSON error body for unhandled exceptions."""
        logger.exception("Unhandled error for %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "internal_server_error", "detail": "An unexpected error occurred."},
        )

    @app.post("/route-rules/all", response_model=list[RouteRuleDto])
    def list_route_rules(
        rule_id: RouteRuleIdDto,
        exact: bool = Query(default=False),
    ) -> list[RouteRuleDto]:
        rules = service.find_rules(rule_id.to_model(), exact=exact)
        return [RouteRuleDto.from_model(rule) for rule in rules]

    @app.post("/route-rules/add", response_model=OperationResult)
    def add_route_rule(
        rule: RouteRuleDto,
        allow_overwrite: bool = Query(default=False, alias="allowOverwrite"),
    ) -> OperationResult:
        service.add_rule(rule.to_model(), allow_overwrite=allow_overwrite)
        return OperationResult(success=True, message=f"Stored route rule {rule.name}")

    @app.post("/route-rules/delete", response_model=OperationResult)
    def delete_route_rules(
        rule_id: RouteRuleIdDto,
        exact: bool = Query(default=True),
    ) -> OperationResult:
        removed = service.delete_rules(rule_id.to_model(), exact=exact)
        return OperationResult(success=True, message=f"Deleted {len(removed)} route rule(s)")

    @app.get("/healthz", response_class=PlainTextResponse)
    def healthz() -> str:
        return "ok"

    @app.get("/readyz", response_class=PlainTextResponse)
    def readyz() -> str:
        return "ok"

    @app.get("/metrics", response_class=PlainTextResponse)
    def metrics() -> bytes:
        return generate_latest()

    configure_tracing(app, logger)
    return app
