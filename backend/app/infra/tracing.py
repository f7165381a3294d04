import atexit
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

_TRACING_CONFIGURED = False
_SQLALCHEMY_ENGINES: set[int] = set()
_TRACING_SHUTDOWN = False

logger = logging.getLogger(__name__)


def _fastapi_request_hook(span, scope) -> None:  # noqa: ANN001
    if not span or not span.is_recording():
        return
    route = scope.get("route")
    # Route templates keep slot and booking ids out of span attributes.
    span.set_attribute("http.target", getattr(route, "path", None) or scope.get("path", "/"))


def configure_tracing(*, service_name: str | None = None) -> None:
    global _TRACING_CONFIGURED
    if _TRACING_CONFIGURED:
        return

    resource_attrs = {
        SERVICE_NAME: os.getenv("OTEL_SERVICE_NAME") or service_name or "api",
        DEPLOYMENT_ENVIRONMENT: os.getenv("DEPLOYMENT_ENV", "local"),
    }
    service_version = os.getenv("SERVICE_VERSION") or os.getenv("GIT_SHA")
    if service_version:
        resource_attrs[SERVICE_VERSION] = service_version

    tracer_provider = TracerProvider(resource=Resource.create(resource_attrs))
    trace.set_tracer_provider(tracer_provider)

    otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    is_testing = os.getenv("TESTING", "").lower() == "true"
    if otlp_endpoint and not is_testing:
        exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=otlp_endpoint.startswith("http://"))
        tracer_provider.add_span_processor(BatchSpanProcessor(exporter))
    elif not is_testing:
        logger.debug("tracing_exporter_skipped_no_endpoint")

    _TRACING_CONFIGURED = True
    atexit.register(shutdown_tracing)


def instrument_fastapi(app: FastAPI, *, tracer_provider=None) -> None:  # noqa: ANN001
    FastAPIInstrumentor().instrument_app(
        app,
        tracer_provider=tracer_provider or trace.get_tracer_provider(),
        server_request_hook=_fastapi_request_hook,
    )


def instrument_sqlalchemy(engine) -> None:  # noqa: ANN001
    if engine is None:
        return
    engine_id = id(engine)
    if engine_id in _SQLALCHEMY_ENGINES:
        return
    SQLAlchemyInstrumentor().instrument(
        engine=engine,
        tracer_provider=trace.get_tracer_provider(),
        capture_statement=False,
    )
    _SQLALCHEMY_ENGINES.add(engine_id)


def shutdown_tracing(*, force_flush: bool = True) -> None:
    global _TRACING_SHUTDOWN
    if _TRACING_SHUTDOWN:
        return
    _TRACING_SHUTDOWN = True
    try:
        tracer_provider = trace.get_tracer_provider()
        if force_flush:
            flush = getattr(tracer_provider, "force_flush", None)
            if callable(flush):
                flush()
        shutdown = getattr(tracer_provider, "shutdown", None)
        if callable(shutdown):
            shutdown()
    except Exception as exc:  # noqa: BLE001
        logger.warning("tracing_shutdown_failed", extra={"extra": {"error": type(exc).__name__}})
