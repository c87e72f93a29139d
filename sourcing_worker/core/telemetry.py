from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from sourcing_worker.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
# Client libraries that log every request at INFO; a scrape issues thousands.
NOISY_LOGGERS = ("httpx", "httpcore", "asyncpg")
NO_TRACE_ID = "0" * 32
NO_SPAN_ID = "0" * 16

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_CORRELATION_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    service_name: str | None = None


def configure_logging(settings: Settings | None = None) -> None:
    """Root logging with trace/span ids on every record.

    Leaves existing handlers alone so uvicorn or pytest keep their own setup.
    """
    _install_log_correlation()
    if logging.getLogger().handlers:
        return
    level_name = settings.log_level.upper() if settings is not None else "INFO"
    logging.basicConfig(level=logging.getLevelName(level_name), format=LOG_FORMAT)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def service_name_for(settings: Settings, component: str) -> str:
    if component == "worker":
        return settings.otel_service_name
    return f"{settings.otel_service_name}-{component}"


def job_span_attributes(*, job_id: str, name: str, queue: str, attempt: int) -> dict[str, Any]:
    return {"job.id": job_id, "job.name": name, "job.queue": queue, "job.attempt": attempt}


def setup_telemetry(settings: Settings, *, component: str = "worker") -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    if settings.otel_log_correlation:
        _install_log_correlation()

    service_name = service_name_for(settings, component)
    resource = Resource.create(
        {
            SERVICE_NAME: service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            "sourcing.component": component,
            "sourcing.queues": ",".join([*settings.sourcing_queues, settings.refresh_queue]),
        }
    )
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio))
    exporter = _build_exporter(settings, service_name)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    # Outbound calls to the scraped sites and public APIs become child spans of the job.
    _HTTPX_INSTRUMENTOR.instrument()
    logging.getLogger(__name__).info(
        "telemetry enabled service=%s exporter=%s sample_ratio=%s",
        service_name,
        "otlp" if exporter is not None else "none",
        settings.otel_trace_sample_ratio,
    )
    return TelemetryRuntime(enabled=True, provider=provider, service_name=service_name)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def _exporter_endpoint(settings: Settings) -> str | None:
    for candidate in (
        settings.otel_exporter_otlp_endpoint,
        os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT"),
        os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
    ):
        if candidate:
            return candidate
    return None


def _build_exporter(settings: Settings, service_name: str) -> OTLPSpanExporter | None:
    endpoint = _exporter_endpoint(settings)
    if endpoint is None:
        logging.getLogger(__name__).info("OTel exporter endpoint not set; spans stay local service=%s", service_name)
        return None

    headers = parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_headers(raw: str | None) -> dict[str, str]:
    """``key=value`` pairs separated by commas, as in ``OTEL_EXPORTER_OTLP_HEADERS``."""
    if not raw:
        return {}
    pairs = (item.partition("=") for item in raw.split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


def _current_span_ids() -> tuple[str, str]:
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return NO_TRACE_ID, NO_SPAN_ID
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


def _install_log_correlation() -> None:
    global _LOG_CORRELATION_INSTALLED
    if _LOG_CORRELATION_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        record.trace_id, record.span_id = _current_span_ids()
        return record

    logging.setLogRecordFactory(record_factory)
    _LOG_CORRELATION_INSTALLED = True
