from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from sitecatalog.core.config import Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
EMPTY_TRACE_ID = "0" * 32
EMPTY_SPAN_ID = "0" * 16

_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()
_base_record_factory = logging.getLogRecordFactory()
_correlation_installed = False


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None


@dataclass(frozen=True, slots=True)
class ExporterTarget:
    endpoint: str
    headers: dict[str, str] = field(default_factory=dict)


def configure_logging() -> None:
    _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)


def setup_telemetry(app: FastAPI | None, settings: Settings) -> TelemetryRuntime:
    """Install the tracer provider and instrument httpx (and ``app`` when given).

    Returns a disabled runtime without touching global state when
    ``otel_enabled`` is off.
    """
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None)

    if settings.otel_log_correlation:
        _install_log_correlation()

    provider = _build_provider(settings)
    trace.set_tracer_provider(provider)
    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    _HTTPX_INSTRUMENTOR.instrument(tracer_provider=provider)
    return TelemetryRuntime(enabled=True, provider=provider)


def shutdown_telemetry(app: FastAPI | None, runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    if app is not None:
        FastAPIInstrumentor.uninstrument_app(app)
    _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def resolve_exporter_target(settings: Settings, environ: Mapping[str, str] = os.environ) -> ExporterTarget | None:
    """Pick the OTLP endpoint and headers; settings win over standard OTEL_* variables."""
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or environ.get("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        return None
    raw_headers = settings.otel_exporter_otlp_headers or environ.get("OTEL_EXPORTER_OTLP_HEADERS") or ""
    return ExporterTarget(endpoint=endpoint, headers=parse_header_pairs(raw_headers))


def parse_header_pairs(raw: str) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; entries without ``=`` or a key are skipped."""
    pairs = (item.partition("=") for item in raw.split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


def _build_provider(settings: Settings) -> TracerProvider:
    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio),
    )
    target = resolve_exporter_target(settings)
    if target is None:
        logger.info("no OTLP endpoint configured; spans stay in-process service=%s", settings.otel_service_name)
        return provider

    exporter = OTLPSpanExporter(endpoint=target.endpoint, headers=target.headers or None)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def _trace_record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
    record = _base_record_factory(*args, **kwargs)
    context = trace.get_current_span().get_span_context()
    record.trace_id = format(context.trace_id, "032x") if context.is_valid else EMPTY_TRACE_ID
    record.span_id = format(context.span_id, "016x") if context.is_valid else EMPTY_SPAN_ID
    return record


def _install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return
    logging.setLogRecordFactory(_trace_record_factory)
    _correlation_installed = True
