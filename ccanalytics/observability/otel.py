"""OpenTelemetry + Prometheus fallback wiring for the sync engine.

Every instrument is declared once in ``_INSTRUMENTS`` and materialized for
whichever exporters are enabled. All ``record_*`` helpers are no-ops until
``initialize`` has run with ``CCANALYTICS_OTEL_ENABLED`` set.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI

from ccanalytics import config

logger = logging.getLogger("ccanalytics.observability")


@dataclass(frozen=True)
class _Instrument:
    name: str
    kind: str  # "counter" | "histogram"
    unit: str
    description: str
    labels: tuple[str, ...]


_INSTRUMENTS: dict[str, _Instrument] = {
    "ingestion": _Instrument(
        "ccanalytics_ingestion_events_total", "counter", "1",
        "Session file ingestion outcomes", ("entity", "result", "project"),
    ),
    "ingestion_latency": _Instrument(
        "ccanalytics_ingestion_latency_ms", "histogram", "ms",
        "Parse and write latency of one session file", ("entity", "result", "project"),
    ),
    "parser_failures": _Instrument(
        "ccanalytics_parser_failures_total", "counter", "1",
        "Session files that failed to parse", ("parser", "project"),
    ),
    "tokens": _Instrument(
        "ccanalytics_tokens_total", "counter", "1",
        "Tokens written, by model and direction", ("model", "direction", "project"),
    ),
    "cost": _Instrument(
        "ccanalytics_cost_usd_total", "counter", "usd",
        "Estimated cost written, by model", ("model", "project"),
    ),
    "retention_deleted": _Instrument(
        "ccanalytics_retention_deleted_total", "counter", "1",
        "Rows removed by retention sweeps", ("table",),
    ),
}

_initialized = False
_enabled = False
_tracer: Any | None = None
_providers: list[Any] = []
_fastapi_instrumentor: Any | None = None
_otel_instruments: dict[str, Any] = {}
_prom_instruments: dict[str, Any] = {}


def _signal_endpoint(base: str, signal_path: str) -> str:
    """OTLP HTTP endpoint for one signal, e.g. ``http://collector:4318/v1/traces``."""
    endpoint = (base or "").strip().rstrip("/")
    if not endpoint or endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/v1"):
        endpoint = endpoint[: -len("/v1")]
    return endpoint + signal_path


def _clean(labels: dict[str, Any]) -> dict[str, str]:
    return {key: (str(value).strip() if value is not None else "") or "unknown" for key, value in labels.items()}


def _emit(key: str, amount: float, **labels: Any) -> None:
    if amount < 0:
        return
    values = _clean(labels)
    spec = _INSTRUMENTS[key]

    otel_instrument = _otel_instruments.get(key) if _enabled else None
    if otel_instrument is not None:
        if spec.kind == "histogram":
            otel_instrument.record(amount, values)
        else:
            otel_instrument.add(amount, values)

    prom_instrument = _prom_instruments.get(key)
    if prom_instrument is not None:
        bound = prom_instrument.labels(**{name: values.get(name, "unknown") for name in spec.labels})
        if spec.kind == "histogram":
            bound.observe(amount)
        else:
            bound.inc(amount)


def _start_prometheus() -> None:
    from prometheus_client import Counter, Histogram, start_http_server

    try:
        start_http_server(config.PROM_PORT)
    except OSError as exc:
        logger.warning("Prometheus endpoint not started on port %s: %s", config.PROM_PORT, exc)
        return

    for key, spec in _INSTRUMENTS.items():
        factory = Histogram if spec.kind == "histogram" else Counter
        _prom_instruments[key] = factory(spec.name, spec.description, list(spec.labels))
    logger.info("Prometheus metrics listening on port %s", config.PROM_PORT)


def initialize(app: FastAPI | None = None) -> None:
    """Configure exporters once. Later calls only instrument additional apps."""
    global _initialized, _enabled, _tracer, _fastapi_instrumentor

    if _initialized:
        if _enabled and app is not None and _fastapi_instrumentor is not None:
            _fastapi_instrumentor.instrument_app(app)
        return
    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (CCANALYTICS_OTEL_ENABLED=false)")
        return

    from opentelemetry import metrics, trace
    from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    service_name = config.OTEL_SERVICE_NAME or "ccanalytics-sync"
    resource = Resource.create({"service.name": service_name, "service.namespace": "ccanalytics"})

    span_exporter = OTLPSpanExporter(endpoint=_signal_endpoint(config.OTEL_ENDPOINT, "/v1/traces") or None)
    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(span_exporter))
    trace.set_tracer_provider(trace_provider)

    metric_exporter = OTLPMetricExporter(endpoint=_signal_endpoint(config.OTEL_ENDPOINT, "/v1/metrics") or None)
    meter_provider = MeterProvider(
        resource=resource,
        metric_readers=[PeriodicExportingMetricReader(metric_exporter)],
    )
    metrics.set_meter_provider(meter_provider)

    meter = metrics.get_meter("ccanalytics.sync")
    for key, spec in _INSTRUMENTS.items():
        create = meter.create_histogram if spec.kind == "histogram" else meter.create_counter
        _otel_instruments[key] = create(spec.name, unit=spec.unit, description=spec.description)

    _providers[:] = [meter_provider, trace_provider]
    _tracer = trace.get_tracer("ccanalytics.sync")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True
    if app is not None:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus()

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _enabled:
        return
    if app is not None and _fastapi_instrumentor is not None:
        _fastapi_instrumentor.uninstrument_app(app)
    for provider in _providers:
        try:
            provider.shutdown()
        except Exception:
            logger.exception("Telemetry provider shutdown failed")
    _providers.clear()
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def record_ingestion(entity: str, result: str, duration_ms: float, *, project: str) -> None:
    _emit("ingestion", 1, entity=entity, result=result, project=project)
    _emit("ingestion_latency", max(0.0, float(duration_ms)), entity=entity, result=result, project=project)


def record_parser_failure(parser: str, *, project: str) -> None:
    _emit("parser_failures", 1, parser=parser, project=project)


def record_token_cost(*, project: str, model: str, token_input: int, token_output: int, cost_usd: float) -> None:
    for direction, amount in (("input", int(token_input)), ("output", int(token_output))):
        if amount > 0:
            _emit("tokens", amount, model=model, direction=direction, project=project)
    if cost_usd > 0:
        _emit("cost", float(cost_usd), model=model, project=project)


def record_retention_deleted(table: str, count: int) -> None:
    if count > 0:
        _emit("retention_deleted", count, table=table)
