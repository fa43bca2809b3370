"""Provider wiring for rxclaw.

Components never reach for the global OTel providers. They take an
optional ``logger_provider`` / ``tracer_provider`` and fall back to a
process-wide console pair built on first use. The CLI builds its own pair
with :func:`configure_telemetry` and passes it down.
"""

from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import (
    BatchLogRecordProcessor,
    LogRecordExporter,
    SimpleLogRecordProcessor,
)
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter

from .exporters import ConsoleLogRecordExporter
from .logger import LogContext, OTelLogger

SERVICE_NAME = "rxclaw"

_defaults: tuple[TracerProvider, LoggerProvider] | None = None


def configure_telemetry(
    service_name: str = SERVICE_NAME,
    service_version: str = "",
    span_exporter: SpanExporter | None = None,
    log_exporter: LogRecordExporter | None = None,
    batch_logs: bool = True,
) -> tuple[TracerProvider, LoggerProvider]:
    """Build a (tracer, logger) provider pair sharing one resource.

    Args:
        service_name: ``service.name`` resource attribute.
        service_version: ``service.version`` resource attribute.
        span_exporter: Receives finished spans in batches, if given.
        log_exporter: Receives log records, if given.
        batch_logs: Queue log records in a background thread. Pass False
            for console and file sinks so lines appear as they happen.

    >>> tracer_provider, logger_provider = configure_telemetry(
    ...     log_exporter=FileLogRecordExporter("rxclaw.log"), batch_logs=False
    ... )
    """
    resource = Resource.create(
        {"service.name": service_name, "service.version": service_version}
    )

    tracer_provider = TracerProvider(resource=resource)
    if span_exporter is not None:
        tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))

    logger_provider = LoggerProvider(resource=resource)
    if log_exporter is not None:
        processor_cls = BatchLogRecordProcessor if batch_logs else SimpleLogRecordProcessor
        logger_provider.add_log_record_processor(processor_cls(log_exporter))

    return tracer_provider, logger_provider


def get_default_providers(
    service_name: str = SERVICE_NAME,
) -> tuple[TracerProvider, LoggerProvider]:
    """The shared stderr-logging pair, created on the first call.

    ``service_name`` only matters on that first call.
    """
    global _defaults
    if _defaults is None:
        _defaults = configure_telemetry(
            service_name=service_name,
            log_exporter=ConsoleLogRecordExporter(),
            batch_logs=False,
        )
    return _defaults


def make_logger(
    source: str,
    logger_provider: LoggerProvider | None = None,
    context: LogContext | None = None,
) -> OTelLogger:
    """Build the OTelLogger for one component, falling back to the defaults."""
    if logger_provider is None:
        _, logger_provider = get_default_providers()
    return OTelLogger(
        logger_provider.get_logger(f"{SERVICE_NAME}.{source}"),
        source=source,
        context=context or LogContext(service=SERVICE_NAME),
    )


def make_tracer(source: str, tracer_provider: TracerProvider | None = None):
    """Tracer for one component, falling back to the default provider."""
    if tracer_provider is None:
        tracer_provider, _ = get_default_providers()
    return tracer_provider.get_tracer(f"{SERVICE_NAME}.{source}")
