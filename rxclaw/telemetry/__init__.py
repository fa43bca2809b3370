"""Logging and tracing for rxclaw, built on OpenTelemetry.

``make_logger(source, logger_provider)`` is what components call; the CLI
wires exporters once through ``configure_telemetry``.
"""

from .config import configure_telemetry, get_default_providers, make_logger, make_tracer
from .exporters import LOG_FORMAT, ConsoleLogRecordExporter, FileLogRecordExporter
from .logger import (
    REDACTED,
    LogContext,
    OTelLogger,
    format_log_record,
    format_log_record_json,
    redact_attributes,
)

__all__ = [
    "LOG_FORMAT",
    "REDACTED",
    "ConsoleLogRecordExporter",
    "FileLogRecordExporter",
    "LogContext",
    "OTelLogger",
    "configure_telemetry",
    "format_log_record",
    "format_log_record_json",
    "get_default_providers",
    "make_logger",
    "make_tracer",
    "redact_attributes",
]
