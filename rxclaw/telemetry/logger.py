"""Structured logging on top of the OTel Logs API.

Every rxclaw component logs through an :class:`OTelLogger`. The logger
stamps each record with its component name (``log.source``) and with the
dimensions held in a :class:`LogContext`: which gateway role is speaking,
which device, which connection. Credential-looking attributes are masked
before a record leaves the process.

The two line formatters here are shared by the console and file exporters.
"""

import json
import time
from dataclasses import dataclass, fields, replace
from datetime import UTC, datetime

from opentelemetry._logs import LogRecord, SeverityNumber

# Attribute keys containing any of these fragments are never emitted verbatim.
SECRET_KEY_FRAGMENTS = ("token", "signature", "private", "secret", "password")
REDACTED = "***"

# LogContext field -> record attribute
_CONTEXT_KEYS = {
    "service": "service.name",
    "role": "gateway.role",
    "device_id": "device.id",
    "connection_id": "connection.id",
    "scope": "log.scope",
}

# Device ids are sha256 hex; the prefix is enough to tell devices apart.
_DEVICE_PREFIX = 16


@dataclass(frozen=True)
class LogContext:
    """Who is logging: service, gateway role, device and connection.

    Empty fields are left out of the record. Use :meth:`child` to narrow
    a context, e.g. once a connection id is known.
    """

    service: str = ""
    role: str = ""
    device_id: str = ""
    connection_id: str = ""
    scope: str = ""

    def as_attributes(self) -> dict[str, str]:
        return {
            _CONTEXT_KEYS[f.name]: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name)
        }

    def child(self, **overrides: str) -> "LogContext":
        return replace(self, **overrides)


def _is_secret(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in SECRET_KEY_FRAGMENTS)


def redact_attributes(attrs: dict) -> dict:
    """Mask values whose key names a credential."""
    return {key: REDACTED if _is_secret(key) else value for key, value in attrs.items()}


def _record_time(record: LogRecord) -> datetime:
    return datetime.fromtimestamp((record.timestamp or 0) / 1e9, tz=UTC)


def format_log_record(record: LogRecord) -> str:
    """Render one record as a console/file line.

    ``2024-06-01T12:00:00Z [INFO] [trace:span] node/0123abcd GatewayClient\\t: text``

    The trace part only appears inside a span. Role, device prefix and
    scope are joined with ``/`` when present.
    """
    attrs = record.attributes or {}
    parts = [
        str(attrs.get("gateway.role", "")),
        str(attrs.get("device.id", ""))[:_DEVICE_PREFIX],
        str(attrs.get("log.scope", "")),
    ]
    dims = "/".join(p for p in parts if p)

    line = f"{_record_time(record):%Y-%m-%dT%H:%M:%SZ} [{record.severity_text}]"
    if record.trace_id and record.span_id:
        trace = format(record.trace_id, "032x")[:8]
        span = format(record.span_id, "016x")[:8]
        line += f" [{trace}:{span}]"
    if dims:
        line += f" {dims}"
    return f"{line} {attrs.get('log.source', 'Unknown')}\t: {record.body}\n"


def format_log_record_json(record: LogRecord) -> str:
    """Render one record as a JSON line (for log shippers)."""
    severity = record.severity_number
    data = {
        "timestamp": _record_time(record).isoformat(),
        "severity_text": record.severity_text,
        "severity_number": severity.value if severity else None,
        "body": record.body,
        "attributes": dict(record.attributes or {}),
    }
    if record.trace_id:
        data["trace_id"] = format(record.trace_id, "032x")
    if record.span_id:
        data["span_id"] = format(record.span_id, "016x")
    return json.dumps(data, default=str, ensure_ascii=False) + "\n"


class OTelLogger:
    """Per-component logger emitting OTel log records.

    >>> log = make_logger("NodeClient", logger_provider)
    >>> log.info("Registered capability", category="system")
    >>> log = log.with_context(role="node", connection_id="ab12cd34")
    """

    def __init__(
        self,
        logger,
        source: str,
        context: LogContext | None = None,
        min_severity: SeverityNumber | None = None,
    ):
        self._logger = logger
        self._source = source
        self._context = context or LogContext()
        self._min_severity = min_severity

    @property
    def source(self) -> str:
        return self._source

    def debug(self, message: str, **attrs) -> None:
        self._emit(SeverityNumber.DEBUG, message, attrs)

    def info(self, message: str, **attrs) -> None:
        self._emit(SeverityNumber.INFO, message, attrs)

    def warning(self, message: str, **attrs) -> None:
        self._emit(SeverityNumber.WARN, message, attrs)

    def error(self, message: str, **attrs) -> None:
        self._emit(SeverityNumber.ERROR, message, attrs)

    def with_context(self, **overrides) -> "OTelLogger":
        """Same logger with a narrower context; ``source=`` renames the component."""
        source = overrides.pop("source", self._source)
        return OTelLogger(
            self._logger,
            source,
            self._context.child(**overrides),
            self._min_severity,
        )

    def _emit(self, severity: SeverityNumber, message: str, attrs: dict) -> None:
        if self._min_severity is not None and severity.value < self._min_severity.value:
            return
        attributes = {"log.source": self._source}
        attributes.update(self._context.as_attributes())
        attributes.update(redact_attributes(attrs))
        self._logger.emit(
            LogRecord(
                timestamp=time.time_ns(),
                body=message,
                severity_text=severity.name,
                severity_number=severity,
                attributes=attributes,
            )
        )
