"""Where rxclaw log records end up: stderr and a rotating log file.

Both exporters plug into an SDK ``LoggerProvider`` through a log record
processor and render records with the formatters in :mod:`.logger`.
"""

import os
import sys
import threading
from collections.abc import Iterable, Sequence
from io import TextIOWrapper
from typing import Literal

from opentelemetry._logs import SeverityNumber
from opentelemetry.sdk._logs.export import (
    LogRecordExporter,
    LogRecordExportResult,
)

from .logger import format_log_record, format_log_record_json

LOG_FORMAT = Literal["text", "json"]

_FORMATTERS = {"text": format_log_record, "json": format_log_record_json}


class _FilteringExporter(LogRecordExporter):
    """Severity threshold and formatter choice shared by both sinks."""

    def __init__(self, format: LOG_FORMAT, min_severity: SeverityNumber | None):
        self._render = _FORMATTERS.get(format, format_log_record)
        self._min_severity = min_severity

    def _lines(self, batch: Sequence) -> Iterable[str]:
        for item in batch:
            record = item.log_record
            level = record.severity_number
            if (
                self._min_severity is not None
                and level is not None
                and level.value < self._min_severity.value
            ):
                continue
            yield self._render(record)


class ConsoleLogRecordExporter(_FilteringExporter):
    """Writes records to stderr, INFO and above unless told otherwise.

    ``2024-06-01T10:30:00Z [INFO] operator GatewayClient\\t: Handshake complete``
    """

    def __init__(
        self,
        format: LOG_FORMAT = "text",
        min_severity: SeverityNumber | None = SeverityNumber.INFO,
    ):
        super().__init__(format, min_severity)

    def export(self, batch: Sequence) -> LogRecordExportResult:
        try:
            sys.stderr.writelines(self._lines(batch))
            sys.stderr.flush()
        except Exception:
            return LogRecordExportResult.FAILURE
        return LogRecordExportResult.SUCCESS

    def shutdown(self) -> None:
        pass

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        sys.stderr.flush()
        return True


class FileLogRecordExporter(_FilteringExporter):
    """
    Appends records to ``logfile``, rotating it by size.

    Once the file reaches ``max_bytes`` it becomes ``<logfile>.1``, earlier
    backups move up one number, and anything past ``backups`` is dropped.
    ``max_bytes=None`` never rotates. The parent directory is created on
    the first write.

    >>> exporter = FileLogRecordExporter(str(data_dir / "rxclaw.log"), format="json")
    """

    def __init__(
        self,
        logfile: str,
        *,
        format: LOG_FORMAT = "text",
        max_bytes: int | None = 5 * 1024 * 1024,
        backups: int = 3,
        min_severity: SeverityNumber | None = None,
    ):
        super().__init__(format, min_severity)
        self._path = os.path.expanduser(logfile)
        self._max_bytes = max_bytes
        self._backups = max(backups, 0)
        self._stream: TextIOWrapper | None = None
        self._lock = threading.Lock()

    @property
    def logfile(self) -> str:
        return self._path

    def _writer(self) -> TextIOWrapper:
        if self._stream is None or self._stream.closed:
            parent = os.path.dirname(self._path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            self._stream = open(self._path, "a", encoding="utf-8")
        return self._stream

    def _close(self) -> None:
        if self._stream is not None and not self._stream.closed:
            self._stream.close()
        self._stream = None

    def _rollover(self) -> None:
        self._close()
        if not self._backups:
            os.remove(self._path)
            return
        for n in range(self._backups - 1, 0, -1):
            if os.path.exists(f"{self._path}.{n}"):
                os.replace(f"{self._path}.{n}", f"{self._path}.{n + 1}")
        os.replace(self._path, f"{self._path}.1")

    def export(self, batch: Sequence) -> LogRecordExportResult:
        try:
            with self._lock:
                stream = self._writer()
                stream.writelines(self._lines(batch))
                stream.flush()
                if self._max_bytes is not None and stream.tell() >= self._max_bytes:
                    self._rollover()
        except Exception:
            return LogRecordExportResult.FAILURE
        return LogRecordExportResult.SUCCESS

    def shutdown(self) -> None:
        with self._lock:
            self._close()

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        with self._lock:
            if self._stream is not None and not self._stream.closed:
                self._stream.flush()
        return True
