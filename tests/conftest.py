"""Shared test fixtures for rxclaw tests."""

import asyncio
import importlib.util
import json
from typing import Any

import pytest
from opentelemetry.sdk._logs import LoggerProvider
from opentelemetry.sdk._logs.export import (
    LogRecordExporter,
    LogRecordExportResult,
    SimpleLogRecordProcessor,
)
from opentelemetry.sdk.trace import TracerProvider

from rxclaw.transport import BackoffPolicy

HAS_NUMPY = importlib.util.find_spec("numpy") is not None
HAS_MSS = importlib.util.find_spec("mss") is not None
HAS_PIL = importlib.util.find_spec("PIL") is not None

# Combined feature flags
HAS_SCREEN = HAS_NUMPY and HAS_MSS and HAS_PIL

FAST_BACKOFF = (0.01, 0.02, 0.04)


class FakeSocket:
    """In-memory stand-in for a websockets client connection.

    Inbound messages are queued with :meth:`feed`; :meth:`close` ends the
    async iteration the way a closed socket does.
    """

    def __init__(self):
        self.sent: list[str] = []
        self.closed = False
        self.fail_sends = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, text: str) -> None:
        if self.closed or self.fail_sends:
            raise ConnectionError("socket is closed")
        self.sent.append(text)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def feed(self, message: Any) -> None:
        if isinstance(message, dict):
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._inbox.get()
        if message is None:
            raise StopAsyncIteration
        return message

    # ---------------- inspection ---------------- #

    @property
    def frames(self) -> list[dict]:
        return [json.loads(text) for text in self.sent]

    def requests(self, method: str | None = None) -> list[dict]:
        return [
            frame
            for frame in self.frames
            if frame.get("type") == "req" and (method is None or frame.get("method") == method)
        ]

    def last_request(self, method: str) -> dict:
        found = self.requests(method)
        assert found, f"no {method} request sent; sent: {[f.get('method') for f in self.frames]}"
        return found[-1]

    def responses(self) -> list[dict]:
        return [frame for frame in self.frames if frame.get("type") == "res"]

    def reply(self, request: dict, payload: Any = None, ok: bool = True, error: Any = None) -> None:
        frame: dict[str, Any] = {"type": "res", "id": request["id"], "ok": ok}
        if payload is not None:
            frame["payload"] = payload
        if error is not None:
            frame["error"] = error
        self.feed(frame)

    def event(self, name: str, payload: Any = None, **extra: Any) -> None:
        self.feed({"type": "event", "event": name, "payload": payload, **extra})


class FakeConnector:
    """Connector returning a fresh :class:`FakeSocket` per attempt.

    The first ``failures`` attempts raise ``OSError``.
    """

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.urls: list[str] = []
        self.sockets: list[FakeSocket] = []

    async def __call__(self, url: str) -> FakeSocket:
        self.urls.append(url)
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection refused")
        socket = FakeSocket()
        self.sockets.append(socket)
        return socket

    @property
    def socket(self) -> FakeSocket:
        assert self.sockets, "no socket opened yet"
        return self.sockets[-1]


class CapturingLogExporter(LogRecordExporter):
    def __init__(self):
        self.records = []

    def export(self, batch) -> LogRecordExportResult:
        self.records.extend(readable.log_record for readable in batch)
        return LogRecordExportResult.SUCCESS

    def shutdown(self) -> None:
        pass

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True

    def messages(self) -> list[str]:
        return [str(record.body) for record in self.records]


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Yield to the loop until ``predicate()`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def log_exporter():
    return CapturingLogExporter()


@pytest.fixture
def logger_provider(log_exporter):
    provider = LoggerProvider()
    provider.add_log_record_processor(SimpleLogRecordProcessor(log_exporter))
    yield provider
    provider.shutdown()


@pytest.fixture
def tracer_provider():
    return TracerProvider()


@pytest.fixture
def fast_backoff():
    return BackoffPolicy(schedule=FAST_BACKOFF)
