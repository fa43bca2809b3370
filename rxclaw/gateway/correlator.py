"""Request/response correlation and unsupported-method bookkeeping."""

import asyncio
import threading
import time
from dataclasses import dataclass, field

from ..mechanism import TransportError
from ..transport.frames import new_request_id

# method -> method tried instead once the gateway reports it unknown
FALLBACKS: dict[str, str] = {"usage.status": "usage"}


def is_unknown_method_error(message: str | None) -> bool:
    return bool(message) and "unknown method" in message.lower()


@dataclass
class PendingRequest:
    id: str
    method: str
    created_at: float = field(default_factory=time.monotonic)
    future: asyncio.Future | None = None


class RequestCorrelator:
    """Pending-request table plus the per-connection unsupported set.

    Every entry is removed exactly once: by :meth:`take` when its response
    arrives, by :meth:`discard` when the send failed, or by :meth:`clear`
    when the transport goes away. A duplicate or late response therefore
    finds nothing and is dropped by the caller.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._pending: dict[str, PendingRequest] = {}
        self._unsupported: set[str] = set()

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def track(
        self,
        method: str,
        request_id: str | None = None,
        future: asyncio.Future | None = None,
    ) -> PendingRequest:
        request_id = request_id or new_request_id()
        with self._lock:
            if request_id in self._pending:
                raise ValueError(f"Request id already pending: {request_id}")
            pending = PendingRequest(id=request_id, method=method, future=future)
            self._pending[request_id] = pending
        return pending

    def take(self, request_id: str | None) -> PendingRequest | None:
        if not request_id:
            return None
        with self._lock:
            return self._pending.pop(request_id, None)

    def discard(self, request_id: str) -> None:
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is not None and pending.future is not None and not pending.future.done():
            pending.future.cancel()

    def clear(self, reason: str = "connection reset") -> int:
        """Drop every pending entry; awaited calls fail with TransportError."""
        with self._lock:
            pending, self._pending = list(self._pending.values()), {}
        for entry in pending:
            if entry.future is not None and not entry.future.done():
                entry.future.set_exception(TransportError(f"{entry.method}: {reason}"))
        return len(pending)

    # ---------------- unsupported methods ---------------- #

    def mark_unsupported(self, method: str) -> None:
        with self._lock:
            self._unsupported.add(method)

    def is_supported(self, method: str) -> bool:
        with self._lock:
            return method not in self._unsupported

    def reset_unsupported(self) -> None:
        """A new transport may talk to an upgraded gateway."""
        with self._lock:
            self._unsupported.clear()

    def fallback_for(self, method: str) -> str | None:
        return FALLBACKS.get(method)
