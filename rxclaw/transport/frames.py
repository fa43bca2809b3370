"""JSON envelope codec for the gateway protocol.

Every message on the socket is one JSON object::

    {"type": "req",   "id": ..., "method": ..., "params": {...}}
    {"type": "res",   "id": ..., "ok": true|false, "payload": ..., "error": ...}
    {"type": "event", "event": ..., "payload": ..., "sessionKey": ...}

:func:`decode_frame` turns a raw text message into one of the frame
dataclasses or raises :class:`~rxclaw.mechanism.ProtocolError`.
"""

import json
import uuid
from dataclasses import dataclass, field
from typing import Any

from ..mechanism import ProtocolError


def new_request_id() -> str:
    """Fresh correlation id for an outbound request."""
    return str(uuid.uuid4())


@dataclass(frozen=True)
class RequestFrame:
    id: str
    method: str
    params: Any = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": "req", "id": self.id, "method": self.method}
        if self.params is not None:
            data["params"] = self.params
        return data


@dataclass(frozen=True)
class ResponseFrame:
    id: str | None
    ok: bool
    payload: Any = None
    error: Any = None

    @property
    def error_message(self) -> str | None:
        """``error`` may be a bare string or an object with ``message``."""
        if isinstance(self.error, str):
            return self.error
        if isinstance(self.error, dict):
            message = self.error.get("message")
            if isinstance(message, str):
                return message
        return None

    @property
    def error_code(self) -> str | None:
        if isinstance(self.error, dict) and self.error.get("code") is not None:
            return str(self.error["code"])
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": "res", "id": self.id, "ok": self.ok}
        if self.payload is not None:
            data["payload"] = self.payload
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(frozen=True)
class EventFrame:
    event: str
    payload: Any = None
    session_key: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": "event", "event": self.event}
        if self.payload is not None:
            data["payload"] = self.payload
        if self.session_key is not None:
            data["sessionKey"] = self.session_key
        return data


Frame = RequestFrame | ResponseFrame | EventFrame


def encode_frame(frame: Frame) -> str:
    """Serialize a frame to compact JSON text."""
    return json.dumps(frame.to_dict(), separators=(",", ":"), ensure_ascii=False)


def decode_frame(message: str | bytes) -> Frame:
    """Parse one socket message.

    Raises:
        ProtocolError: malformed JSON, a non-object root, or a missing or
            unknown ``type`` discriminator.
    """
    if isinstance(message, bytes):
        try:
            message = message.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not UTF-8: {e}") from e
    try:
        root = json.loads(message)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Malformed JSON frame: {e.msg}") from e
    if not isinstance(root, dict):
        raise ProtocolError(f"Frame root must be an object, got {type(root).__name__}")

    frame_type = root.get("type")
    if frame_type == "res":
        frame_id = root.get("id")
        return ResponseFrame(
            id=frame_id if isinstance(frame_id, str) else None,
            ok=root.get("ok") is not False,
            payload=root.get("payload"),
            error=root.get("error"),
        )
    if frame_type == "event":
        event = root.get("event")
        if not isinstance(event, str):
            raise ProtocolError("Event frame without event name")
        session_key = root.get("sessionKey")
        return EventFrame(
            event=event,
            payload=root.get("payload"),
            session_key=session_key if isinstance(session_key, str) else None,
            raw=root,
        )
    if frame_type == "req":
        method = root.get("method")
        if not isinstance(method, str):
            raise ProtocolError("Request frame without method")
        frame_id = root.get("id")
        return RequestFrame(
            id=frame_id if isinstance(frame_id, str) else "",
            method=method,
            params=root.get("params"),
        )
    if frame_type is None:
        raise ProtocolError("Frame has no 'type' field")
    raise ProtocolError(f"Unknown frame type: {frame_type!r}")
