"""Duplex transport: frame codec, reconnect backoff and connection manager."""

from .backoff import DEFAULT_SCHEDULE, BackoffPolicy
from .connection import (
    TRANSITIONS,
    ConnectionState,
    GatewayConnection,
    websocket_connector,
)
from .frames import (
    EventFrame,
    Frame,
    RequestFrame,
    ResponseFrame,
    decode_frame,
    encode_frame,
    new_request_id,
)

__all__ = [
    "BackoffPolicy",
    "DEFAULT_SCHEDULE",
    "ConnectionState",
    "GatewayConnection",
    "TRANSITIONS",
    "websocket_connector",
    "EventFrame",
    "Frame",
    "RequestFrame",
    "ResponseFrame",
    "decode_frame",
    "encode_frame",
    "new_request_id",
]
