"""Node role: device identity, capability dispatch and the node client."""

from .capability import (
    COMMAND_PATTERN,
    Capability,
    InvokeRequest,
    InvokeResult,
    is_valid_command,
    normalize_args,
)
from .client import NodeClient
from .dispatcher import CommandDispatcher, CommandRegistry
from .identity import DeviceIdentity, build_signature_payload

__all__ = [
    "COMMAND_PATTERN",
    "Capability",
    "InvokeRequest",
    "InvokeResult",
    "is_valid_command",
    "normalize_args",
    "NodeClient",
    "CommandDispatcher",
    "CommandRegistry",
    "DeviceIdentity",
    "build_signature_payload",
]
