"""Convenience exports for the :mod:`rxclaw` package."""

__version__ = "0.1.0"

from .categorizer import Notification, NotificationCategorizer, NotificationRule, classify  # noqa: E402
from .cli import from_cli, to_cli  # noqa: E402
from .config import Settings, default_data_dir, normalize_gateway_url  # noqa: E402
from .gateway import GatewayClient  # noqa: E402
from .mechanism import (  # noqa: E402
    AuthRejected,
    CapabilityExecutionError,
    GatewayError,
    IdentityError,
    NotConnectedError,
    ProtocolError,
    RequestFailed,
    RxException,
    TransportError,
    UnsupportedMethod,
    ValidationError,
)
from .node import (  # noqa: E402
    Capability,
    CommandDispatcher,
    CommandRegistry,
    DeviceIdentity,
    InvokeRequest,
    InvokeResult,
    NodeClient,
)
from .transport import BackoffPolicy, ConnectionState, GatewayConnection  # noqa: E402

__all__ = [
    "__version__",
    "RxException",
    "GatewayError",
    "TransportError",
    "ProtocolError",
    "AuthRejected",
    "UnsupportedMethod",
    "RequestFailed",
    "NotConnectedError",
    "ValidationError",
    "CapabilityExecutionError",
    "IdentityError",

    # transport
    "BackoffPolicy",
    "ConnectionState",
    "GatewayConnection",

    # operator
    "GatewayClient",

    # node
    "NodeClient",
    "DeviceIdentity",
    "Capability",
    "CommandRegistry",
    "CommandDispatcher",
    "InvokeRequest",
    "InvokeResult",

    # notifications
    "Notification",
    "NotificationRule",
    "NotificationCategorizer",
    "classify",

    # settings
    "Settings",
    "default_data_dir",
    "normalize_gateway_url",

    # CLI
    "from_cli",
    "to_cli",
]
