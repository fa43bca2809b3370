"""Registration (``connect``) parameters shared by the operator and node roles."""

import socket
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..utils import get_str, platform_name

PROTOCOL_VERSION = 3
CLIENT_VERSION = "0.1.0"
USER_AGENT = f"rxclaw/{CLIENT_VERSION}"
DEFAULT_LOCALE = "en-US"

OPERATOR_ROLE = "operator"
NODE_ROLE = "node"
OPERATOR_SCOPES = ("operator.admin", "operator.approvals", "operator.pairing")


@dataclass(frozen=True)
class ClientDescriptor:
    id: str
    mode: str
    display_name: str
    version: str = CLIENT_VERSION
    platform: str = field(default_factory=platform_name)

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "version": self.version,
            "platform": self.platform,
            "mode": self.mode,
            "displayName": self.display_name,
        }


def operator_client() -> ClientDescriptor:
    return ClientDescriptor(id="cli", mode="cli", display_name="rxclaw operator")


def node_client(display_name: str | None = None) -> ClientDescriptor:
    return ClientDescriptor(
        id="node-host",
        mode="node",
        display_name=display_name or f"rxclaw node ({socket.gethostname()})",
    )


def connect_params(
    client: ClientDescriptor,
    role: str,
    token: str,
    *,
    scopes: Iterable[str] = (),
    caps: Iterable[str] = (),
    commands: Iterable[str] = (),
    permissions: dict[str, Any] | None = None,
    device: dict[str, Any] | None = None,
) -> dict[str, Any]:
    params: dict[str, Any] = {
        "minProtocol": PROTOCOL_VERSION,
        "maxProtocol": PROTOCOL_VERSION,
        "client": client.to_dict(),
        "role": role,
        "scopes": list(scopes),
        "caps": list(caps),
        "commands": list(commands),
        "permissions": dict(permissions or {}),
        "auth": {"token": token},
        "locale": DEFAULT_LOCALE,
        "userAgent": USER_AGENT,
    }
    if device is not None:
        params["device"] = device
    return params


def is_hello_ok(payload: Any) -> bool:
    return get_str(payload, "type") == "hello-ok"
