"""Capability contract and invoke request/result types for the node role.

A capability is a named group of commands (``system``, ``screen``...)
backed by one handler. The gateway invokes commands by name; the
:class:`~rxclaw.node.dispatcher.CommandDispatcher` validates the name,
picks the capability and turns whatever happens into exactly one
:class:`InvokeResult`.
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from ..mechanism import ValidationError

COMMAND_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,100}$")


def is_valid_command(command: Any) -> bool:
    return isinstance(command, str) and COMMAND_PATTERN.fullmatch(command) is not None


@dataclass(frozen=True)
class InvokeRequest:
    id: str
    command: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InvokeResult:
    """Outcome of one invocation: ``payload`` on success, ``error`` otherwise."""

    id: str
    ok: bool
    payload: Any = None
    error: str | None = None

    @classmethod
    def success(cls, request_id: str, payload: Any = None) -> "InvokeResult":
        return cls(id=request_id, ok=True, payload=payload)

    @classmethod
    def failure(cls, request_id: str, error: str) -> "InvokeResult":
        return cls(id=request_id, ok=False, error=error)


def normalize_args(payload: dict[str, Any]) -> dict[str, Any]:
    """Invoke arguments as a dict, whether sent as ``args`` or ``paramsJSON``.

    ``args`` wins when both are present. A missing or empty blob yields an
    empty dict.

    Raises:
        ValidationError: ``args`` is not an object, or ``paramsJSON`` is not
            a JSON object encoded as a string.
    """
    if "args" in payload and payload["args"] is not None:
        args = payload["args"]
        if not isinstance(args, dict):
            raise ValidationError("Invalid args: expected an object")
        return args
    blob = payload.get("paramsJSON")
    if blob is None or blob == "":
        return {}
    if not isinstance(blob, str):
        raise ValidationError("Invalid paramsJSON: expected a string")
    try:
        args = json.loads(blob)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid paramsJSON: {e.msg}") from e
    if args is None:
        return {}
    if not isinstance(args, dict):
        raise ValidationError("Invalid paramsJSON: expected an object")
    return args


class Capability(ABC):
    """Base class for command handlers.

    Subclasses set :attr:`category` and :attr:`commands` and implement
    :meth:`execute`. ``can_handle`` defaults to membership in ``commands``;
    override it to accept a family of names.
    """

    category: str = ""
    commands: tuple[str, ...] = ()

    def can_handle(self, command: str) -> bool:
        return command in self.commands

    @abstractmethod
    async def execute(self, request: InvokeRequest) -> InvokeResult | Any:
        """Run the command. A bare return value is wrapped as a success."""
        ...


def require_str(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Missing required argument: {key}")
    return value


def optional_int(args: dict[str, Any], key: str, default: int) -> int:
    value = args.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"Argument {key} must be a number")
    return int(value)
