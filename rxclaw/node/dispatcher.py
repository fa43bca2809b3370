"""Validated routing of invoke requests to capabilities.

Resolution contract:

* a command name must match ``^[A-Za-z0-9._-]{1,100}$``; anything else is
  answered with ``Invalid command format`` and no capability is consulted;
* capabilities are consulted in registration order and the first whose
  ``can_handle`` accepts the name runs it;
* every request yields exactly one :class:`InvokeResult` keyed by the
  request id. Handler exceptions never escape :meth:`CommandDispatcher.dispatch`.
"""

import asyncio
from dataclasses import replace
from typing import Any, Callable, Iterator

from opentelemetry._logs import LoggerProvider
from opentelemetry.trace import Status, StatusCode, TracerProvider

from ..mechanism import CapabilityExecutionError, ValidationError
from ..telemetry import make_logger, make_tracer
from ..utils import get_full_error_info, get_short_error_info
from .capability import (
    Capability,
    InvokeRequest,
    InvokeResult,
    is_valid_command,
    normalize_args,
)


class CommandRegistry:
    """Ordered catalogue of capabilities and the command names they declare.

    Declared names are validated when a capability registers and each name
    may be declared by one capability only, so the catalogue sent to the
    gateway never contains a name the dispatcher would refuse.
    """

    def __init__(self, capabilities: list[Capability] | None = None):
        self._capabilities: list[Capability] = []
        self._owners: dict[str, Capability] = {}
        for capability in capabilities or ():
            self.register(capability)

    def register(self, capability: Capability) -> None:
        """
        Raises:
            ValueError: empty category, an invalid declared name, a name
                already declared by another capability, or a capability
                registered twice.
        """
        if not capability.category:
            raise ValueError(f"{type(capability).__name__} has no category")
        if capability in self._capabilities:
            raise ValueError(f"Capability already registered: {capability.category}")
        for name in capability.commands:
            if not is_valid_command(name):
                raise ValueError(
                    f"Invalid command name {name!r} declared by {capability.category}"
                )
            owner = self._owners.get(name)
            if owner is not None:
                raise ValueError(
                    f"Command {name} declared by both {owner.category} and {capability.category}"
                )
        self._capabilities.append(capability)
        for name in capability.commands:
            self._owners[name] = capability

    def resolve(self, command: str) -> Capability | None:
        for capability in self._capabilities:
            if capability.can_handle(command):
                return capability
        return None

    @property
    def categories(self) -> list[str]:
        return list(dict.fromkeys(c.category for c in self._capabilities))

    @property
    def commands(self) -> list[str]:
        return list(self._owners)

    def __iter__(self) -> Iterator[Capability]:
        return iter(tuple(self._capabilities))

    def __len__(self) -> int:
        return len(self._capabilities)


class CommandDispatcher:
    def __init__(
        self,
        registry: CommandRegistry | None = None,
        on_invoke: Callable[[InvokeRequest], None] | None = None,
        logger_provider: LoggerProvider | None = None,
        tracer_provider: TracerProvider | None = None,
    ):
        """
        Args:
            registry: Capability catalogue; an empty one when None.
            on_invoke: Called with each validated request right before its
                capability runs.
        """
        self.registry = registry if registry is not None else CommandRegistry()
        self._on_invoke = on_invoke
        self._logger = make_logger("CommandDispatcher", logger_provider)
        self._tracer = make_tracer("CommandDispatcher", tracer_provider)

    async def dispatch(self, request_id: str, payload: dict[str, Any]) -> InvokeResult:
        """Validate, resolve and run one invoke request.

        ``payload`` carries ``command`` and ``args`` or ``paramsJSON``.
        """
        command = payload.get("command")
        if command is None:
            self._logger.warning("Invoke request without command", request_id=request_id)
            return InvokeResult.failure(request_id, "Missing command")
        if not is_valid_command(command):
            shown = str(command)
            shown = shown if len(shown) <= 50 else shown[:50] + "..."
            self._logger.warning(f"Invalid command format: {shown}", request_id=request_id)
            return InvokeResult.failure(request_id, "Invalid command format")

        try:
            args = normalize_args(payload)
        except ValidationError as e:
            self._logger.warning(f"Rejected arguments for {command}: {e}")
            return InvokeResult.failure(request_id, str(e))

        capability = self.registry.resolve(command)
        if capability is None:
            self._logger.warning(f"No capability registered for command: {command}")
            return InvokeResult.failure(request_id, f"Command not supported: {command}")

        return await self.execute(capability, InvokeRequest(request_id, command, args))

    async def execute(self, capability: Capability, request: InvokeRequest) -> InvokeResult:
        with self._tracer.start_as_current_span(
            "node.invoke",
            attributes={
                "invoke.id": request.id,
                "invoke.command": request.command,
                "invoke.category": capability.category,
            },
        ) as span:
            self._logger.info(f"Invoking command: {request.command}", category=capability.category)
            if self._on_invoke is not None:
                self._on_invoke(request)
            try:
                outcome = await capability.execute(request)
            except asyncio.CancelledError:
                raise
            except ValidationError as e:
                result = InvokeResult.failure(request.id, str(e))
            except CapabilityExecutionError as e:
                self._logger.error(f"Command failed: {request.command}: {e.message}")
                result = InvokeResult.failure(request.id, f"Execution failed: {e.message}")
            except Exception as e:
                self._logger.error(
                    f"Command execution failed: {request.command}: {get_short_error_info(e)}",
                    traceback=get_full_error_info(e),
                )
                result = InvokeResult.failure(request.id, f"Execution failed: {e}")
            else:
                if not isinstance(outcome, InvokeResult):
                    result = InvokeResult.success(request.id, outcome)
                elif outcome.id != request.id:
                    result = replace(outcome, id=request.id)
                else:
                    result = outcome

            span.set_attribute("invoke.ok", result.ok)
            if not result.ok:
                span.set_status(Status(StatusCode.ERROR, result.error or ""))
            return result
