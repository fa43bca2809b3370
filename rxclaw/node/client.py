"""Node-role gateway client.

:class:`NodeClient` registers this machine as a node, proves possession of
its device key when the gateway issues a nonce, tracks the pairing
lifecycle and answers ``node.invoke`` requests through the
:class:`~rxclaw.node.dispatcher.CommandDispatcher`.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Coroutine, Mapping

from opentelemetry._logs import LoggerProvider
from opentelemetry.trace import TracerProvider
from reactivex import Observable
from reactivex import operators as ops
from reactivex.subject import Subject

from ..config import normalize_gateway_url
from ..gateway.correlator import RequestCorrelator
from ..gateway.decoder import ChallengeEvent, InvokeRequestEvent, decode_event
from ..gateway.models import PairingEvent, PairingStatus
from ..gateway.protocol import NODE_ROLE, connect_params, is_hello_ok, node_client
from ..mechanism import AuthRejected
from ..telemetry import make_logger
from ..transport import (
    BackoffPolicy,
    ConnectionState,
    EventFrame,
    GatewayConnection,
    RequestFrame,
    ResponseFrame,
    decode_frame,
    encode_frame,
)
from ..transport.connection import Connector
from ..utils import first_non_empty, get_full_error_info, get_short_error_info, get_str
from .capability import Capability, InvokeResult
from .dispatcher import CommandDispatcher, CommandRegistry
from .identity import DeviceIdentity

Reply = Callable[[InvokeResult], Awaitable[Any]]


class NodeClient:
    """Node connection to the gateway.

    Observables (hot, shared):
        status: :class:`~rxclaw.transport.ConnectionState` changes.
        pairing: :class:`~rxclaw.gateway.models.PairingEvent` on every
            pairing status change.
        invocations: each validated :class:`~rxclaw.node.capability.InvokeRequest`
            right before it runs.
        results: every :class:`~rxclaw.node.capability.InvokeResult` sent back.
    """

    def __init__(
        self,
        url: str,
        token: str,
        identity: DeviceIdentity,
        *,
        capabilities: list[Capability] | None = None,
        registry: CommandRegistry | None = None,
        permissions: Mapping[str, Any] | None = None,
        display_name: str | None = None,
        connector: Connector | None = None,
        backoff: BackoffPolicy | None = None,
        name: str | None = None,
        logger_provider: LoggerProvider | None = None,
        tracer_provider: TracerProvider | None = None,
    ):
        """
        Args:
            url: Gateway URL; ``http(s)`` is mapped onto ``ws(s)``.
            token: Operator token, used until a device token is issued.
            identity: Device keypair and stored device token.
            capabilities: Capabilities to register on a fresh registry.
            registry: Existing registry; ``capabilities`` are added to it.
            permissions: Permission flags advertised at registration.
            display_name: Name shown to operators; hostname based when None.
            connector: Socket factory, injectable for tests.
            backoff: Reconnect schedule.
        """
        self.url = normalize_gateway_url(url)
        self._token = token
        self.identity = identity
        self._permissions: dict[str, Any] = dict(permissions or {})
        self._client = node_client(display_name)
        self._name = name or "NodeClient"

        self._logger = make_logger(self._name, logger_provider).with_context(
            role=NODE_ROLE, device_id=identity.device_id
        )
        self.registry = registry if registry is not None else CommandRegistry()
        for capability in capabilities or ():
            self.register_capability(capability)

        self._invocations: Subject = Subject()
        self._results: Subject = Subject()
        self._pairing: Subject = Subject()
        self._dispatcher = CommandDispatcher(
            self.registry,
            on_invoke=self._invocations.on_next,
            logger_provider=logger_provider,
            tracer_provider=tracer_provider,
        )
        self._correlator = RequestCorrelator()
        self._tasks: set[asyncio.Task] = set()
        self._node_id: str | None = None
        self._pairing_status = PairingStatus.UNKNOWN

        self._connection = GatewayConnection(
            self.url,
            on_message=self._on_message,
            on_close=self._on_transport_close,
            connector=connector,
            backoff=backoff,
            name=f"{self._name}:connection",
            logger_provider=logger_provider,
        )

    # =========================================================================
    # Observables and state
    # =========================================================================

    @property
    def status(self) -> Observable:
        return self._connection.connection_state

    @property
    def pairing(self) -> Observable:
        return self._pairing.pipe(ops.share())

    @property
    def invocations(self) -> Observable:
        return self._invocations.pipe(ops.share())

    @property
    def results(self) -> Observable:
        return self._results.pipe(ops.share())

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def connection(self) -> GatewayConnection:
        return self._connection

    @property
    def dispatcher(self) -> CommandDispatcher:
        return self._dispatcher

    @property
    def node_id(self) -> str | None:
        """Id assigned by the gateway in ``hello-ok``."""
        return self._node_id

    @property
    def device_id(self) -> str:
        return self.identity.device_id

    @property
    def short_device_id(self) -> str:
        return self.identity.short_device_id

    @property
    def is_paired(self) -> bool:
        return self.identity.is_paired

    @property
    def is_pending_approval(self) -> bool:
        return self._pairing_status is PairingStatus.PENDING

    @property
    def pairing_status(self) -> PairingStatus:
        return self._pairing_status

    def register_capability(self, capability: Capability) -> None:
        """Add a capability; it is advertised on the next registration."""
        self.registry.register(capability)
        self._logger.info(
            f"Registered capability: {capability.category} "
            f"({len(capability.commands)} commands)"
        )

    def set_permission(self, name: str, allowed: Any) -> None:
        self._permissions[name] = allowed

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self) -> None:
        self._logger.info(
            f"Connecting node {self.short_device_id} to {self.url}",
            paired=self.is_paired,
        )
        await self._connection.start()

    async def disconnect(self) -> None:
        self._cancel_background()
        await self._connection.disconnect()
        self._correlator.clear("disconnected")

    async def close(self) -> None:
        """Disconnect and complete every observable."""
        self._cancel_background()
        await self._connection.close()
        self._correlator.clear("closed")
        for subject in (self._pairing, self._invocations, self._results):
            subject.on_completed()

    def _cancel_background(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    # =========================================================================
    # Inbound frames
    # =========================================================================

    async def _on_transport_close(self, error: Exception | None) -> None:
        self._correlator.clear("connection closed")

    async def _on_message(self, message: str | bytes) -> None:
        frame = decode_frame(message)
        if isinstance(frame, ResponseFrame):
            await self._handle_response(frame)
        elif isinstance(frame, EventFrame):
            await self._handle_event(frame)
        else:
            await self._handle_request(frame)

    async def _handle_event(self, frame: EventFrame) -> None:
        event = decode_event(frame)
        if isinstance(event, ChallengeEvent):
            self._logger.info("Received challenge")
            await self._send_connect(event.nonce)
        elif isinstance(event, InvokeRequestEvent):
            self._handle_invoke_event(event.payload)
        else:
            self._logger.debug(f"Ignoring event on node connection: {frame.event}")

    async def _handle_request(self, frame: RequestFrame) -> None:
        """Requests the gateway sends directly on the node socket."""
        if not frame.id:
            self._logger.warning(f"Ignoring request without id: {frame.method}")
            return
        if frame.method == "node.invoke":
            if not isinstance(frame.params, dict):
                await self._send_response(InvokeResult.failure(frame.id, "Missing params"))
                return
            self._spawn(self._run_invoke(frame.id, frame.params, self._send_response))
        elif frame.method == "ping":
            await self._connection.send(
                encode_frame(ResponseFrame(frame.id, True, {"pong": True}))
            )
        else:
            self._logger.warning(f"Unknown request method: {frame.method}")
            await self._send_response(
                InvokeResult.failure(frame.id, f"Unknown method: {frame.method}")
            )

    # =========================================================================
    # Registration and pairing
    # =========================================================================

    async def _send_connect(self, nonce: str | None) -> None:
        token = self.identity.device_token or self._token
        signed_at = int(time.time() * 1000)
        device: dict[str, Any] = {
            "id": self.identity.device_id,
            "publicKey": self.identity.public_key,
            "signedAt": signed_at,
        }
        # Without a nonce there is nothing to prove freshness against.
        if nonce:
            device["nonce"] = nonce
            device["signature"] = self.identity.sign_payload(
                nonce,
                signed_at,
                self._client.id,
                self._client.mode,
                NODE_ROLE,
                (),
                token,
            )
        params = connect_params(
            self._client,
            NODE_ROLE,
            token,
            caps=self.registry.categories,
            commands=self.registry.commands,
            permissions=self._permissions,
            device=device,
        )
        pending = self._correlator.track("connect")
        sent = await self._connection.send(
            encode_frame(RequestFrame(pending.id, "connect", params))
        )
        if not sent:
            self._correlator.discard(pending.id)
            await self._connection.fail_attempt("Failed to send node registration")
            return
        self._logger.info(
            f"Sent node registration ({len(self.registry.commands)} commands)",
            paired=self.is_paired,
            signed=bool(nonce),
        )

    async def _handle_response(self, frame: ResponseFrame) -> None:
        pending = self._correlator.take(frame.id)

        if frame.ok and is_hello_ok(frame.payload):
            self._handle_hello(frame.payload)
            return

        if pending is None:
            self._logger.debug("Dropping untracked response", request_id=str(frame.id))
            return

        if pending.method == "connect" and not frame.ok:
            error = AuthRejected(frame.error_message or "Unknown error", frame.error_code)
            self._logger.error(
                f"Node registration failed: {error.message} (code: {error.code or 'none'})"
            )
            self._set_pairing(PairingStatus.REJECTED, error.message)
            await self._connection.fail_attempt(f"Registration rejected: {error}")
        elif not frame.ok:
            self._logger.warning(
                f"{pending.method} rejected: {frame.error_message or 'unknown error'}"
            )
        else:
            self._logger.debug(f"{pending.method} acknowledged")

    def _handle_hello(self, payload: dict[str, Any]) -> None:
        self._node_id = get_str(payload, "nodeId") or self._node_id
        token = get_str(payload.get("auth"), "deviceToken")
        if token and token != self.identity.device_token:
            try:
                self.identity.store_device_token(token)
            except OSError as e:
                self._logger.error(f"Failed to persist device token: {get_short_error_info(e)}")
            self._logger.info("Received device token, device is paired")

        if self.identity.is_paired:
            self._set_pairing(PairingStatus.PAIRED, "Pairing approved")
        else:
            self._set_pairing(
                PairingStatus.PENDING,
                f"Run: openclaw devices approve {self.short_device_id}...",
            )
        self._logger.info("Node registered (hello-ok)", node_id=self._node_id or "")
        self._connection.mark_connected()

    def _set_pairing(self, status: PairingStatus, message: str | None) -> None:
        if status is self._pairing_status:
            return
        self._pairing_status = status
        if status is PairingStatus.PENDING:
            self._logger.warning(f"Device awaiting approval. {message}")
        else:
            self._logger.info(f"Pairing status: {status.value}")
        self._pairing.on_next(PairingEvent(status, self.identity.device_id, message))

    # =========================================================================
    # Invocations
    # =========================================================================

    def _handle_invoke_event(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            self._logger.warning("Invoke request without payload")
            return
        request_id = first_non_empty(get_str(payload, "requestId"), get_str(payload, "id"))
        if not request_id:
            self._logger.warning("Invoke request without id")
            return
        self._spawn(self._run_invoke(request_id, payload, self._send_invoke_result))

    async def _run_invoke(self, request_id: str, payload: dict[str, Any], reply: Reply) -> None:
        result = await self._dispatcher.dispatch(request_id, payload)
        self._results.on_next(result)
        await reply(result)

    async def _send_invoke_result(self, result: InvokeResult) -> bool:
        params: dict[str, Any] = {
            "id": result.id,
            "nodeId": self.identity.device_id,
            "ok": result.ok,
        }
        if result.payload is not None:
            params["payload"] = result.payload
        if result.error:
            params["error"] = {"message": result.error}
        pending = self._correlator.track("node.invoke.result")
        sent = await self._connection.send(
            encode_frame(RequestFrame(pending.id, "node.invoke.result", params))
        )
        if not sent:
            self._correlator.discard(pending.id)
            self._logger.warning(f"Could not deliver result for {result.id}")
        return sent

    async def _send_response(self, result: InvokeResult) -> bool:
        error = {"message": result.error} if not result.ok else None
        return await self._connection.send(
            encode_frame(ResponseFrame(result.id, result.ok, result.payload, error))
        )

    # =========================================================================
    # Background tasks
    # =========================================================================

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._logger.error(
                f"Background task failed: {get_short_error_info(error)}",
                traceback=get_full_error_info(error),
            )
