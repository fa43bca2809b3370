"""Operator-role gateway client.

:class:`GatewayClient` wires the connection manager, the request
correlator, the event decoder and the notification categorizer together
and republishes decoded gateway state as ReactiveX observables.

Example:
    >>> client = GatewayClient("ws://localhost:18789", token="...")
    >>> client.sessions.subscribe(lambda sessions: print(len(sessions)))
    >>> await client.connect()
"""

import asyncio
from dataclasses import replace
from typing import Any, Awaitable, Callable, Coroutine, Iterable, Sequence

from opentelemetry._logs import LoggerProvider
from reactivex import Observable
from reactivex import operators as ops
from reactivex.subject import Subject

from ..categorizer import Notification, NotificationCategorizer, NotificationRule
from ..config import normalize_gateway_url
from ..mechanism import (
    AuthRejected,
    NotConnectedError,
    RequestFailed,
    TransportError,
    UnsupportedMethod,
)
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
from ..utils import get_full_error_info, get_short_error_info, truncate_message
from .correlator import PendingRequest, RequestCorrelator, is_unknown_method_error
from .decoder import (
    SESSION_COMMANDS,
    AgentEvent,
    ChallengeEvent,
    ChatEvent,
    HealthEvent,
    InvokeRequestEvent,
    SessionChangedEvent,
    build_provider_summary,
    decode_event,
    parse_channel_health,
    parse_nodes,
    parse_session_command_result,
    parse_sessions,
    parse_sessions_preview,
    parse_usage,
    parse_usage_cost,
    parse_usage_status,
    session_activity_text,
    sessions_from_payload,
)
from .models import ActivityKind, SessionCommandResult
from .protocol import (
    OPERATOR_ROLE,
    OPERATOR_SCOPES,
    connect_params,
    is_hello_ok,
    operator_client,
)
from .snapshots import GatewaySnapshots

DEFAULT_POLL_INTERVAL = 30.0
INITIAL_REFRESH_DELAY = 0.5


class GatewayClient:
    """Operator connection to the gateway.

    Observables (hot, shared):
        status: :class:`~rxclaw.transport.ConnectionState` changes.
        activity: :class:`~rxclaw.gateway.models.AgentActivity` updates.
        notifications: classified :class:`~rxclaw.categorizer.Notification`.
        channel_health: tuples of ``ChannelHealth``.
        sessions: ordered tuples of ``SessionInfo``.
        usage / usage_status / usage_cost: usage snapshots.
        nodes: ordered tuples of ``GatewayNodeInfo``.
        session_preview: ``SessionsPreviewPayload``.
        session_commands: ``SessionCommandResult``.
    """

    def __init__(
        self,
        url: str,
        token: str,
        *,
        rules: Sequence[NotificationRule] | None = None,
        categorizer: NotificationCategorizer | None = None,
        connector: Connector | None = None,
        backoff: BackoffPolicy | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        initial_delay: float = INITIAL_REFRESH_DELAY,
        name: str | None = None,
        logger_provider: LoggerProvider | None = None,
    ):
        """
        Args:
            url: Gateway URL; ``http(s)`` is mapped onto ``ws(s)``.
            token: Operator bearer token sent in the registration request.
            rules: Ordered user notification rules.
            categorizer: Notification classifier; the default prefers
                structured hints.
            connector: Socket factory, injectable for tests.
            backoff: Reconnect schedule.
            poll_interval: Seconds between state refreshes while connected.
            initial_delay: Seconds between ``hello-ok`` and the first refresh.
            name: Component name used as the log source.
            logger_provider: OTel logger provider; the console default when None.
        """
        self.url = normalize_gateway_url(url)
        self._token = token
        self._rules: list[NotificationRule] = list(rules) if rules else []
        self._categorizer = categorizer or NotificationCategorizer()
        self._poll_interval = poll_interval
        self._initial_delay = initial_delay
        self._name = name or "GatewayClient"

        self._logger = make_logger(self._name, logger_provider).with_context(
            role=OPERATOR_ROLE
        )
        self._correlator = RequestCorrelator()
        self._snapshots = GatewaySnapshots()
        self._tasks: set[asyncio.Task] = set()
        self._poll_task: asyncio.Task | None = None

        self._connection = GatewayConnection(
            self.url,
            on_message=self._on_message,
            on_open=self._on_transport_open,
            on_close=self._on_transport_close,
            connector=connector,
            backoff=backoff,
            name=f"{self._name}:connection",
            logger_provider=logger_provider,
        )

        self._activity: Subject = Subject()
        self._notifications: Subject = Subject()
        self._channel_health: Subject = Subject()
        self._sessions: Subject = Subject()
        self._usage: Subject = Subject()
        self._usage_status: Subject = Subject()
        self._usage_cost: Subject = Subject()
        self._nodes: Subject = Subject()
        self._session_preview: Subject = Subject()
        self._session_commands: Subject = Subject()
        self._subjects = (
            self._activity,
            self._notifications,
            self._channel_health,
            self._sessions,
            self._usage,
            self._usage_status,
            self._usage_cost,
            self._nodes,
            self._session_preview,
            self._session_commands,
        )

        self._response_handlers: dict[str, Callable[[str, Any], None]] = {
            "health": self._apply_health,
            "sessions.list": self._apply_sessions,
            "usage": self._apply_usage,
            "usage.status": self._apply_usage_status,
            "usage.cost": self._apply_usage_cost,
            "node.list": self._apply_nodes,
            "sessions.preview": self._apply_sessions_preview,
            **{method: self._apply_session_command for method in SESSION_COMMANDS},
        }

    # =========================================================================
    # Observables and state
    # =========================================================================

    @property
    def status(self) -> Observable:
        return self._connection.connection_state

    @property
    def activity(self) -> Observable:
        return self._activity.pipe(ops.share())

    @property
    def notifications(self) -> Observable:
        return self._notifications.pipe(ops.share())

    @property
    def channel_health(self) -> Observable:
        return self._channel_health.pipe(ops.share())

    @property
    def sessions(self) -> Observable:
        return self._sessions.pipe(ops.share())

    @property
    def usage(self) -> Observable:
        return self._usage.pipe(ops.share())

    @property
    def usage_status(self) -> Observable:
        return self._usage_status.pipe(ops.share())

    @property
    def usage_cost(self) -> Observable:
        return self._usage_cost.pipe(ops.share())

    @property
    def nodes(self) -> Observable:
        return self._nodes.pipe(ops.share())

    @property
    def session_preview(self) -> Observable:
        return self._session_preview.pipe(ops.share())

    @property
    def session_commands(self) -> Observable:
        return self._session_commands.pipe(ops.share())

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def connection(self) -> GatewayConnection:
        return self._connection

    @property
    def correlator(self) -> RequestCorrelator:
        return self._correlator

    @property
    def snapshots(self) -> GatewaySnapshots:
        return self._snapshots

    @property
    def rules(self) -> list[NotificationRule]:
        return self._rules

    @rules.setter
    def rules(self, rules: Iterable[NotificationRule]) -> None:
        self._rules = list(rules)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self) -> None:
        self._logger.info(f"Connecting to gateway {self.url}")
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
        for subject in self._subjects:
            subject.on_completed()

    def _cancel_background(self) -> None:
        self._cancel_poll()
        for task in list(self._tasks):
            task.cancel()

    # =========================================================================
    # Requests
    # =========================================================================

    async def call(self, method: str, params: Any = None) -> Any:
        """Send a tracked request and await its payload.

        Raises:
            NotConnectedError: no socket is open.
            TransportError: the write failed or the connection reset first.
            UnsupportedMethod: the gateway does not know ``method``.
            RequestFailed: the gateway answered ``ok: false``.
        """
        if not self._connection.is_open:
            raise NotConnectedError("Gateway connection is not open")
        future = asyncio.get_running_loop().create_future()
        if not await self._send_tracked(method, params, future=future):
            raise TransportError(f"Failed to send {method}")
        return await future

    async def check_health(self) -> bool:
        return await self._send_tracked("health", {"deep": True})

    async def request_sessions(self) -> bool:
        return await self._send_tracked("sessions.list")

    async def request_usage(self) -> None:
        """``usage.status`` plus 30 days of ``usage.cost``, or legacy ``usage``."""
        if not self._connection.is_open:
            return
        if not self._correlator.is_supported("usage.status"):
            await self._send_tracked("usage")
            return
        await self.request_usage_status()
        if self._correlator.is_supported("usage.cost"):
            await self.request_usage_cost(30)

    async def request_usage_status(self) -> bool:
        return await self._send_tracked("usage.status")

    async def request_usage_cost(self, days: int = 30) -> bool:
        if days <= 0:
            days = 30
        return await self._send_tracked("usage.cost", {"days": days})

    async def request_nodes(self) -> bool:
        if not self._correlator.is_supported("node.list"):
            return False
        return await self._send_tracked("node.list")

    async def request_session_preview(
        self, keys: Sequence[str], limit: int = 12, max_chars: int = 240
    ) -> bool:
        if not self._correlator.is_supported("sessions.preview") or not keys:
            return False
        return await self._send_tracked(
            "sessions.preview",
            {"keys": list(keys), "limit": max(limit, 1), "maxChars": max(max_chars, 20)},
        )

    async def patch_session(
        self,
        key: str,
        thinking_level: str | None = None,
        verbose_level: str | None = None,
    ) -> bool:
        if not key or not key.strip():
            return False
        params: dict[str, Any] = {"key": key}
        if thinking_level is not None:
            params["thinkingLevel"] = thinking_level
        if verbose_level is not None:
            params["verboseLevel"] = verbose_level
        return await self._send_tracked("sessions.patch", params)

    async def reset_session(self, key: str) -> bool:
        if not key or not key.strip():
            return False
        return await self._send_tracked("sessions.reset", {"key": key})

    async def delete_session(self, key: str, delete_transcript: bool = True) -> bool:
        if not key or not key.strip():
            return False
        return await self._send_tracked(
            "sessions.delete", {"key": key, "deleteTranscript": delete_transcript}
        )

    async def compact_session(self, key: str, max_lines: int = 400) -> bool:
        if not key or not key.strip():
            return False
        if max_lines <= 0:
            max_lines = 400
        return await self._send_tracked(
            "sessions.compact", {"key": key, "maxLines": max_lines}
        )

    async def start_channel(self, channel: str) -> bool:
        sent = await self._send_tracked("channel.start", {"channel": channel})
        if sent:
            self._logger.info(f"Sent channel.start for {channel}")
        return sent

    async def stop_channel(self, channel: str) -> bool:
        sent = await self._send_tracked("channel.stop", {"channel": channel})
        if sent:
            self._logger.info(f"Sent channel.stop for {channel}")
        return sent

    async def send_chat_message(self, message: str) -> None:
        if not self._connection.is_open:
            raise NotConnectedError("Gateway connection is not open")
        if not await self._send_tracked("chat.send", {"message": message}):
            raise TransportError("Failed to send chat message")
        self._logger.info(f"Sent chat message ({len(message)} chars)")

    async def refresh(self) -> None:
        """Request every snapshot once."""
        await self.check_health()
        await self.request_sessions()
        await self.request_usage()
        await self.request_nodes()

    async def _send_tracked(
        self,
        method: str,
        params: Any = None,
        future: asyncio.Future | None = None,
    ) -> bool:
        if not self._connection.is_open:
            self._logger.debug(f"Skipping {method}: connection not open")
            return False
        pending = self._correlator.track(method, future=future)
        sent = await self._connection.send(
            encode_frame(RequestFrame(pending.id, method, params))
        )
        if not sent:
            self._correlator.discard(pending.id)
        return sent

    # =========================================================================
    # Connection hooks
    # =========================================================================

    async def _on_transport_open(self) -> None:
        self._correlator.reset_unsupported()

    async def _on_transport_close(self, error: Exception | None) -> None:
        self._cancel_poll()
        dropped = self._correlator.clear("connection closed")
        if dropped:
            self._logger.debug(f"Dropped {dropped} pending requests")

    async def _on_message(self, message: str | bytes) -> None:
        frame = decode_frame(message)
        if isinstance(frame, ResponseFrame):
            await self._handle_response(frame)
        elif isinstance(frame, EventFrame):
            await self._handle_event(frame)
        else:
            self._logger.debug(f"Ignoring inbound request: {frame.method}")

    # =========================================================================
    # Responses
    # =========================================================================

    async def _handle_response(self, frame: ResponseFrame) -> None:
        pending = self._correlator.take(frame.id)

        if frame.ok and is_hello_ok(frame.payload):
            if pending is not None and pending.future is not None and not pending.future.done():
                pending.future.set_result(frame.payload)
            self._handle_hello()
            return

        if pending is None:
            self._logger.debug("Dropping untracked response", request_id=str(frame.id))
            return

        if not frame.ok:
            await self._handle_request_error(pending, frame)
            return

        if pending.future is not None and not pending.future.done():
            pending.future.set_result(frame.payload)

        handler = self._response_handlers.get(pending.method)
        if handler is not None:
            handler(pending.method, frame.payload)
        else:
            self._logger.debug(f"{pending.method} acknowledged")

    def _handle_hello(self) -> None:
        self._logger.info("Handshake complete (hello-ok)")
        self._connection.mark_connected()
        self._cancel_poll()
        self._poll_task = self._spawn(self._poll_loop())

    async def _handle_request_error(
        self, pending: PendingRequest, frame: ResponseFrame
    ) -> None:
        method = pending.method
        message = frame.error_message or "request failed"

        if method == "connect":
            error = AuthRejected(message, frame.error_code)
            self._fail_future(pending, error)
            await self._connection.fail_attempt(f"Registration rejected: {error}")
            return

        if is_unknown_method_error(message):
            self._correlator.mark_unsupported(method)
            self._fail_future(pending, UnsupportedMethod(method))
            fallback = self._correlator.fallback_for(method)
            if fallback is not None:
                self._logger.warning(
                    f"{method} unsupported on gateway; falling back to {fallback}"
                )
                self._spawn(self._send_tracked(fallback))
            else:
                self._logger.warning(f"{method} unsupported on gateway")
            if method not in SESSION_COMMANDS:
                return

        if method in SESSION_COMMANDS:
            self._session_commands.on_next(
                SessionCommandResult(method=method, ok=False, error=message)
            )
        self._fail_future(pending, RequestFailed(method, message, frame.error_code))
        self._logger.warning(f"{method} failed: {message}")

    @staticmethod
    def _fail_future(pending: PendingRequest, error: Exception) -> None:
        if pending.future is not None and not pending.future.done():
            pending.future.set_exception(error)

    def _apply_health(self, method: str, payload: Any) -> None:
        channels = parse_channel_health(
            payload.get("channels") if isinstance(payload, dict) else None
        )
        if channels:
            self._publish_channels(channels)

    def _apply_sessions(self, method: str, payload: Any) -> None:
        sessions = parse_sessions(sessions_from_payload(payload))
        self._sessions.on_next(self._snapshots.replace_sessions(sessions))

    def _apply_usage(self, method: str, payload: Any) -> None:
        self._usage.on_next(
            self._snapshots.update_usage(lambda usage: parse_usage(payload, usage))
        )

    def _apply_usage_status(self, method: str, payload: Any) -> None:
        status = parse_usage_status(payload)
        self._snapshots.set_usage_status(status)
        self._usage_status.on_next(status)
        summary = build_provider_summary(status)
        self._usage.on_next(
            self._snapshots.update_usage(
                lambda usage: replace(usage, provider_summary=summary)
            )
        )

    def _apply_usage_cost(self, method: str, payload: Any) -> None:
        cost = parse_usage_cost(payload)
        self._snapshots.set_usage_cost(cost)
        self._usage_cost.on_next(cost)
        self._usage.on_next(
            self._snapshots.update_usage(
                lambda usage: replace(
                    usage,
                    total_tokens=cost.totals.total_tokens,
                    cost_usd=cost.totals.total_cost,
                )
            )
        )

    def _apply_nodes(self, method: str, payload: Any) -> None:
        self._nodes.on_next(self._snapshots.replace_nodes(parse_nodes(payload)))

    def _apply_sessions_preview(self, method: str, payload: Any) -> None:
        self._session_preview.on_next(parse_sessions_preview(payload))

    def _apply_session_command(self, method: str, payload: Any) -> None:
        self._session_commands.on_next(parse_session_command_result(method, payload))

    # =========================================================================
    # Events
    # =========================================================================

    async def _handle_event(self, frame: EventFrame) -> None:
        event = decode_event(frame)
        if isinstance(event, ChallengeEvent):
            self._logger.info("Received challenge")
            await self._send_connect()
        elif isinstance(event, AgentEvent):
            self._handle_agent_event(event)
        elif isinstance(event, ChatEvent):
            for text in event.texts:
                self._logger.info(f"Assistant response: {text[:100]}")
                self._notify(Notification(message=truncate_message(text), is_chat=True))
        elif isinstance(event, HealthEvent):
            if event.channels:
                self._publish_channels(event.channels)
        elif isinstance(event, SessionChangedEvent):
            self._spawn(self.request_sessions())
        elif isinstance(event, InvokeRequestEvent):
            self._logger.debug("Ignoring node invoke on operator connection")
        else:
            self._logger.debug(f"Unhandled event: {event.name}")

    async def _send_connect(self) -> None:
        params = connect_params(
            operator_client(),
            OPERATOR_ROLE,
            self._token,
            scopes=OPERATOR_SCOPES,
        )
        if not await self._send_tracked("connect", params):
            await self._connection.fail_attempt("Failed to send registration request")

    def _handle_agent_event(self, event: AgentEvent) -> None:
        activity = event.activity
        if activity is not None:
            self._logger.info(
                f"Agent activity: {activity.label or activity.kind.value}",
                session=event.session_key,
            )
            self._activity.on_next(activity)
            # A finished job clears the session's activity; a tool result does not.
            if activity.kind is not ActivityKind.IDLE or activity.state in ("done", "error"):
                self._sessions.on_next(
                    self._snapshots.touch_session(
                        event.session_key,
                        event.is_main,
                        session_activity_text(activity),
                    )
                )
        if event.content:
            self._notify(
                Notification(
                    message=truncate_message(event.content),
                    channel=event.channel,
                    agent=event.agent,
                    intent=event.intent,
                    tags=event.tags,
                )
            )

    def _publish_channels(self, channels) -> None:
        self._logger.info(
            "Channel health: " + ", ".join(f"{c.name}={c.status}" for c in channels)
        )
        self._channel_health.on_next(channels)

    def _notify(self, notification: Notification) -> None:
        self._notifications.on_next(self._categorizer.apply(notification, self._rules))

    # =========================================================================
    # Background tasks
    # =========================================================================

    async def _poll_loop(self) -> None:
        await asyncio.sleep(self._initial_delay)
        while self._connection.state is ConnectionState.CONNECTED:
            await self.refresh()
            await asyncio.sleep(self._poll_interval)

    def _cancel_poll(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _spawn(self, coro: Coroutine[Any, Any, Any] | Awaitable[Any]) -> asyncio.Task:
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
