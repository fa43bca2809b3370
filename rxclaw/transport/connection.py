"""Supervised duplex connection to the gateway.

:class:`GatewayConnection` owns the socket and a single supervisor task
that connects, runs the receive loop (the sole reader of the socket) and
reconnects with :class:`~rxclaw.transport.backoff.BackoffPolicy` after
failures. The connection never reconnects after :meth:`disconnect`.

Connection states and their allowed transitions::

    DISCONNECTED -> CONNECTING                   start() / backoff wait
    CONNECTING   -> CONNECTED                    registration accepted
    CONNECTING   -> ERROR | DISCONNECTED         handshake failure / close
    CONNECTED    -> ERROR | DISCONNECTED         read error / close
    ERROR        -> CONNECTING | DISCONNECTED    backoff wait / disconnect()

``CONNECTED`` is entered only through :meth:`mark_connected`, called by the
owning client once the gateway accepted its registration.
"""

import asyncio
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable

import websockets
from opentelemetry._logs import LoggerProvider
from reactivex import Observable
from reactivex import operators as ops
from reactivex.subject import BehaviorSubject
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from ..config import origin_for_url
from ..mechanism import ProtocolError, TransportError
from ..telemetry import make_logger
from ..utils import get_full_error_info, get_short_error_info
from .backoff import BackoffPolicy

KEEPALIVE_INTERVAL = 30.0


class ConnectionState(Enum):
    """Observable states of a gateway connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.ERROR, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.CONNECTED: frozenset(
        {ConnectionState.ERROR, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.ERROR: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED}
    ),
}

MessageHandler = Callable[[str | bytes], Awaitable[None]]
OpenHandler = Callable[[], Awaitable[None]]
CloseHandler = Callable[[Exception | None], Awaitable[None]]
Connector = Callable[[str], Awaitable[Any]]


async def websocket_connector(url: str) -> Any:
    """Default connector: a ``websockets`` client with origin and keepalive."""
    return await websockets.connect(
        url,
        origin=origin_for_url(url),
        ping_interval=KEEPALIVE_INTERVAL,
        max_size=None,
    )


class GatewayConnection:
    """Reconnecting socket owner shared by the operator and node clients.

    Parameters
    ----------
    url : str
        Normalized ``ws://`` or ``wss://`` gateway URL.
    on_message : MessageHandler
        Awaited for every inbound message, in order. A
        :class:`~rxclaw.mechanism.ProtocolError` or any other exception it
        raises is logged and that single message is dropped.
    on_open : OpenHandler | None
        Awaited after each transport opens, before the first read.
    on_close : CloseHandler | None
        Awaited after each transport closes with the failure, if any.
    connector : Connector | None
        Coroutine function returning an open socket. The socket must offer
        ``send``, ``close`` and async iteration over inbound messages.
    backoff : BackoffPolicy | None
        Reconnect delays; defaults to the 1..60 s schedule.
    """

    def __init__(
        self,
        url: str,
        *,
        on_message: MessageHandler,
        on_open: OpenHandler | None = None,
        on_close: CloseHandler | None = None,
        connector: Connector | None = None,
        backoff: BackoffPolicy | None = None,
        name: str | None = None,
        logger_provider: LoggerProvider | None = None,
    ):
        self.url = url
        self.backoff = backoff if backoff else BackoffPolicy()
        self._name = name if name else f"GatewayConnection:{url}"
        self._on_message = on_message
        self._on_open = on_open
        self._on_close = on_close
        self._connector = connector if connector else websocket_connector

        self._base_logger = make_logger(self._name, logger_provider)
        self._logger = self._base_logger

        self._socket: Any = None
        self._task: asyncio.Task | None = None
        self._closing_tasks: set[asyncio.Task] = set()
        self._stopping = False
        self._send_lock = asyncio.Lock()
        self._state_subject: BehaviorSubject[ConnectionState] = BehaviorSubject(
            ConnectionState.DISCONNECTED
        )

    # ---------------- state ---------------- #

    @property
    def state(self) -> ConnectionState:
        return self._state_subject.value

    @property
    def connection_state(self) -> Observable:
        """Observable stream of state changes.

        New subscribers immediately receive the current state.
        """
        return self._state_subject.pipe(ops.share())

    @property
    def is_open(self) -> bool:
        return self._socket is not None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _set_state(self, state: ConnectionState) -> None:
        current = self.state
        if state is current:
            return
        if state not in TRANSITIONS[current]:
            raise RuntimeError(
                f"Invalid connection state transition: {current.value} -> {state.value}"
            )
        self._logger.debug(f"Connection state: {state.value}")
        self._state_subject.on_next(state)

    def mark_connected(self) -> None:
        """Registration accepted by the gateway."""
        if self.state is ConnectionState.CONNECTING:
            self._set_state(ConnectionState.CONNECTED)
        else:
            self._logger.debug(f"Ignoring registration while {self.state.value}")

    async def fail_attempt(self, reason: str) -> None:
        """End the current attempt in ERROR; the supervisor reconnects."""
        self._logger.error(f"Connection attempt failed: {reason}")
        if self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            self._set_state(ConnectionState.ERROR)
        socket = self._socket
        if socket is not None:
            # Closing from a separate task: this may run inside the receive loop.
            task = asyncio.get_running_loop().create_task(self._discard(socket))
            self._closing_tasks.add(task)
            task.add_done_callback(self._closing_tasks.discard)

    # ---------------- lifecycle ---------------- #

    async def start(self) -> None:
        """Begin connecting; returns immediately, the supervisor runs in a task."""
        if self.is_running:
            return
        self._stopping = False
        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.get_running_loop().create_task(
            self._supervise(), name=f"{self._name}:supervisor"
        )

    async def disconnect(self) -> None:
        """Close gracefully and stop reconnecting.

        A pending backoff sleep is cancelled; nothing is raised to the caller.
        """
        self._stopping = True
        task, self._task = self._task, None
        socket, self._socket = self._socket, None
        if socket is not None:
            await self._discard(socket)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self.state is not ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)
        self._logger.info("Disconnected")

    async def close(self) -> None:
        """Disconnect and complete the state observable."""
        await self.disconnect()
        self._state_subject.on_completed()

    # ---------------- outbound ---------------- #

    async def send(self, text: str) -> bool:
        """Write one message; writes from concurrent callers are serialized.

        Returns False (after logging) when no socket is open or the write fails.
        """
        socket = self._socket
        if socket is None:
            self._logger.debug("Send skipped, no open socket")
            return False
        async with self._send_lock:
            try:
                await socket.send(text)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.warning(f"Send failed: {get_short_error_info(e)}")
                return False
        return True

    # ---------------- supervisor ---------------- #

    async def _supervise(self) -> None:
        while not self._stopping:
            self._logger = self._base_logger
            self._logger.info(
                f"Connecting to {self.url} (attempt {self.backoff.attempts + 1})"
            )
            try:
                socket = await self._connector(self.url)
            except asyncio.CancelledError:
                raise
            except websockets.InvalidURI as e:
                self._logger.error(
                    f"Invalid gateway URL, not retrying: {get_short_error_info(e)}"
                )
                self._set_state(ConnectionState.ERROR)
                return
            except Exception as e:
                self._logger.warning(f"Connection failed: {get_short_error_info(e)}")
                self._set_state(ConnectionState.ERROR)
                await self._wait_before_retry()
                continue

            if self._stopping:
                await self._discard(socket)
                break

            self._socket = socket
            self._logger = self._base_logger.with_context(
                connection_id=uuid.uuid4().hex[:8]
            )
            self.backoff.reset()
            self._logger.info("Transport open, waiting for challenge")

            error: Exception | None = None
            try:
                if self._on_open is not None:
                    await self._on_open()
                error = await self._receive_loop(socket)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._logger.error(f"Open handler failed: {get_short_error_info(e)}")
                error = e
            finally:
                if self._socket is socket:
                    self._socket = None

            await self._discard(socket)
            if self._on_close is not None:
                try:
                    await self._on_close(error)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self._logger.error(
                        f"Close handler failed: {get_short_error_info(e)}"
                    )
            if self._stopping:
                break
            if self.state is not ConnectionState.ERROR:
                self._set_state(
                    ConnectionState.ERROR if error else ConnectionState.DISCONNECTED
                )
            await self._wait_before_retry()

    async def _receive_loop(self, socket: Any) -> Exception | None:
        """Read until the socket closes. Returns the failure, if any."""
        try:
            async for message in socket:
                await self._handle(message)
        except ConnectionClosedOK:
            pass
        except ConnectionClosedError as e:
            self._logger.warning(f"Connection closed: {get_short_error_info(e)}")
            return TransportError(str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.error(f"Receive loop failed: {get_short_error_info(e)}")
            return TransportError(get_short_error_info(e))
        self._logger.info("Connection closed")
        return None

    async def _handle(self, message: str | bytes) -> None:
        try:
            await self._on_message(message)
        except ProtocolError as e:
            self._logger.warning(f"Dropped message: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.error(
                f"Message processing error: {get_short_error_info(e)}",
                traceback=get_full_error_info(e),
            )

    async def _wait_before_retry(self) -> None:
        delay = self.backoff.next_delay()
        self._set_state(ConnectionState.CONNECTING)
        self._logger.warning(
            f"Reconnecting in {delay:g}s (attempt {self.backoff.attempts})"
        )
        await asyncio.sleep(delay)

    async def _discard(self, socket: Any) -> None:
        try:
            await asyncio.wait_for(socket.close(), timeout=1.0)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._logger.debug(f"Error while closing socket: {get_short_error_info(e)}")
