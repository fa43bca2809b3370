"""Core error types for :mod:`rxclaw`."""


class RxException(Exception):
    """Wrapper for errors forwarded through a ReactiveX ``on_error`` channel."""

    def __init__(self, exception: Exception, source: str = "Unknown", note: str = ""):
        super().__init__(f"<{source}> {note}: {exception}")
        self.exception = exception
        self.source = source
        self.note = note

    def __str__(self):
        return f"<{self.source}> {self.note}: {self.exception}"


class GatewayError(Exception):
    """Base class for all gateway client failures."""


class TransportError(GatewayError):
    """The duplex stream was refused, reset or timed out. Triggers backoff."""


class ProtocolError(GatewayError):
    """An inbound frame was malformed or had an unexpected shape.

    The offending message is logged and dropped; the receive loop continues.
    """


class AuthRejected(GatewayError):
    """The gateway explicitly denied a registration (``connect``) request."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message if code is None else f"{message} (code: {code})")
        self.message = message
        self.code = code


class UnsupportedMethod(GatewayError):
    """The gateway answered a request with an "unknown method" failure."""

    def __init__(self, method: str):
        super().__init__(f"Method not supported by gateway: {method}")
        self.method = method


class RequestFailed(GatewayError):
    """The gateway answered a tracked request with ``ok: false``."""

    def __init__(self, method: str, message: str, code: str | None = None):
        super().__init__(f"{method} failed: {message}")
        self.method = method
        self.message = message
        self.code = code


class NotConnectedError(GatewayError):
    """A user action needs an open connection and none is available."""


class ValidationError(GatewayError):
    """An inbound command name or its arguments failed validation."""


class CapabilityExecutionError(GatewayError):
    """A capability handler failed while executing a command."""

    def __init__(self, command: str, message: str):
        super().__init__(message)
        self.command = command
        self.message = message


class IdentityError(GatewayError):
    """The persisted device identity exists but cannot be used."""
