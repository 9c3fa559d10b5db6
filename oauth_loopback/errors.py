"""Error taxonomy for the redirect-capture server."""

from collections.abc import Sequence


class OAuthLoopbackError(Exception):
    """Base class for session-scoped errors raised to the host application."""

    pass


class ConfigError(OAuthLoopbackError, ValueError):
    """Invalid server configuration."""

    pass


class BindError(OAuthLoopbackError):
    """No candidate port (or no ephemeral port) could be bound.

    Attributes:
        ports: The exhausted candidate ports, empty for an ephemeral request
        errors: The OS error message for each failed attempt, keyed by port
    """

    def __init__(self, ports: Sequence[int], errors: dict[int, str] | None = None):
        self.ports = tuple(ports)
        self.errors = dict(errors or {})
        if self.ports:
            tried = ", ".join(str(p) for p in self.ports)
            message = f"Could not bind any of the requested ports: {tried}"
        else:
            message = "Could not bind an ephemeral port"
        details = "; ".join(f"{port}: {err}" for port, err in self.errors.items())
        if details:
            message = f"{message} ({details})"
        super().__init__(message)


class NotRunningError(OAuthLoopbackError):
    """cancel() referenced a port with no active session."""

    def __init__(self, port: int):
        self.port = port
        super().__init__(f"No redirect server is running on port {port}")


class ListenerFatalError(OAuthLoopbackError):
    """The listening socket failed outside of the normal accept/close flow."""

    def __init__(self, port: int, cause: BaseException):
        self.port = port
        self.cause = cause
        super().__init__(f"Listener on port {port} failed: {cause}")
