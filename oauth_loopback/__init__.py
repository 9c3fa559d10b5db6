"""oauth-loopback - Capture OAuth authorization redirects on a short-lived localhost listener."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("oauth-loopback")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Lifecycle
    "SessionRegistry",
    "Session",
    "ServerConfig",
    "load_server_config",
    # Events
    "EventEmitter",
    "Subscription",
    "CapturedRedirect",
    "InvalidRedirect",
    "ListenerFailed",
    # Errors
    "OAuthLoopbackError",
    "BindError",
    "NotRunningError",
    "ListenerFatalError",
    "ConfigError",
]


# Lazy imports keep `oauth-loopback --version` fast
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name == "SessionRegistry":
        from .registry import SessionRegistry
        return SessionRegistry
    elif name == "Session":
        from .session import Session
        return Session
    elif name in ("ServerConfig", "load_server_config"):
        from .config import ServerConfig, load_server_config
        return {"ServerConfig": ServerConfig, "load_server_config": load_server_config}[name]
    elif name in ("EventEmitter", "Subscription", "CapturedRedirect", "InvalidRedirect", "ListenerFailed"):
        from . import events
        return getattr(events, name)
    elif name in ("OAuthLoopbackError", "BindError", "NotRunningError", "ListenerFatalError", "ConfigError"):
        from . import errors
        return getattr(errors, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
