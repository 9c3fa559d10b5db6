"""Configuration for redirect listeners."""

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .errors import ConfigError
from .ports import DEFAULT_BACKLOG, DEFAULT_HOST
from .response import resolve_body

# Environment variables providing defaults
ENV_HOST = "OAUTH_LOOPBACK_HOST"
ENV_PORTS = "OAUTH_LOOPBACK_PORTS"
ENV_TIMEOUT = "OAUTH_LOOPBACK_TIMEOUT"

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".config" / "oauth-loopback" / ".env",
]

MAX_PORT = 65535


def _parse_ports(value: Any) -> tuple[int, ...]:
    """Validate a candidate port list.

    Port 0 is rejected: an explicit list names ports registered with the
    OAuth provider, so "any port" has no place in it.
    """
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple)):
        raise ConfigError(f"'ports' must be a list of port numbers, got {type(value).__name__}")

    ports: list[int] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, int):
            raise ConfigError(f"Invalid port {item!r}: ports must be integers")
        if not 1 <= item <= MAX_PORT:
            raise ConfigError(f"Invalid port {item}: must be between 1 and {MAX_PORT}")
        if item not in ports:
            ports.append(item)
    return tuple(ports)


def _parse_timeout(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'timeout' must be a number of seconds, got {value!r}")
    if value <= 0:
        raise ConfigError(f"'timeout' must be positive, got {value}")
    return float(value)


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for one redirect listener.

    Attributes:
        ports: Ordered candidate ports; empty means an OS-assigned port
        response: HTML page sent to the browser; None uses the default page
        host: Interface to bind
        timeout: Per-connection read/write bound in seconds; None for no bound
        backlog: Listen backlog
    """

    ports: tuple[int, ...] = ()
    response: str | None = None
    host: str = DEFAULT_HOST
    timeout: float | None = None
    backlog: int = DEFAULT_BACKLOG

    def __post_init__(self) -> None:
        # Normalize lists passed by callers so the config stays immutable
        object.__setattr__(self, "ports", _parse_ports(self.ports))
        object.__setattr__(self, "timeout", _parse_timeout(self.timeout))
        if self.response is not None and not isinstance(self.response, str):
            raise ConfigError("'response' must be an HTML string")
        if not self.host:
            raise ConfigError("'host' must not be empty")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "ServerConfig":
        """Build a config from the host-facing shape ``{"ports": [...], "response": "..."}``."""
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ConfigError(f"Config must be an object, got {type(data).__name__}")

        known = {"ports", "response", "host", "timeout", "backlog"}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        backlog = data.get("backlog", DEFAULT_BACKLOG)
        if isinstance(backlog, bool) or not isinstance(backlog, int) or backlog < 1:
            raise ConfigError(f"'backlog' must be a positive integer, got {backlog!r}")

        return cls(
            ports=data.get("ports") or (),
            response=data.get("response"),
            host=data.get("host") or DEFAULT_HOST,
            timeout=data.get("timeout"),
            backlog=backlog,
        )

    def resolve_response(self) -> str:
        """The HTML body actually sent to browsers."""
        return resolve_body(self.response)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ports": list(self.ports),
            "response": self.response,
            "host": self.host,
            "timeout": self.timeout,
            "backlog": self.backlog,
        }


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def _env_defaults() -> dict[str, Any]:
    """Read config defaults from the environment."""
    defaults: dict[str, Any] = {}

    host = os.environ.get(ENV_HOST, "").strip()
    if host:
        defaults["host"] = host

    ports = os.environ.get(ENV_PORTS, "").strip()
    if ports:
        try:
            defaults["ports"] = [int(p) for p in ports.split(",") if p.strip()]
        except ValueError:
            raise ConfigError(
                f"{ENV_PORTS} must be a comma separated list of ports, got {ports!r}"
            ) from None

    timeout = os.environ.get(ENV_TIMEOUT, "").strip()
    if timeout:
        try:
            defaults["timeout"] = float(timeout)
        except ValueError:
            raise ConfigError(f"{ENV_TIMEOUT} must be a number, got {timeout!r}") from None

    return defaults


def load_server_config(
    config_path: Path | None = None,
    env_path: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> ServerConfig:
    """Load listener configuration.

    Precedence, lowest first: environment (after loading the .env file),
    the JSON config file, then explicit overrides. Override values of None
    are ignored.

    Args:
        config_path: JSON file with ``ports``, ``response``/``responseFile``,
            ``host`` and ``timeout`` keys (optional)
        env_path: Explicit path to .env file (optional)
        overrides: Values from the caller, e.g. command line options

    Raises:
        ConfigError: If a value is invalid
        FileNotFoundError: If an explicit config file does not exist
        json.JSONDecodeError: If the config file is invalid JSON
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    data: dict[str, Any] = _env_defaults()

    if config_path is not None:
        with open(config_path) as f:
            file_data = json.load(f)
        if not isinstance(file_data, dict):
            raise ConfigError(f"{config_path} must contain a JSON object")

        response_file = file_data.pop("responseFile", None)
        if response_file is not None:
            # Relative paths are resolved against the config file
            response_path = config_path.parent / response_file
            file_data["response"] = response_path.read_text(encoding="utf-8")
        data.update(file_data)

    if overrides:
        data.update({key: value for key, value in overrides.items() if value is not None})

    return ServerConfig.from_dict(data)
