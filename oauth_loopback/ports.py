"""Port selection for the redirect listener.

Candidates are tried in order and the first one that binds wins. An empty
candidate list asks the OS for an ephemeral port instead. An exhausted
explicit list is an error: the caller registered those exact redirect URIs
with the OAuth provider, so a different port would be useless.
"""

import logging
import socket
import sys
from collections.abc import Sequence

from .errors import BindError

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_BACKLOG = 16

# Port 0 asks the OS to pick an unused port
EPHEMERAL_PORT = 0


def _address_family(host: str) -> socket.AddressFamily:
    """Pick the socket family from the host literal."""
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def _try_bind(host: str, port: int, backlog: int) -> socket.socket:
    """Bind and listen on a single port, releasing the socket on failure."""
    sock = socket.socket(_address_family(host), socket.SOCK_STREAM)
    try:
        if IS_WINDOWS:
            # SO_REUSEADDR on Windows lets another socket steal the port
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_EXCLUSIVEADDRUSE, 1)
        else:
            # Allows re-binding right after cancel while old connections sit in TIME_WAIT
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(backlog)
        sock.setblocking(False)
    except BaseException:
        sock.close()
        raise
    return sock


def bind_listener(
    ports: Sequence[int] = (),
    host: str = DEFAULT_HOST,
    backlog: int = DEFAULT_BACKLOG,
) -> socket.socket:
    """Bind a listening socket on the first free candidate port.

    Args:
        ports: Ordered candidate ports. Empty means "any free port".
        host: Interface to bind (loopback by default)
        backlog: Listen backlog for the socket

    Returns:
        A listening, non-blocking socket. The caller owns it.

    Raises:
        BindError: If every candidate failed, or no ephemeral port was available
    """
    if not ports:
        try:
            sock = _try_bind(host, EPHEMERAL_PORT, backlog)
        except OSError as e:
            raise BindError((), {EPHEMERAL_PORT: str(e)}) from e
        logger.debug(f"Bound ephemeral port {bound_port(sock)} on {host}")
        return sock

    errors: dict[int, str] = {}
    for port in ports:
        try:
            sock = _try_bind(host, port, backlog)
        except OSError as e:
            logger.debug(f"Port {port} on {host} unavailable: {e}")
            errors[port] = str(e)
            continue
        logger.debug(f"Bound candidate port {port} on {host}")
        return sock

    raise BindError(ports, errors)


def bound_port(sock: socket.socket) -> int:
    """Return the local port a socket is bound to."""
    port: int = sock.getsockname()[1]
    return port


def is_port_available(port: int, host: str = DEFAULT_HOST) -> bool:
    """Check whether a port could be bound right now.

    The answer is only a snapshot: another process may take the port at any
    time afterwards.
    """
    try:
        sock = _try_bind(host, port, 1)
    except OSError:
        return False
    sock.close()
    return True
