"""A single redirect listener: one bound socket and its accept loop.

Lifecycle:
    ACTIVE    accept loop running, connections handled concurrently
    STOPPING  stop requested (cancel, teardown or fatal listener error)
    STOPPED   socket closed, every connection settled, events forwarded

A connection reserves an outcome slot when the first byte of its request
arrives, or when it settles without sending anything. A forwarding task
drains the slots in that order, so the events of one session follow the
order in which requests started arriving even though connections are
handled concurrently. An idle connection (a browser preconnect) holds no
slot and cannot delay the events of connections behind it.

A fatal listener error is reported after every pending outcome, as the
last event of the session.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import socket
from collections.abc import Callable
from enum import Enum

from .config import ServerConfig
from .errors import ListenerFatalError
from .events import EventEmitter, InvalidRedirect, ListenerFailed, RedirectOutcome
from .ports import bound_port
from .request import read_request
from .response import write_html_response

logger = logging.getLogger(__name__)

# accept() errors caused by one client; the listener itself is fine
CONNECTION_ERRNOS = frozenset(
    getattr(errno, name)
    for name in ("ECONNABORTED", "ECONNRESET", "EPROTO", "EPERM", "ETIMEDOUT")
    if hasattr(errno, name)
)

# accept() errors caused by resource exhaustion; retry after a pause
EXHAUSTION_ERRNOS = frozenset(
    getattr(errno, name)
    for name in ("EMFILE", "ENFILE", "ENOBUFS", "ENOMEM")
    if hasattr(errno, name)
)

# Pause before accepting again after resource exhaustion (seconds)
ACCEPT_RETRY_DELAY = 0.1


class SessionState(Enum):
    ACTIVE = "active"
    STOPPING = "stopping"
    STOPPED = "stopped"


class Session:
    """Owns one listening socket and drives its accept loop.

    Sessions are created by SessionRegistry.start() around a socket returned
    by the port selector; they should not be constructed directly by host
    applications.
    """

    def __init__(
        self,
        sock: socket.socket,
        config: ServerConfig,
        emitter: EventEmitter,
        on_fatal: Callable[[Session], None] | None = None,
    ) -> None:
        self.port = bound_port(sock)
        self.config = config
        self.state = SessionState.ACTIVE
        self.failure: ListenerFatalError | None = None

        self._sock: socket.socket | None = sock
        self._emitter = emitter
        self._on_fatal = on_fatal
        self._body = config.resolve_response()

        self._slots: asyncio.Queue[asyncio.Future[RedirectOutcome] | None] = asyncio.Queue()
        self._claimed: dict[asyncio.Task[None], asyncio.Future[RedirectOutcome]] = {}
        self._handlers: set[asyncio.Task[None]] = set()
        self._reading: set[asyncio.Task[None]] = set()
        self._accept_task: asyncio.Task[None] | None = None
        self._forward_task: asyncio.Task[None] | None = None
        self._stop_task: asyncio.Task[None] | None = None

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def redirect_uri(self) -> str:
        """Base URL to register with the OAuth provider."""
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}"

    @property
    def active_connections(self) -> int:
        return len(self._handlers)

    def start(self) -> None:
        """Launch the accept loop. Must be called from a running loop."""
        if self._accept_task is not None:
            return
        self._forward_task = asyncio.create_task(self._forward_outcomes())
        self._accept_task = asyncio.create_task(self._accept_loop())
        logger.debug(f"Redirect listener started on {self.redirect_uri}")

    async def stop(self) -> None:
        """Stop accepting, close the socket and settle every connection.

        Safe to call concurrently and repeatedly: all callers wait on the
        same shutdown, which runs exactly once.
        """
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._shutdown())
        # Shield so a caller being cancelled does not abort the shutdown itself
        await asyncio.shield(self._stop_task)

    async def _accept_loop(self) -> None:
        loop = asyncio.get_running_loop()
        assert self._sock is not None
        sock = self._sock

        while self.state is SessionState.ACTIVE:
            try:
                conn, _addr = await loop.sock_accept(sock)
            except OSError as e:
                if self.state is not SessionState.ACTIVE:
                    return
                if e.errno in CONNECTION_ERRNOS:
                    logger.warning(f"Port {self.port}: connection failed during accept: {e}")
                    self._reserve_slot().set_result(
                        InvalidRedirect(port=self.port, reason=f"Connection failed during accept: {e}")
                    )
                    continue
                if e.errno in EXHAUSTION_ERRNOS:
                    logger.warning(f"Port {self.port}: out of resources accepting connection: {e}")
                    await asyncio.sleep(ACCEPT_RETRY_DELAY)
                    continue
                self._fail(e)
                return

            self._spawn_handler(conn)

    def _reserve_slot(self) -> asyncio.Future[RedirectOutcome]:
        slot: asyncio.Future[RedirectOutcome] = asyncio.get_running_loop().create_future()
        self._slots.put_nowait(slot)
        return slot

    def _claim_slot(self, task: asyncio.Task[None]) -> asyncio.Future[RedirectOutcome]:
        """Return the connection's outcome slot, reserving it on first use."""
        slot = self._claimed.get(task)
        if slot is None:
            slot = self._claimed[task] = self._reserve_slot()
        return slot

    def _settle(self, task: asyncio.Task[None], outcome: RedirectOutcome) -> None:
        slot = self._claim_slot(task)
        if not slot.done():
            slot.set_result(outcome)

    def _spawn_handler(self, conn: socket.socket) -> None:
        task = asyncio.create_task(self._handle_connection(conn))
        self._handlers.add(task)
        self._reading.add(task)
        task.add_done_callback(lambda t: self._connection_done(t, conn))

    def _connection_done(self, task: asyncio.Task[None], conn: socket.socket) -> None:
        self._handlers.discard(task)
        self._reading.discard(task)
        # Handler was cancelled before it could read anything
        self._settle(
            task, InvalidRedirect(port=self.port, reason="Listener stopped before a request was received")
        )
        self._claimed.pop(task, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Port {self.port}: connection handler crashed: {task.exception()!r}")
        # No-op when the stream transport already closed it
        conn.close()

    async def _handle_connection(self, conn: socket.socket) -> None:
        """Read one request, report it, and answer with the HTML page."""
        task = asyncio.current_task()
        assert task is not None
        timeout = self.config.timeout
        try:
            reader, writer = await asyncio.open_connection(sock=conn)
        except OSError as e:
            self._settle(task, InvalidRedirect(port=self.port, reason=f"Could not open connection: {e}"))
            return

        try:
            try:
                outcome = await read_request(
                    reader, self.port, self.host, timeout, on_start=lambda: self._claim_slot(task)
                )
            except asyncio.CancelledError:
                self._settle(
                    task, InvalidRedirect(port=self.port, reason="Listener stopped before a request was received")
                )
                raise

            # Past this point the connection is no longer cancelled by stop()
            self._reading.discard(task)
            self._settle(task, outcome)

            if isinstance(outcome, InvalidRedirect):
                logger.warning(f"Port {self.port}: invalid redirect: {outcome.reason}")
            else:
                logger.debug(f"Port {self.port}: captured redirect {outcome.raw_url}")

            await write_html_response(writer, self._body, timeout)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _forward_outcomes(self) -> None:
        """Emit connection outcomes in the order their requests started arriving."""
        while True:
            slot = await self._slots.get()
            if slot is None:
                return
            self._emitter.emit(await slot)

    def _fail(self, error: OSError) -> None:
        """Handle loss of the listening socket: tear down, then report once."""
        self.failure = ListenerFatalError(self.port, error)
        logger.error(str(self.failure))
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._shutdown())
        if self._on_fatal is not None:
            self._on_fatal(self)

    def _close_socket(self) -> None:
        sock, self._sock = self._sock, None
        if sock is not None:
            sock.close()

    async def _shutdown(self) -> None:
        self.state = SessionState.STOPPING

        accept_task = self._accept_task
        if accept_task is not None and accept_task is not asyncio.current_task():
            accept_task.cancel()
            try:
                await accept_task
            except asyncio.CancelledError:
                pass

        # Single close path for the listening socket
        self._close_socket()

        # Connections still waiting for a request are dropped; those already
        # responding finish their write
        for task in list(self._reading):
            task.cancel()
        if self._handlers:
            await asyncio.gather(*self._handlers, return_exceptions=True)

        if self._forward_task is not None:
            self._slots.put_nowait(None)
            await self._forward_task

        if self.failure is not None:
            self._emitter.emit(ListenerFailed(port=self.port, error=str(self.failure)))

        self.state = SessionState.STOPPED
        logger.debug(f"Redirect listener on port {self.port} stopped")

    def __repr__(self) -> str:
        return f"Session(port={self.port}, state={self.state.value})"
