"""Registry of active redirect listeners, keyed by port.

The registry is an explicit object owned by the application's composition
root. It is the only shared mutable state in the package; every mutation
happens under its lock.

Usage:
    async with EventEmitter() as emitter, SessionRegistry(emitter) as registry:
        emitter.on_url(handle_redirect)
        port = await registry.start(ServerConfig(ports=(8000, 8001)))
        ...
        await registry.cancel(port)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from .config import ServerConfig
from .errors import NotRunningError
from .events import EventEmitter
from .ports import bind_listener
from .session import Session, SessionState

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Starts, tracks and cancels redirect listeners.

    At most one session exists per port. A port is registered from the
    moment its socket is bound until cancel() (or teardown, or a fatal
    listener error) has released it.
    """

    def __init__(self, emitter: EventEmitter) -> None:
        self.emitter = emitter
        self._sessions: dict[int, Session] = {}
        self._lock = asyncio.Lock()
        self._evictions: set[asyncio.Task[None]] = set()

    @property
    def ports(self) -> list[int]:
        """Ports with a registered session, in start order."""
        return list(self._sessions)

    def get(self, port: int) -> Session | None:
        return self._sessions.get(port)

    def __contains__(self, port: object) -> bool:
        return port in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def start(self, config: ServerConfig | Mapping[str, Any] | None = None) -> int:
        """Bind a listener and register its session.

        Args:
            config: Listener configuration, or its dict form
                (``{"ports": [...], "response": "..."}``). None uses defaults.

        Returns:
            The bound port

        Raises:
            BindError: If no candidate port could be bound; the registry is unchanged
            ConfigError: If config is invalid
        """
        if not isinstance(config, ServerConfig):
            config = ServerConfig.from_dict(config)

        if not self.emitter.running:
            await self.emitter.start()

        async with self._lock:
            sock = bind_listener(config.ports, config.host, config.backlog)
            try:
                session = Session(sock, config, self.emitter, on_fatal=self._schedule_eviction)
            except BaseException:
                sock.close()
                raise
            # The OS never hands out a port we still hold, so this cannot collide
            self._sessions[session.port] = session
            session.start()

        logger.info(f"Redirect server listening on {session.redirect_uri}")
        return session.port

    async def cancel(self, port: int) -> None:
        """Stop the session on a port and release the port.

        Returns only once the socket is closed, so a following start() with
        the same port will not collide. Concurrent cancels of one port share
        the same shutdown and all succeed.

        Raises:
            NotRunningError: If no session is registered on the port
        """
        async with self._lock:
            session = self._sessions.get(port)
        if session is None:
            raise NotRunningError(port)

        await session.stop()

        async with self._lock:
            if self._sessions.get(port) is session:
                del self._sessions[port]
        logger.info(f"Redirect server on port {port} cancelled")

    async def cancel_all(self) -> None:
        """Cancel every remaining session. Used at application shutdown."""
        for port in self.ports:
            try:
                await self.cancel(port)
            except NotRunningError:
                # Removed concurrently, e.g. by a fatal listener error
                continue
        if self._evictions:
            await asyncio.gather(*self._evictions, return_exceptions=True)

    def _schedule_eviction(self, session: Session) -> None:
        task = asyncio.create_task(self._evict(session))
        self._evictions.add(task)
        task.add_done_callback(self._evictions.discard)

    async def _evict(self, session: Session) -> None:
        """Remove a session whose listener died."""
        await session.stop()
        async with self._lock:
            if self._sessions.get(session.port) is session:
                del self._sessions[session.port]
        logger.warning(f"Redirect server on port {session.port} removed after listener failure")

    def active_sessions(self) -> list[Session]:
        """Sessions still accepting connections."""
        return [s for s in self._sessions.values() if s.state is SessionState.ACTIVE]

    async def aclose(self) -> None:
        await self.cancel_all()

    async def __aenter__(self) -> SessionRegistry:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()
