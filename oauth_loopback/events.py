"""Event types and the subscriber registry that delivers them.

Every accepted connection produces exactly one event: a CapturedRedirect
when the request looks like an OAuth redirect, an InvalidRedirect otherwise.
A listener that dies unexpectedly produces a single ListenerFailed.

Delivery is decoupled from connection handling: emit() only enqueues, and a
dispatcher task hands events to subscribers. A slow subscriber delays later
deliveries, never the HTTP response.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, ClassVar, Union

logger = logging.getLogger(__name__)

# Event kinds
REDIRECT_CAPTURED = "redirect-captured"
REDIRECT_INVALID = "redirect-invalid"
LISTENER_ERROR = "listener-error"

EVENT_KINDS = (REDIRECT_CAPTURED, REDIRECT_INVALID, LISTENER_ERROR)


@dataclass(frozen=True)
class CapturedRedirect:
    """A request that looks like an OAuth redirect.

    Attributes:
        port: Port of the session that accepted the connection
        raw_url: Request target as received (path and query)
        query_parameters: Decoded query parameters, first value wins
        host: Host the session is bound to
    """

    kind: ClassVar[str] = REDIRECT_CAPTURED

    port: int
    raw_url: str
    query_parameters: dict[str, str] = field(default_factory=dict)
    host: str = "127.0.0.1"

    @property
    def url(self) -> str:
        """The absolute redirect URL as the browser requested it."""
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}{self.raw_url}"

    @property
    def payload(self) -> str:
        return self.url

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "port": self.port,
            "url": self.url,
            "query": dict(self.query_parameters),
        }


@dataclass(frozen=True)
class InvalidRedirect:
    """A connection that did not carry a usable redirect."""

    kind: ClassVar[str] = REDIRECT_INVALID

    port: int
    reason: str
    raw_request_snippet: str = ""

    @property
    def payload(self) -> str:
        return self.reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "port": self.port,
            "reason": self.reason,
            "request": self.raw_request_snippet,
        }


@dataclass(frozen=True)
class ListenerFailed:
    """The listening socket of a session failed and the session was torn down."""

    kind: ClassVar[str] = LISTENER_ERROR

    port: int
    error: str

    @property
    def payload(self) -> str:
        return self.error

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "port": self.port, "error": self.error}


RedirectOutcome = Union[CapturedRedirect, InvalidRedirect]
Event = Union[CapturedRedirect, InvalidRedirect, ListenerFailed]

# Subscribers may be plain functions or coroutine functions
EventCallback = Callable[[Any], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by EventEmitter.subscribe().

    Calling the handle (or its unsubscribe method) stops future deliveries
    to this subscriber. Unsubscribing twice is a no-op.
    """

    def __init__(self, emitter: EventEmitter, kind: str, callback: EventCallback) -> None:
        self.kind = kind
        self.callback = callback
        self._emitter: EventEmitter | None = emitter

    @property
    def active(self) -> bool:
        return self._emitter is not None

    def unsubscribe(self) -> None:
        if self._emitter is not None:
            self._emitter._remove(self)
            self._emitter = None

    def __call__(self) -> None:
        self.unsubscribe()


class EventEmitter:
    """Observer registry with queued, fire-and-forget delivery.

    Usage:
        async with EventEmitter() as emitter:
            unlisten = emitter.on_url(print)
            ...
            unlisten()
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscription]] = {kind: [] for kind in EVENT_KINDS}
        self._queue: asyncio.Queue[Event | None] | None = None
        self._dispatcher: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    def subscribe(self, kind: str, callback: EventCallback) -> Subscription:
        """Register a callback for one event kind.

        The callback receives the event object (CapturedRedirect,
        InvalidRedirect or ListenerFailed).

        Raises:
            ValueError: If kind is not a known event kind
        """
        if kind not in self._subscribers:
            raise ValueError(
                f"Unknown event kind: {kind!r}. Expected one of: {', '.join(EVENT_KINDS)}"
            )
        subscription = Subscription(self, kind, callback)
        self._subscribers[kind].append(subscription)
        return subscription

    def on_url(self, callback: Callable[[str], Any]) -> Subscription:
        """Receive the full URL of every captured redirect."""
        return self.subscribe(REDIRECT_CAPTURED, lambda event: callback(event.url))

    def on_invalid_url(self, callback: Callable[[str], Any]) -> Subscription:
        """Receive the reason of every rejected connection."""
        return self.subscribe(REDIRECT_INVALID, lambda event: callback(event.reason))

    def on_listener_error(self, callback: Callable[[str], Any]) -> Subscription:
        """Receive the error message when a listener dies."""
        return self.subscribe(LISTENER_ERROR, lambda event: callback(event.error))

    def subscriber_count(self, kind: str) -> int:
        return len(self._subscribers.get(kind, []))

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.kind, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    async def start(self) -> None:
        """Start the dispatcher task. Must be called from a running loop."""
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._dispatcher = asyncio.create_task(self._dispatch())

    def emit(self, event: Event) -> None:
        """Queue an event for delivery without waiting for subscribers."""
        if self._queue is None or not self.running:
            logger.warning(f"Dropping {event.kind} event for port {event.port}: emitter not started")
            return
        self._queue.put_nowait(event)

    async def aclose(self) -> None:
        """Deliver everything already queued, then stop the dispatcher."""
        if self._queue is None or self._dispatcher is None:
            return
        self._queue.put_nowait(None)
        await self._dispatcher
        self._dispatcher = None
        self._queue = None

    async def _dispatch(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            if event is None:
                return
            # Copy so callbacks may unsubscribe while we iterate
            for subscription in list(self._subscribers[event.kind]):
                if not subscription.active:
                    continue
                await self._deliver(subscription, event)

    async def _deliver(self, subscription: Subscription, event: Event) -> None:
        try:
            result = subscription.callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Subscriber for {event.kind} raised")

    async def __aenter__(self) -> EventEmitter:
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()
