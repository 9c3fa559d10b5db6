"""Tests for event types and the event emitter."""

import asyncio
import logging

import pytest

from conftest import EventRecorder
from oauth_loopback.events import (
    LISTENER_ERROR,
    REDIRECT_CAPTURED,
    REDIRECT_INVALID,
    CapturedRedirect,
    EventEmitter,
    InvalidRedirect,
    ListenerFailed,
)


def captured(code: str = "abc") -> CapturedRedirect:
    return CapturedRedirect(port=8000, raw_url=f"/?code={code}", query_parameters={"code": code})


class TestEventTypes:
    """Tests for event dataclasses."""

    def test_captured_payload_is_url(self) -> None:
        """Test that the captured payload is the full URL."""
        event = captured()
        assert event.kind == REDIRECT_CAPTURED
        assert event.payload == "http://127.0.0.1:8000/?code=abc"
        assert event.to_dict()["query"] == {"code": "abc"}

    def test_invalid_payload_is_reason(self) -> None:
        """Test that the invalid payload is the reason."""
        event = InvalidRedirect(port=8000, reason="Unsupported method: POST", raw_request_snippet="POST / HTTP/1.1")
        assert event.kind == REDIRECT_INVALID
        assert event.payload == "Unsupported method: POST"
        assert event.to_dict()["request"] == "POST / HTTP/1.1"

    def test_listener_failed(self) -> None:
        """Test the listener failure event."""
        event = ListenerFailed(port=8000, error="boom")
        assert event.kind == LISTENER_ERROR
        assert event.to_dict() == {"kind": LISTENER_ERROR, "port": 8000, "error": "boom"}


class TestEventEmitter:
    """Tests for EventEmitter class."""

    @pytest.mark.asyncio
    async def test_delivers_to_matching_kind(self, recorder: EventRecorder) -> None:
        """Test that subscribers only get their kind."""
        async with EventEmitter() as emitter:
            emitter.subscribe(REDIRECT_CAPTURED, recorder)
            emitter.emit(InvalidRedirect(port=8000, reason="bad"))
            emitter.emit(captured())

        assert recorder.kinds() == [REDIRECT_CAPTURED]

    @pytest.mark.asyncio
    async def test_on_url_and_on_invalid_url(self) -> None:
        """Test the string-payload convenience subscriptions."""
        urls: list[str] = []
        errors: list[str] = []
        async with EventEmitter() as emitter:
            emitter.on_url(urls.append)
            emitter.on_invalid_url(errors.append)
            emitter.emit(captured("xyz"))
            emitter.emit(InvalidRedirect(port=8000, reason="Request has no query string"))

        assert urls == ["http://127.0.0.1:8000/?code=xyz"]
        assert errors == ["Request has no query string"]

    @pytest.mark.asyncio
    async def test_all_subscribers_receive(self) -> None:
        """Test fan-out to every current subscriber."""
        first, second = EventRecorder(), EventRecorder()
        async with EventEmitter() as emitter:
            emitter.subscribe(REDIRECT_CAPTURED, first)
            emitter.subscribe(REDIRECT_CAPTURED, second)
            emitter.emit(captured())

        assert len(first.events) == 1
        assert len(second.events) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self, recorder: EventRecorder) -> None:
        """Test that the returned handle deregisters only that subscriber."""
        other = EventRecorder()
        async with EventEmitter() as emitter:
            unlisten = emitter.subscribe(REDIRECT_CAPTURED, recorder)
            emitter.subscribe(REDIRECT_CAPTURED, other)
            emitter.emit(captured("one"))
            await recorder.wait_for(1)

            unlisten()
            unlisten()  # Second call is a no-op
            emitter.emit(captured("two"))

        assert [e.query_parameters["code"] for e in recorder.events] == ["one"]
        assert [e.query_parameters["code"] for e in other.events] == ["one", "two"]
        assert emitter.subscriber_count(REDIRECT_CAPTURED) == 1

    @pytest.mark.asyncio
    async def test_async_callbacks_awaited(self) -> None:
        """Test that coroutine subscribers are awaited."""
        seen: list[str] = []

        async def handler(url: str) -> None:
            await asyncio.sleep(0)
            seen.append(url)

        async with EventEmitter() as emitter:
            emitter.on_url(handler)
            emitter.emit(captured())

        assert seen == ["http://127.0.0.1:8000/?code=abc"]

    @pytest.mark.asyncio
    async def test_emit_does_not_wait_for_subscribers(self) -> None:
        """Test that a slow subscriber does not block emit()."""
        release = asyncio.Event()
        delivered: list[str] = []

        async def slow(url: str) -> None:
            await release.wait()
            delivered.append(url)

        async with EventEmitter() as emitter:
            emitter.on_url(slow)
            emitter.emit(captured("one"))
            emitter.emit(captured("two"))
            # emit() returned without any delivery completing
            assert delivered == []
            release.set()

        assert len(delivered) == 2

    @pytest.mark.asyncio
    async def test_failing_subscriber_isolated(self, recorder: EventRecorder, caplog) -> None:
        """Test that a raising subscriber does not affect the others."""

        def broken(event: object) -> None:
            raise RuntimeError("subscriber bug")

        with caplog.at_level(logging.ERROR, logger="oauth_loopback.events"):
            async with EventEmitter() as emitter:
                emitter.subscribe(REDIRECT_CAPTURED, broken)
                emitter.subscribe(REDIRECT_CAPTURED, recorder)
                emitter.emit(captured())

        assert len(recorder.events) == 1
        assert "Subscriber for redirect-captured raised" in caplog.text

    @pytest.mark.asyncio
    async def test_aclose_drains_queue(self, recorder: EventRecorder) -> None:
        """Test that closing delivers events already queued."""
        emitter = EventEmitter()
        await emitter.start()
        emitter.subscribe(REDIRECT_INVALID, recorder)
        for i in range(5):
            emitter.emit(InvalidRedirect(port=8000, reason=f"bad {i}"))
        await emitter.aclose()

        assert [e.reason for e in recorder.events] == [f"bad {i}" for i in range(5)]
        assert not emitter.running

    def test_unknown_kind_rejected(self) -> None:
        """Test that subscribing to an unknown kind fails."""
        emitter = EventEmitter()
        with pytest.raises(ValueError) as exc_info:
            emitter.subscribe("oauth://url", print)
        assert "Unknown event kind" in str(exc_info.value)

    def test_emit_before_start_is_logged(self, caplog) -> None:
        """Test that emitting on a stopped emitter is reported, not raised."""
        emitter = EventEmitter()
        with caplog.at_level(logging.WARNING, logger="oauth_loopback.events"):
            emitter.emit(captured())
        assert "emitter not started" in caplog.text
