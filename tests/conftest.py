"""Shared fixtures and utilities for oauth-loopback tests."""

import asyncio
import os
import socket
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from oauth_loopback.config import ENV_HOST, ENV_PORTS, ENV_TIMEOUT


# ============================================================================
# Network Helpers
# ============================================================================


def free_port() -> int:
    """Return a port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port: int = s.getsockname()[1]
        return port


def occupy_port() -> socket.socket:
    """Bind and listen on an ephemeral port so nobody else can take it."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    s.listen(1)
    return s


async def send_raw(port: int, data: bytes) -> bytes:
    """Send raw bytes to the listener and return the full response."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(data)
    await writer.drain()
    response = await reader.read()
    writer.close()
    await writer.wait_closed()
    return response


def split_response(response: bytes) -> tuple[str, bytes]:
    """Split a raw HTTP response into (head, body)."""
    head, _, body = response.partition(b"\r\n\r\n")
    return head.decode("ascii"), body


class EventRecorder:
    """Collects events delivered to a subscriber."""

    def __init__(self) -> None:
        self.events: list[Any] = []

    def __call__(self, event: Any) -> None:
        self.events.append(event)

    async def wait_for(self, count: int, timeout: float = 5.0) -> list[Any]:
        """Wait until at least count events have been recorded."""
        async with asyncio.timeout(timeout):
            while len(self.events) < count:
                await asyncio.sleep(0.01)
        return self.events

    def kinds(self) -> list[str]:
        return [event.kind for event in self.events]


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def recorder() -> EventRecorder:
    """Create an event recorder."""
    return EventRecorder()


@pytest.fixture
def occupied_port() -> Generator[int, None, None]:
    """A port held by another listening socket for the duration of the test."""
    blocker = occupy_port()
    yield blocker.getsockname()[1]
    blocker.close()


@pytest.fixture
def html_file(tmp_path: Path) -> Path:
    """Create a custom response page."""
    path = tmp_path / "done.html"
    path.write_text("<html><body>Signed in, go back to the app</body></html>")
    return path


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Temporarily clear listener-related environment variables."""
    old_env = os.environ.copy()
    for key in (ENV_HOST, ENV_PORTS, ENV_TIMEOUT):
        os.environ.pop(key, None)
    yield
    os.environ.clear()
    os.environ.update(old_env)
