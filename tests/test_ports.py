"""Tests for port selection."""

import socket
from unittest.mock import patch

import pytest

from conftest import free_port, occupy_port
from oauth_loopback.errors import BindError
from oauth_loopback.ports import bind_listener, bound_port, is_port_available


class TestBindListener:
    """Tests for bind_listener function."""

    def test_ephemeral_when_no_candidates(self) -> None:
        """Test that an empty candidate list binds an OS-assigned port."""
        sock = bind_listener()
        try:
            port = bound_port(sock)
            assert 0 < port < 65536
            assert not sock.getblocking()
        finally:
            sock.close()

    def test_first_free_candidate_wins(self) -> None:
        """Test that candidates are tried in order."""
        first, second = free_port(), free_port()
        sock = bind_listener([first, second])
        try:
            assert bound_port(sock) == first
        finally:
            sock.close()

    def test_skips_occupied_candidate(self, occupied_port: int) -> None:
        """Test that an occupied candidate is skipped."""
        fallback = free_port()
        sock = bind_listener([occupied_port, fallback])
        try:
            assert bound_port(sock) == fallback
        finally:
            sock.close()

    def test_exhausted_list_raises_bind_error(self) -> None:
        """Test that an exhausted list fails instead of falling back to an ephemeral port."""
        blockers = [occupy_port(), occupy_port()]
        ports = [b.getsockname()[1] for b in blockers]
        try:
            with pytest.raises(BindError) as exc_info:
                bind_listener(ports)
        finally:
            for b in blockers:
                b.close()

        assert exc_info.value.ports == tuple(ports)
        assert set(exc_info.value.errors) == set(ports)
        for port in ports:
            assert str(port) in str(exc_info.value)

    def test_failed_attempts_release_their_socket(self, occupied_port: int) -> None:
        """Test that each failed bind closes the socket it created."""
        created: list[socket.socket] = []
        real_socket = socket.socket

        def tracking_socket(*args, **kwargs):
            s = real_socket(*args, **kwargs)
            created.append(s)
            return s

        with patch("oauth_loopback.ports.socket.socket", side_effect=tracking_socket):
            with pytest.raises(BindError):
                bind_listener([occupied_port])

        assert len(created) == 1
        assert created[0].fileno() == -1

    def test_ephemeral_failure_raises_bind_error(self) -> None:
        """Test that an unbindable host surfaces as BindError."""
        with pytest.raises(BindError) as exc_info:
            bind_listener(host="203.0.113.1")  # TEST-NET-3, never local

        assert exc_info.value.ports == ()
        assert "ephemeral" in str(exc_info.value)

    def test_listener_accepts_connections(self) -> None:
        """Test that the returned socket is already listening."""
        sock = bind_listener()
        try:
            with socket.create_connection(("127.0.0.1", bound_port(sock)), timeout=2):
                pass
        finally:
            sock.close()


class TestIsPortAvailable:
    """Tests for is_port_available function."""

    def test_free_port(self) -> None:
        """Test that a free port is reported available."""
        assert is_port_available(free_port())

    def test_occupied_port(self, occupied_port: int) -> None:
        """Test that an occupied port is reported unavailable."""
        assert not is_port_available(occupied_port)
