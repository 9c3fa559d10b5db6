"""Parsing and validation of browser requests hitting the redirect listener.

The validity bar is intentionally low: a GET request with a non-empty query
string. OAuth semantics (state matching, error parameters) are left to the
host application, which receives the full URL.
"""

import asyncio
import logging
from collections.abc import Callable
from urllib.parse import parse_qsl, urlsplit

from .events import CapturedRedirect, InvalidRedirect, RedirectOutcome

logger = logging.getLogger(__name__)

# Upper bound for the request line plus headers
MAX_HEAD_SIZE = 16 * 1024

# Characters of the request line kept in InvalidRedirect.raw_request_snippet
SNIPPET_LENGTH = 200


class RequestError(Exception):
    """A connection did not carry a valid redirect request."""

    def __init__(self, reason: str, snippet: str = ""):
        self.reason = reason
        self.snippet = snippet
        super().__init__(reason)


def _snippet(data: bytes) -> str:
    """First line of the request, decoded leniently for diagnostics."""
    first_line = data.split(b"\n", 1)[0].rstrip(b"\r")
    return first_line.decode("utf-8", errors="replace")[:SNIPPET_LENGTH]


def parse_query(query: str) -> dict[str, str]:
    """Decode a query string into a flat mapping.

    Repeated keys keep their first value. Blank values are kept so that
    "?code=" still reports the key.

    Raises:
        RequestError: If the query is empty or does not decode as UTF-8
    """
    try:
        pairs = parse_qsl(query, keep_blank_values=True, errors="strict")
    except (UnicodeDecodeError, ValueError) as e:
        raise RequestError(f"Query string could not be decoded: {e}") from e

    params: dict[str, str] = {}
    for key, value in pairs:
        params.setdefault(key, value)

    if not params:
        raise RequestError("Query string contains no parameters")
    return params


def _parse_head(data: bytes) -> tuple[str, dict[str, str]]:
    """Validate a request head and return (raw_url, query_parameters)."""
    snippet = _snippet(data)
    if not data.strip():
        raise RequestError("Empty request", snippet)

    first_line = data.split(b"\n", 1)[0].rstrip(b"\r")
    try:
        request_line = first_line.decode("utf-8")
    except UnicodeDecodeError:
        raise RequestError("Request line is not valid UTF-8", snippet) from None

    # e.g. "GET /callback?code=xxx HTTP/1.1"
    parts = request_line.split(" ")
    if len(parts) != 3 or not all(parts) or not parts[2].startswith("HTTP/"):
        raise RequestError(f"Malformed request line: {request_line[:SNIPPET_LENGTH]!r}", snippet)

    method, target, _version = parts
    if method != "GET":
        raise RequestError(f"Unsupported method: {method}", snippet)

    split = urlsplit(target)
    if not split.query:
        raise RequestError("Request has no query string", snippet)

    try:
        params = parse_query(split.query)
    except RequestError as e:
        e.snippet = snippet
        raise

    # Absolute-form targets are reduced to origin-form
    path = split.path or "/"
    return f"{path}?{split.query}", params


def parse_request_head(port: int, data: bytes, host: str = "127.0.0.1") -> RedirectOutcome:
    """Turn a raw request head into exactly one outcome.

    Args:
        port: Port of the session that accepted the connection
        data: Bytes of the request line and headers
        host: Host the session is bound to

    Returns:
        CapturedRedirect for a GET with a usable query, InvalidRedirect otherwise
    """
    try:
        raw_url, params = _parse_head(data)
    except RequestError as e:
        return InvalidRedirect(port=port, reason=e.reason, raw_request_snippet=e.snippet)
    return CapturedRedirect(port=port, raw_url=raw_url, query_parameters=params, host=host)


async def _read_head(
    reader: asyncio.StreamReader,
    on_start: Callable[[], None] | None = None,
) -> bytes:
    """Read the request line and headers up to the blank line.

    on_start is called once the first byte of the request has arrived.
    """
    first = await reader.read(1)
    if not first:
        raise RequestError("Connection closed before a request was received")
    if on_start is not None:
        on_start()

    head = bytearray()
    pending = first
    while True:
        if pending.endswith(b"\n"):
            line = pending
        else:
            line = pending + await reader.readline()
        pending = b""
        if not line:
            if not head:
                raise RequestError("Connection closed before a request was received")
            raise RequestError("Request truncated before end of headers", _snippet(bytes(head)))
        if not line.endswith(b"\n"):
            raise RequestError("Request truncated before end of headers", _snippet(bytes(head + line)))

        head += line
        if len(head) > MAX_HEAD_SIZE:
            raise RequestError("Request headers too large", _snippet(bytes(head)))
        if line in (b"\r\n", b"\n"):
            return bytes(head)


async def read_request(
    reader: asyncio.StreamReader,
    port: int,
    host: str = "127.0.0.1",
    timeout: float | None = None,
    on_start: Callable[[], None] | None = None,
) -> RedirectOutcome:
    """Read one request off a connection and classify it.

    Every I/O failure is converted to an InvalidRedirect, so the caller
    always gets exactly one outcome. Only cancellation propagates.

    on_start fires when the first request byte arrives, which lets callers
    tell connections that carry a request from ones that were merely opened
    (browser preconnects).
    """
    try:
        async with asyncio.timeout(timeout):
            head = await _read_head(reader, on_start)
    except RequestError as e:
        return InvalidRedirect(port=port, reason=e.reason, raw_request_snippet=e.snippet)
    except TimeoutError:
        return InvalidRedirect(port=port, reason=f"Timed out after {timeout} seconds waiting for request")
    except ValueError:
        # StreamReader.readline raises ValueError when a line exceeds its buffer limit
        return InvalidRedirect(port=port, reason="Request line too long")
    except (ConnectionError, OSError) as e:
        logger.debug(f"Read failed on port {port}: {e}")
        return InvalidRedirect(port=port, reason=f"Connection error while reading request: {e}")

    return parse_request_head(port, head, host)
