"""HTML response written back to the browser after a redirect."""

import asyncio
import logging
from http import HTTPStatus

logger = logging.getLogger(__name__)

# Shown when the host application did not configure its own page
DEFAULT_RESPONSE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>Authorization Complete</title>
    <style>
        body {
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            display: flex;
            justify-content: center;
            align-items: center;
            height: 100vh;
            margin: 0;
            background: #f4f5f7;
        }
        .card {
            background: white;
            padding: 40px 60px;
            border-radius: 16px;
            text-align: center;
            box-shadow: 0 10px 40px rgba(0,0,0,0.1);
        }
        h1 { color: #1a1a1a; margin: 0 0 8px 0; font-size: 24px; }
        p { color: #666; margin: 0; }
    </style>
</head>
<body>
    <div class="card">
        <h1>Authorization Complete</h1>
        <p>You can close this window and return to the application.</p>
    </div>
</body>
</html>"""


def resolve_body(response: str | None) -> str:
    """Return the configured page, or the default one when none was given."""
    return DEFAULT_RESPONSE if response is None else response


def build_html_response(body: str) -> bytes:
    """Build a complete 200 response for the given HTML body.

    The status never depends on whether the redirect was captured, so the
    browser learns nothing about the outcome.
    """
    encoded = body.encode("utf-8")
    status = HTTPStatus.OK
    headers = (
        f"HTTP/1.1 {status.value} {status.phrase}\r\n"
        f"Content-Type: text/html; charset=utf-8\r\n"
        f"Content-Length: {len(encoded)}\r\n"
        f"Connection: close\r\n"
        f"\r\n"
    )
    return headers.encode("ascii") + encoded


async def write_html_response(
    writer: asyncio.StreamWriter,
    body: str,
    timeout: float | None = None,
) -> bool:
    """Send the HTML response on one connection.

    Failures stay confined to this connection: they are logged and reported
    through the return value instead of raised.

    Returns:
        True if the whole response was handed to the transport
    """
    try:
        writer.write(build_html_response(body))
        async with asyncio.timeout(timeout):
            await writer.drain()
    except TimeoutError:
        logger.warning(f"Timed out after {timeout} seconds writing redirect response")
        return False
    except (ConnectionError, OSError) as e:
        logger.warning(f"Error writing redirect response: {e}")
        return False
    return True
