"""Human-readable and JSON output for the command line."""

import json
import sys
from typing import Any

import click

from .events import CapturedRedirect, Event, InvalidRedirect


def format_json(data: Any) -> str:
    """Wrap a successful result in the standard JSON envelope."""
    return json.dumps({"success": True, "data": data}, indent=2, default=str)


def format_event_json(event: Event) -> str:
    """One event per line, so the stream can be consumed incrementally."""
    return json.dumps(event.to_dict(), default=str, separators=(",", ":"))


def format_error_json(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> str:
    """Format an error as JSON, including the offending ports when known."""
    details: dict[str, Any] = {
        "type": error_type or type(error).__name__,
        "message": str(error),
        "help": help_text or "",
    }
    ports = getattr(error, "ports", None)
    if ports is not None:
        details["ports"] = list(ports)
    port = getattr(error, "port", None)
    if port is not None:
        details["port"] = port
    return json.dumps({"success": False, "error": details}, indent=2)


def describe_event(event: Event) -> str:
    """Single-line human description of an event."""
    if isinstance(event, CapturedRedirect):
        return f"[{event.port}] Received OAuth URL: {event.url}"
    if isinstance(event, InvalidRedirect):
        return f"[{event.port}] Received invalid OAuth URL: {event.reason}"
    return f"[{event.port}] Listener failed: {event.error}"


def _align(cells: list[str], widths: list[int]) -> str:
    """Join cells into one line padded to the column widths."""
    return "  ".join(cell.ljust(width) for cell, width in zip(cells, widths)).rstrip()


class OutputHandler:
    """Handles output formatting based on mode (JSON or human)."""

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
        """Output success response."""
        if self.json_mode:
            click.echo(format_json(data))
        elif human_message:
            click.echo(human_message)
        else:
            click.echo(json.dumps(data, indent=2, default=str))

    def event(self, event: Event) -> None:
        """Output one streamed event."""
        if self.json_mode:
            click.echo(format_event_json(event))
            return
        color = {"redirect-captured": "green", "redirect-invalid": "yellow"}.get(event.kind, "red")
        click.secho(describe_event(event), fg=color)

    def error(
        self,
        error: Exception,
        error_type: str | None = None,
        help_text: str | None = None,
    ) -> None:
        """Output error response and exit with status 1."""
        if self.json_mode:
            click.echo(format_error_json(error, error_type, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)

    def table(self, headers: list[str], rows: list[list[str]]) -> None:
        """Output rows under column headers.

        Human mode left-aligns each column to its widest cell and underlines
        the headers per column. JSON mode outputs a list of objects keyed by
        header.
        """
        if self.json_mode:
            click.echo(format_json([dict(zip(headers, row)) for row in rows]))
            return

        cells = [[str(c) for c in row] for row in rows]
        widths = [max(len(c) for c in column) for column in zip(headers, *cells)]

        click.secho(_align(headers, widths), bold=True)
        click.echo(_align(["-" * w for w in widths], widths))
        for row in cells:
            click.echo(_align(row, widths))
