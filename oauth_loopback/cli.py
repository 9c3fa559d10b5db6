"""CLI entry point for oauth-loopback."""

from __future__ import annotations

import asyncio
import json
import logging
import webbrowser
from pathlib import Path
from typing import Any

import click

from . import __version__
from .config import ServerConfig, load_server_config
from .errors import BindError, ConfigError
from .events import CapturedRedirect, Event, EventEmitter, LISTENER_ERROR, REDIRECT_CAPTURED, REDIRECT_INVALID
from .output import OutputHandler
from .ports import DEFAULT_HOST, is_port_available
from .registry import SessionRegistry

# Logger for CLI
logger = logging.getLogger("oauth_loopback")


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, env_path: str | None, verbose: bool) -> None:
    """oauth-loopback - Capture OAuth redirects on a local HTTP listener."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    # Configure logging based on verbosity
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


async def run_listener(
    config: ServerConfig,
    output: OutputHandler,
    once: bool = False,
    open_url: str | None = None,
) -> int:
    """Run one redirect listener until interrupted (or the first capture with once).

    Returns:
        The port the listener was bound to
    """
    done = asyncio.Event()

    def show(event: Event) -> None:
        output.event(event)
        if once and isinstance(event, CapturedRedirect):
            done.set()

    def listener_failed(event: Event) -> None:
        output.event(event)
        done.set()

    async with EventEmitter() as emitter, SessionRegistry(emitter) as registry:
        subscriptions = [
            emitter.subscribe(REDIRECT_CAPTURED, show),
            emitter.subscribe(REDIRECT_INVALID, show),
            emitter.subscribe(LISTENER_ERROR, listener_failed),
        ]

        port = await registry.start(config)
        session = registry.get(port)
        redirect_uri = session.redirect_uri if session else f"http://{config.host}:{port}"
        output.success(
            {"port": port, "redirect_uri": redirect_uri},
            human_message=f"OAuth redirect server listening on {redirect_uri}",
        )

        if open_url:
            target = open_url.replace("{redirect_uri}", redirect_uri).replace("{port}", str(port))
            logger.debug(f"Opening browser at {target}")
            webbrowser.open(target)

        # Leaving the block cancels the session, then flushes pending events
        await done.wait()

    for unsubscribe in subscriptions:
        unsubscribe()
    return port


@main.command()
@click.option("--port", "-p", "ports", type=click.IntRange(1, 65535), multiple=True, help="Candidate port, tried in order (repeatable)")
@click.option("--host", default=None, help=f"Interface to bind (default {DEFAULT_HOST})")
@click.option("--response-file", type=click.Path(exists=True, dir_okay=False), help="HTML file sent to the browser")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None, help="Per-connection read/write timeout in seconds")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="JSON config file")
@click.option("--once", is_flag=True, help="Stop after the first captured redirect")
@click.option("--open", "open_url", default=None, help="URL to open in the browser; {redirect_uri} and {port} are substituted")
@click.pass_context
def listen(
    ctx: click.Context,
    ports: tuple[int, ...],
    host: str | None,
    response_file: str | None,
    timeout: float | None,
    config_path: str | None,
    once: bool,
    open_url: str | None,
) -> None:
    """Start a redirect listener and print every redirect it receives."""
    output: OutputHandler = ctx.obj["output"]

    overrides: dict[str, Any] = {
        "ports": list(ports) or None,
        "host": host,
        "timeout": timeout,
    }
    if response_file:
        overrides["response"] = Path(response_file).read_text(encoding="utf-8")

    try:
        config = load_server_config(
            Path(config_path) if config_path else None,
            ctx.obj["env_path"],
            overrides,
        )
    except (ConfigError, OSError) as e:
        output.error(e, error_type="ConfigError", help_text="Check the listener configuration.")
        return
    except json.JSONDecodeError as e:
        output.error(
            e,
            error_type="ConfigParseError",
            help_text="The config file contains invalid JSON. Check for syntax errors.",
        )
        return

    try:
        asyncio.run(run_listener(config, output, once=once, open_url=open_url))
    except BindError as e:
        if e.ports:
            help_text = "Free one of these ports, or pass different --port values."
        else:
            help_text = "The OS could not provide a free port."
        output.error(e, error_type="BindError", help_text=help_text)
    except KeyboardInterrupt:
        logger.debug("Interrupted, listener stopped")


@main.command("check-port")
@click.argument("ports", type=click.IntRange(1, 65535), nargs=-1, required=True)
@click.option("--host", default=DEFAULT_HOST, help="Interface to check")
@click.pass_context
def check_port(ctx: click.Context, ports: tuple[int, ...], host: str) -> None:
    """Report which candidate ports are free, in the order listen would try them."""
    output: OutputHandler = ctx.obj["output"]

    selected: int | None = None
    rows: list[list[str]] = []
    for port in ports:
        free = is_port_available(port, host)
        if free and selected is None:
            selected = port
        status = "free" if free else "in use"
        rows.append([str(port), status, "yes" if port == selected else ""])

    output.table(["PORT", "STATUS", "SELECTED"], rows)
    if selected is None:
        output.error(BindError(ports), help_text="None of the candidate ports can be bound right now.")


if __name__ == "__main__":
    main()
