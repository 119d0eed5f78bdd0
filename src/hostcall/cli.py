"""Command line entry points for hostcall."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import click

from hostcall import __version__
from hostcall.caller import Caller
from hostcall.config import HostcallConfig
from hostcall.discovery import find_open_socket
from hostcall.dispatcher import Dispatcher
from hostcall.errors import DiscoveryError, RemoteError
from hostcall.logs import setup_logging


def _parse_args_json(raw: str | None) -> Any:
    if raw is None:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"not valid JSON: {exc}", param_hint="ARGS_JSON") from exc


async def _ping(args: Any) -> str:
    return "pong"


async def _echo(args: Any) -> Any:
    return args


DEMO_HANDLERS = {"ping": _ping, "echo": _echo}


async def _wait_for_shutdown() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    await stop.wait()


async def _serve(name: str, config: HostcallConfig, tick: float | None) -> None:
    dispatcher = Dispatcher(DEMO_HANDLERS, config=config)
    handle = await dispatcher.start(name)
    click.secho(f"Serving channel {name}", fg="green", bold=True)
    click.echo(f"  Transport: {handle.transport_type}")
    click.echo(f"  Address:   {handle.address}")
    if handle.port is not None:
        click.echo(f"  Port:      {handle.port}")

    async def _ticker(interval: float) -> None:
        count = 0
        while True:
            await asyncio.sleep(interval)
            count += 1
            dispatcher.broadcast("tick", {"t": count})

    ticker = asyncio.create_task(_ticker(tick)) if tick else None
    try:
        await _wait_for_shutdown()
    finally:
        if ticker is not None:
            ticker.cancel()
        await dispatcher.stop()


async def _call(name: str, method: str, args: Any, config: HostcallConfig, timeout: float) -> Any:
    caller = Caller(config=config)
    try:
        await asyncio.wait_for(caller.connect(name), timeout=timeout)
        return await asyncio.wait_for(caller.call(method, args), timeout=timeout)
    finally:
        await caller.close()


async def _listen(name: str, event: str, count: int | None, config: HostcallConfig) -> None:
    caller = Caller(config=config)
    done = asyncio.Event()
    seen = 0

    def _print(args: Any) -> None:
        nonlocal seen
        click.echo(json.dumps(args))
        seen += 1
        if count is not None and seen >= count:
            done.set()

    caller.on(event, _print)
    await caller.connect(name)
    try:
        if count is None:
            await _wait_for_shutdown()
        else:
            await done.wait()
    finally:
        await caller.close()


@click.group()
@click.version_option(__version__, prog_name="hostcall")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to config.toml (default: user config dir).",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: Path | None) -> None:
    """Promise-style calls and push notifications over local sockets."""
    setup_logging(logging.DEBUG if verbose else logging.WARNING)
    ctx.obj = HostcallConfig.load(config_path)


@cli.command()
@click.argument("channel")
@click.option("--tick", type=float, default=None, help="Broadcast a 'tick' push every N seconds.")
@click.pass_obj
def serve(config: HostcallConfig, channel: str, tick: float | None) -> None:
    """Serve demo handlers (ping, echo) on CHANNEL until interrupted."""
    try:
        asyncio.run(_serve(channel, config, tick))
    except OSError as exc:
        click.secho(f"Could not bind channel {channel}: {exc}", fg="red", err=True)
        sys.exit(1)


@cli.command()
@click.argument("channel")
@click.argument("method")
@click.argument("args_json", required=False)
@click.option("--timeout", type=float, default=10.0, show_default=True)
@click.pass_obj
def call(
    config: HostcallConfig,
    channel: str,
    method: str,
    args_json: str | None,
    timeout: float,
) -> None:
    """Call METHOD on the dispatcher serving CHANNEL and print the result."""
    args = _parse_args_json(args_json)
    try:
        result = asyncio.run(_call(channel, method, args, config, timeout))
    except RemoteError as exc:
        click.secho(f"Remote error: {exc.message}", fg="red", err=True)
        sys.exit(1)
    except (OSError, TimeoutError) as exc:
        click.secho(f"Could not reach channel {channel}: {exc}", fg="red", err=True)
        sys.exit(2)
    click.echo(json.dumps(result))


@cli.command()
@click.argument("channel")
@click.argument("event")
@click.option("--count", type=int, default=None, help="Exit after N pushes.")
@click.pass_obj
def listen(config: HostcallConfig, channel: str, event: str, count: int | None) -> None:
    """Print every EVENT push received from CHANNEL."""
    try:
        asyncio.run(_listen(channel, event, count, config))
    except OSError as exc:
        click.secho(f"Could not reach channel {channel}: {exc}", fg="red", err=True)
        sys.exit(2)


@cli.command("find-socket")
@click.argument("namespace")
@click.option("--limit", type=int, default=None, help="Give up after N probes.")
@click.pass_obj
def find_socket(config: HostcallConfig, namespace: str, limit: int | None) -> None:
    """Print the first unused channel name in NAMESPACE."""
    try:
        name = asyncio.run(find_open_socket(namespace, config=config.channel, limit=limit))
    except DiscoveryError as exc:
        click.secho(str(exc), fg="yellow", err=True)
        sys.exit(1)
    click.echo(name)


__all__ = ["cli"]
