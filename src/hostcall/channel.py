"""Named duplex event channels over a stream transport.

A channel carries newline-delimited JSON frames ``{"type": event, "data": payload}``.
Both ends expose the same small event contract: handlers are registered with
``on(event, callback)`` for ``connect``, ``disconnect``, ``error`` and
``message``, and frames are sent with ``emit``.  Callbacks run on the event
loop, one frame at a time, in arrival order.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any, Literal, TypeAlias
from uuid import uuid4

from hostcall.config import ChannelConfig
from hostcall.errors import ChannelError
from hostcall.transports import transport_for_preference

if TYPE_CHECKING:
    from collections.abc import Callable

    from hostcall.transports import ServerHandle, Transport

logger = logging.getLogger(__name__)

ChannelEvent: TypeAlias = Literal["connect", "disconnect", "error", "message"]

_EVENTS = frozenset({"connect", "disconnect", "error", "message"})


def encode_frame(event: str, payload: Any = None) -> bytes:
    """Frame one event as a JSON line."""
    return (json.dumps({"type": event, "data": payload}, separators=(",", ":")) + "\n").encode(
        "utf-8"
    )


def decode_frame(raw: bytes) -> tuple[str, Any] | None:
    """Decode one JSON line into ``(event, payload)``, or ``None`` if malformed."""
    try:
        frame = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
        return None
    return frame["type"], frame.get("data")


def _make_transport(config: ChannelConfig) -> Transport:
    return transport_for_preference(
        config.transport,
        config.runtime_dir,
        limit=config.max_line_bytes + 1,
    )


class _EventSource:
    """Minimal ordered event fan-out shared by both channel ends."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable[..., Any]]] = {}

    def on(self, event: ChannelEvent, callback: Callable[..., Any]) -> None:
        """Register *callback* for *event*."""
        if event not in _EVENTS:
            msg = f"Unknown channel event: {event}"
            raise ValueError(msg)
        self._handlers.setdefault(event, []).append(callback)

    def _fire(self, event: str, *args: Any) -> None:
        for callback in list(self._handlers.get(event, ())):
            try:
                callback(*args)
            except Exception:
                logger.exception("Unhandled error in %s callback", event)


class ChannelConnection:
    """One accepted client connection on a ``ChannelServer``."""

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self.id = uuid4().hex[:12]
        self._writer = writer
        self.peer = writer.get_extra_info("peername", "unknown")

    @property
    def is_closing(self) -> bool:
        return self._writer.is_closing()

    def emit(self, event: str, payload: Any = None) -> bool:
        """Queue a frame for this connection; ``False`` when it is already closing."""
        if self._writer.is_closing():
            return False
        self._writer.write(encode_frame(event, payload))
        return True

    def close(self) -> None:
        self._writer.close()

    def __repr__(self) -> str:
        return f"ChannelConnection(id={self.id!r})"


class ChannelServer(_EventSource):
    """Bound end of a channel accepting any number of client connections.

    Events: ``connect(connection)``, ``disconnect(connection)`` and
    ``message(payload, connection)``.
    """

    def __init__(
        self,
        name: str,
        *,
        transport: Transport | None = None,
        config: ChannelConfig | None = None,
    ) -> None:
        super().__init__()
        self.name = name
        self._config = config or ChannelConfig()
        self._transport = transport or _make_transport(self._config)
        self._handle: ServerHandle | None = None
        self._connections: set[ChannelConnection] = set()

    @property
    def handle(self) -> ServerHandle | None:
        """The server handle, available after ``start()``."""
        return self._handle

    @property
    def is_running(self) -> bool:
        return self._handle is not None

    @property
    def connections(self) -> frozenset[ChannelConnection]:
        return frozenset(self._connections)

    async def start(self) -> ServerHandle:
        """Bind the channel and begin accepting connections."""
        if self._handle is not None:
            msg = f"Channel '{self.name}' is already bound"
            raise RuntimeError(msg)
        self._handle = await self._transport.start_server(self.name, self._client_connected)
        return self._handle

    async def stop(self) -> None:
        """Close every connection and unbind the channel."""
        if self._handle is None:
            return
        for connection in list(self._connections):
            connection.close()
        if self._handle.close is not None:
            await self._handle.close()
        self._handle = None

    def emit(self, connection: ChannelConnection, event: str, payload: Any = None) -> bool:
        """Send a frame to a single connection."""
        if connection not in self._connections:
            return False
        return connection.emit(event, payload)

    def broadcast(self, event: str, payload: Any = None) -> int:
        """Send a frame to every open connection; returns how many were reached."""
        return sum(1 for connection in list(self._connections) if connection.emit(event, payload))

    async def _client_connected(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a single client connection (one or more JSON-line frames)."""
        connection = ChannelConnection(writer)
        self._connections.add(connection)
        logger.debug("Client connected to %s: %s", self.name, connection.peer)
        self._fire("connect", connection)
        try:
            while True:
                try:
                    raw = await reader.readline()
                except ValueError:
                    logger.warning("Oversized frame from %s on %s", connection.peer, self.name)
                    break
                if not raw:
                    break  # Client disconnected

                decoded = decode_frame(raw)
                if decoded is None:
                    logger.warning("Dropping malformed frame on %s", self.name)
                    continue
                event, payload = decoded
                if event == "message":
                    self._fire("message", payload, connection)
                else:
                    logger.debug("Ignoring '%s' frame on %s", event, self.name)
        except (ConnectionError, OSError):
            logger.debug("Client connection lost on %s: %s", self.name, connection.peer)
        finally:
            self._connections.discard(connection)
            self._fire("disconnect", connection)
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass


class ChannelClient(_EventSource):
    """Connecting end of a channel.

    Events: ``connect()``, ``disconnect()``, ``error(exc)`` and
    ``message(payload)``.  Failed attempts and dropped connections are retried
    every ``retry_interval`` seconds until ``max_retries`` consecutive attempts
    have failed or ``disconnect()`` is called.
    """

    def __init__(
        self,
        name: str,
        *,
        transport: Transport | None = None,
        config: ChannelConfig | None = None,
    ) -> None:
        super().__init__()
        self.name = name
        self._config = config or ChannelConfig()
        self._transport = transport or _make_transport(self._config)
        self._writer: asyncio.StreamWriter | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    def start(self) -> None:
        """Start connecting in the background; requires a running event loop."""
        if self._task is not None:
            msg = f"Channel client for '{self.name}' already started"
            raise RuntimeError(msg)
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"hostcall-channel-{self.name}"
        )

    def emit(self, event: str, payload: Any = None) -> None:
        """Queue a frame on the live connection."""
        if self._writer is None or self._writer.is_closing():
            msg = f"Channel '{self.name}' is not connected"
            raise ChannelError(msg)
        self._writer.write(encode_frame(event, payload))

    def disconnect(self) -> None:
        """Stop retrying and close the connection."""
        self._stopped = True
        if self._writer is not None:
            self._writer.close()
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def wait_closed(self) -> None:
        """Wait for the background connection task to finish."""
        if self._task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await self._task

    async def _run(self) -> None:
        failures = 0
        while not self._stopped:
            try:
                reader, writer = await asyncio.wait_for(
                    self._transport.connect(self.name),
                    timeout=self._config.connect_timeout,
                )
            except (OSError, TimeoutError) as exc:
                logger.debug("Connecting to %s failed: %s", self.name, exc)
                self._fire("error", exc)
                failures += 1
                if self._stopped or failures > self._config.max_retries:
                    break
                await asyncio.sleep(self._config.retry_interval)
                continue

            failures = 0
            self._writer = writer
            try:
                self._fire("connect")
                if not self._stopped:
                    await self._read_frames(reader)
            finally:
                self._writer = None
                with contextlib.suppress(ConnectionError, OSError):
                    writer.close()
                self._fire("disconnect")

            if not self._stopped and self._config.max_retries > 0:
                await asyncio.sleep(self._config.retry_interval)
            elif not self._stopped:
                break

    async def _read_frames(self, reader: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await reader.readline()
            except ValueError:
                logger.warning("Oversized frame on %s; dropping connection", self.name)
                return
            except (ConnectionError, OSError):
                return
            if not raw:
                return
            decoded = decode_frame(raw)
            if decoded is None:
                logger.warning("Dropping malformed frame on %s", self.name)
                continue
            event, payload = decoded
            if event == "message":
                self._fire("message", payload)
            else:
                logger.debug("Ignoring '%s' frame on %s", event, self.name)


__all__ = [
    "ChannelClient",
    "ChannelConnection",
    "ChannelEvent",
    "ChannelServer",
    "decode_frame",
    "encode_frame",
]
