"""Stream transports that carry hostcall channels.

Provides Unix socket transport on POSIX and TCP loopback fallback on Windows.
``DefaultTransport`` is automatically set to the best choice for the current platform.
Both resolve a channel *name* to an address inside the runtime directory.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import platform
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeAlias

from hostcall.errors import ChannelError
from hostcall.limits import STREAM_LIMIT_BYTES
from hostcall.paths import ensure_runtime_dir, get_port_path, get_socket_path

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine
    from pathlib import Path
    from typing import Any

    ClientHandler = Callable[
        [asyncio.StreamReader, asyncio.StreamWriter],
        Coroutine[Any, Any, None],
    ]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServerHandle:
    """Handle returned after binding a channel.

    Attributes:
        transport_type: Identifier string (``socket`` or ``tcp``).
        address: The connection address (file path or hostname).
        port: TCP port when applicable; ``None`` for socket transport.
        close: Async callable to shut down the server gracefully.
    """

    transport_type: str
    address: str
    port: int | None = None
    close: Callable[[], Coroutine[Any, Any, None]] | None = None


class UnixSocketTransport:
    """Channel transport over Unix domain sockets.

    Only available on macOS and Linux.  On Windows this class raises
    ``NotImplementedError`` at construction time.
    """

    transport_type = "socket"

    def __init__(self, runtime_dir: Path | None = None, *, limit: int = STREAM_LIMIT_BYTES) -> None:
        if platform.system() == "Windows":
            msg = "Unix sockets are not supported on Windows"
            raise NotImplementedError(msg)
        self._runtime_dir = runtime_dir
        self._limit = limit

    def address_for(self, channel: str) -> str:
        """Return the socket path backing *channel*."""
        return str(get_socket_path(channel, self._runtime_dir))

    async def start_server(self, channel: str, handler: ClientHandler) -> ServerHandle:
        """Bind a Unix socket server for *channel*.

        Any existing socket file with this name is removed before binding.
        """
        path = self.address_for(channel)
        ensure_runtime_dir(self._runtime_dir)
        with contextlib.suppress(FileNotFoundError):
            os.unlink(path)

        server = await asyncio.start_unix_server(handler, path=path, limit=self._limit)
        os.chmod(path, 0o600)
        logger.info("Unix socket channel %s listening on %s", channel, path)

        async def _close() -> None:
            server.close()
            await server.wait_closed()
            with contextlib.suppress(FileNotFoundError):
                os.unlink(path)
            logger.info("Unix socket channel %s stopped", channel)

        return ServerHandle(transport_type=self.transport_type, address=path, close=_close)

    async def connect(self, channel: str) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open a connection to the socket bound for *channel*."""
        path = self.address_for(channel)
        reader, writer = await asyncio.open_unix_connection(path, limit=self._limit)
        logger.debug("Connected to Unix socket at %s", path)
        return reader, writer


_LOCALHOST = "127.0.0.1"


class TCPLoopbackTransport:
    """Channel transport over a TCP socket bound to localhost.

    Used as a cross-platform fallback when Unix sockets are unavailable.
    The OS picks a free port and the server publishes it in a port file
    named after the channel so clients can find it.
    """

    transport_type = "tcp"

    def __init__(
        self,
        runtime_dir: Path | None = None,
        *,
        host: str | None = None,
        limit: int = STREAM_LIMIT_BYTES,
    ) -> None:
        self._runtime_dir = runtime_dir
        self._host = host or _LOCALHOST
        self._limit = limit

    def address_for(self, channel: str) -> str:
        """Return the port file path backing *channel*."""
        return str(get_port_path(channel, self._runtime_dir))

    def _read_port(self, channel: str) -> int:
        port_path = get_port_path(channel, self._runtime_dir)
        try:
            raw = port_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            raise ConnectionRefusedError(f"No TCP channel named '{channel}'") from None
        try:
            return int(raw)
        except ValueError:
            msg = f"Malformed port file at {port_path}"
            raise ChannelError(msg) from None

    async def start_server(self, channel: str, handler: ClientHandler) -> ServerHandle:
        """Bind a TCP server on localhost with a random port for *channel*."""
        server = await asyncio.start_server(handler, host=self._host, port=0, limit=self._limit)

        addrs = server.sockets[0].getsockname() if server.sockets else (self._host, 0)
        bound_port: int = addrs[1]

        port_path = get_port_path(channel, ensure_runtime_dir(self._runtime_dir))
        tmp_path = port_path.with_name(f".{port_path.name}.tmp")
        tmp_path.write_text(str(bound_port), encoding="utf-8")
        tmp_path.replace(port_path)

        logger.info("TCP channel %s listening on %s:%d", channel, self._host, bound_port)

        async def _close() -> None:
            server.close()
            await server.wait_closed()
            port_path.unlink(missing_ok=True)
            logger.info("TCP channel %s stopped", channel)

        return ServerHandle(
            transport_type=self.transport_type,
            address=self._host,
            port=bound_port,
            close=_close,
        )

    async def connect(self, channel: str) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open a TCP connection to the port published for *channel*."""
        port = self._read_port(channel)
        reader, writer = await asyncio.open_connection(self._host, port, limit=self._limit)
        logger.debug("Connected to TCP channel at %s:%d", self._host, port)
        return reader, writer


Transport: TypeAlias = UnixSocketTransport | TCPLoopbackTransport

if sys.platform == "win32":
    DefaultTransport = TCPLoopbackTransport
else:
    DefaultTransport = UnixSocketTransport

_TRANSPORT_MAP: dict[str, type[TCPLoopbackTransport] | type[UnixSocketTransport]] = {
    "tcp": TCPLoopbackTransport,
    "socket": UnixSocketTransport,
}


def transport_for_preference(
    preference: str,
    runtime_dir: Path | None = None,
    *,
    limit: int = STREAM_LIMIT_BYTES,
) -> Transport:
    """Instantiate a transport from a preference string (``auto`` picks the default)."""
    cls = _TRANSPORT_MAP.get(preference, DefaultTransport)
    return cls(runtime_dir, limit=limit)


__all__ = [
    "DefaultTransport",
    "ServerHandle",
    "TCPLoopbackTransport",
    "Transport",
    "UnixSocketTransport",
    "transport_for_preference",
]
