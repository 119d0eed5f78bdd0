"""Server role: route correlated requests to named async handlers."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import weakref
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, TypeAlias

from pydantic_core import PydanticSerializationError

from hostcall.channel import ChannelServer
from hostcall.config import HostcallConfig
from hostcall.envelopes import ErrorReply, Push, Reply, encode

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from hostcall.channel import ChannelConnection
    from hostcall.transports import ServerHandle

Handler: TypeAlias = "Callable[[Any], Awaitable[Any]]"
ServerFactory: TypeAlias = "Callable[[str], ChannelServer]"

logger = logging.getLogger(__name__)

# Running dispatchers in this process, for ``broadcast``.
_running: weakref.WeakSet[Dispatcher] = weakref.WeakSet()


class Dispatcher:
    """Bind a channel and answer requests with registered handlers.

    Handlers take the request ``args`` and must return an awaitable::

        async def add(args):
            return args["a"] + args["b"]

        dispatcher = Dispatcher({"add": add})
        await dispatcher.start("app1")

    Handler failures become error replies carrying the message text only.
    A request for a name with no handler is answered with a ``None`` result,
    not an error.
    """

    def __init__(
        self,
        handlers: Mapping[str, Handler],
        *,
        config: HostcallConfig | None = None,
        server_factory: ServerFactory | None = None,
    ) -> None:
        self._handlers: Mapping[str, Handler] = MappingProxyType(dict(handlers))
        self._config = config or HostcallConfig()
        self._server_factory = server_factory or self._default_server
        self._server: ChannelServer | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def handlers(self) -> Mapping[str, Handler]:
        """Read-only view of the handler table."""
        return self._handlers

    @property
    def name(self) -> str | None:
        return self._server.name if self._server is not None else None

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def connection_count(self) -> int:
        return len(self._server.connections) if self._server is not None else 0

    def _default_server(self, name: str) -> ChannelServer:
        return ChannelServer(name, config=self._config.channel)

    async def start(self, name: str) -> ServerHandle:
        """Bind channel *name*; returns once it accepts connections.

        Raises:
            RuntimeError: If this dispatcher is already running.
            OSError: If the channel cannot be bound.
        """
        if self._server is not None:
            msg = f"Dispatcher is already bound to '{self._server.name}'"
            raise RuntimeError(msg)

        server = self._server_factory(name)
        server.on("message", self._handle_message)
        handle = await server.start()
        self._server = server
        _running.add(self)
        logger.info(
            "Dispatcher started: channel=%s transport=%s handlers=%d",
            name,
            handle.transport_type,
            len(self._handlers),
        )
        return handle

    async def stop(self) -> None:
        """Cancel in-flight handlers and unbind the channel."""
        server, self._server = self._server, None
        _running.discard(self)
        if server is None:
            return
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await server.stop()
        logger.info("Dispatcher stopped: channel=%s", server.name)

    def broadcast(self, name: str, args: Any = None) -> int:
        """Push *name* to every connected caller; returns how many were reached."""
        if self._server is None:
            logger.debug("Dropping push '%s': dispatcher not running", name)
            return 0
        return self._server.broadcast("message", encode(Push(name=name, args=args)))

    def _handle_message(self, payload: Any, connection: ChannelConnection) -> None:
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Dropping undecodable request from %s: %.200r", connection, payload)
            return
        if not isinstance(data, dict):
            logger.warning("Dropping non-object request from %s: %.200r", connection, payload)
            return

        call_id = data.get("id")
        if not isinstance(call_id, str):
            # No id means no addressable sender.
            logger.debug("Dropping request without id from %s", connection)
            return

        name = data.get("name")
        args = data.get("args", {})
        if not isinstance(name, str):
            self._log_failure(name, args, "request has no method name")
            self._reply(
                connection, ErrorReply(id=call_id, result="Request is missing a method name")
            )
            return

        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("Unknown method: %s", name)
            self._reply(connection, Reply(id=call_id, result=None))
            return

        task = asyncio.get_running_loop().create_task(
            self._invoke(handler, call_id, name, args, connection),
            name=f"hostcall-handler-{name}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _invoke(
        self,
        handler: Handler,
        call_id: str,
        name: str,
        args: Any,
        connection: ChannelConnection,
    ) -> None:
        try:
            pending = handler(args)
            if not inspect.isawaitable(pending):
                msg = f"Handler '{name}' did not return an awaitable (got {type(pending).__name__})"
                raise TypeError(msg)
            result = await pending
        except Exception as exc:
            self._log_failure(name, args, exc)
            self._reply(connection, ErrorReply(id=call_id, result=str(exc)))
            return

        try:
            reply = Reply(id=call_id, result=result)
            message = encode(reply)
        except PydanticSerializationError as exc:
            self._log_failure(name, args, exc)
            self._reply(
                connection,
                ErrorReply(id=call_id, result=f"Result of '{name}' is not JSON serializable"),
            )
            return
        self._send(connection, message)

    def _log_failure(self, name: Any, args: Any, error: Exception | str) -> None:
        if self._config.dispatcher.log_arguments:
            logger.warning("Error in %s args=%r: %s", name, args, error)
        else:
            logger.warning("Error in %s: %s", name, error)
        if isinstance(error, Exception):
            logger.debug("Handler traceback", exc_info=error)

    def _reply(self, connection: ChannelConnection, envelope: Reply | ErrorReply) -> None:
        self._send(connection, encode(envelope))

    def _send(self, connection: ChannelConnection, message: str) -> None:
        server = self._server
        if server is None or not server.emit(connection, "message", message):
            logger.debug("Dropping reply for closed connection %s", connection)


def broadcast(name: str, args: Any = None, *, channel: str | None = None) -> int:
    """Push *name* through every running dispatcher in this process.

    With *channel*, only the dispatcher bound to that channel name is used.
    Returns the number of dispatchers that sent the push.
    """
    sent = 0
    for dispatcher in list(_running):
        if channel is not None and dispatcher.name != channel:
            continue
        dispatcher.broadcast(name, args)
        sent += 1
    return sent


__all__ = ["Dispatcher", "Handler", "ServerFactory", "broadcast"]
