"""Client role: correlated calls and push subscriptions over a channel."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, TypeAlias

from hostcall.channel import ChannelClient
from hostcall.config import HostcallConfig
from hostcall.envelopes import ErrorReply, Push, Request, encode, parse_envelope
from hostcall.errors import CallTimeoutError, ChannelError, EnvelopeError, RemoteError

if TYPE_CHECKING:
    from collections.abc import Callable

ReplyCallback: TypeAlias = "Callable[[BaseException | None, Any], Any]"
ConnectCallback: TypeAlias = "Callable[[BaseException | None], Any]"
PushListener: TypeAlias = "Callable[[Any], Any]"
ChannelFactory: TypeAlias = "Callable[[str], ChannelClient]"

logger = logging.getLogger(__name__)


def _mark_retrieved(future: asyncio.Future[Any]) -> None:
    # Outcome already went to the callback.
    if not future.cancelled():
        future.exception()


class PendingCall:
    """A request waiting for its reply."""

    def __init__(
        self,
        call_id: str,
        name: str,
        future: asyncio.Future[Any],
        callback: ReplyCallback | None = None,
    ) -> None:
        self.id = call_id
        self.name = name
        self.future = future
        self.callback = callback
        self.timer: asyncio.TimerHandle | None = None

    def settle(self, error: BaseException | None, result: Any = None) -> None:
        """Deliver the outcome to the callback and the future."""
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        if self.callback is not None:
            try:
                self.callback(error, result)
            except Exception:
                logger.exception("Reply callback for '%s' raised", self.name)
        if self.future.done():
            return
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(result)


@dataclass(eq=False)
class _Subscription:
    name: str
    listener: PushListener = field(repr=False)


class Caller:
    """Issue named calls to a dispatcher and receive its pushes.

    Calls made before the channel is live are queued and flushed in order as
    soon as it connects.  Each call is settled at most once, through both its
    optional callback and the returned future::

        caller = Caller()
        await caller.connect("app1")
        total = await caller.call("add", {"a": 1, "b": 2})

        unsubscribe = caller.on("tick", print)

    Pending calls are not retried or failed when the channel drops; unless
    ``call_timeout`` is configured they stay pending for the caller's lifetime.
    """

    def __init__(
        self,
        *,
        config: HostcallConfig | None = None,
        channel_factory: ChannelFactory | None = None,
    ) -> None:
        self._config = config or HostcallConfig()
        self._channel_factory = channel_factory or self._default_channel
        self._pending: dict[str, PendingCall] = {}
        self._queue: list[str] = []
        self._listeners: dict[str, list[_Subscription]] = {}
        self._client: ChannelClient | None = None
        self._live: ChannelClient | None = None

    @property
    def is_connected(self) -> bool:
        """Whether requests are currently transmitted instead of queued."""
        return self._live is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    def listener_count(self, name: str) -> int:
        return len(self._listeners.get(name, ()))

    def _default_channel(self, name: str) -> ChannelClient:
        return ChannelClient(name, config=self._config.channel)

    def connect(self, name: str, callback: ConnectCallback | None = None) -> asyncio.Future[None]:
        """Connect to the channel *name*.

        ``callback`` is invoked exactly once, with the connection error or
        ``None``; the returned future settles with the same outcome.
        """
        if self._client is not None:
            msg = f"Caller is already attached to channel '{self._client.name}'"
            raise RuntimeError(msg)

        outcome: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        if callback is not None:
            outcome.add_done_callback(_mark_retrieved)
        settled = False

        def finish(error: BaseException | None) -> None:
            nonlocal settled
            if settled:
                return
            settled = True
            if callback is not None:
                try:
                    callback(error)
                except Exception:
                    logger.exception("Connect callback for '%s' raised", name)
            if outcome.done():
                return
            if error is not None:
                outcome.set_exception(error)
            else:
                outcome.set_result(None)

        client = self._channel_factory(name)

        def on_connect() -> None:
            self._live = client
            self._flush(client)
            finish(None)

        def on_disconnect() -> None:
            if self._live is client:
                self._live = None

        def on_error(exc: BaseException) -> None:
            client.disconnect()
            if self._client is client:
                self._client = None
            logger.warning("Error connecting to channel %s: %s", name, exc)
            finish(exc)

        client.on("message", self._handle_message)
        client.on("connect", on_connect)
        client.on("disconnect", on_disconnect)
        client.on("error", on_error)
        self._client = client
        client.start()
        return outcome

    async def close(self) -> None:
        """Tear down the channel; pending calls are left as they are."""
        client, self._client = self._client, None
        self._live = None
        if client is not None:
            client.disconnect()
            await client.wait_closed()

    def send(
        self,
        name: str,
        args: Any = None,
        *,
        callback: ReplyCallback | None = None,
    ) -> asyncio.Future[Any]:
        """Call handler *name* on the dispatcher.

        The request goes out immediately when the channel is live and is
        queued otherwise.  ``callback`` receives ``(None, result)`` or
        ``(RemoteError, None)``; the returned future resolves or raises
        accordingly.

        Raises:
            PydanticSerializationError: If *args* is not JSON serializable.
        """
        loop = asyncio.get_running_loop()
        payload = {} if args is None else args
        request = Request(name=name, args=payload)
        while request.id in self._pending:
            request = Request(name=name, args=payload)

        # Raises before anything is registered when args are not serializable.
        message = encode(request)

        future: asyncio.Future[Any] = loop.create_future()
        if callback is not None:
            future.add_done_callback(_mark_retrieved)
        call = PendingCall(request.id, name, future, callback)
        self._pending[request.id] = call

        timeout = self._config.caller.call_timeout
        if timeout is not None:
            call.timer = loop.call_later(timeout, self._expire, request.id, timeout)

        if self._live is None:
            self._queue.append(message)
            return future
        try:
            self._live.emit("message", message)
        except ChannelError as exc:
            # Writer is closing; the disconnect event follows.
            logger.debug("Queueing '%s' for the next connection: %s", name, exc)
            self._queue.append(message)
        return future

    async def call(self, name: str, args: Any = None) -> Any:
        """Awaitable form of ``send``."""
        return await self.send(name, args)

    def on(self, name: str, listener: PushListener) -> Callable[[], None]:
        """Listen for pushes named *name*; returns a function that removes this listener."""
        subscription = _Subscription(name, listener)
        self._listeners.setdefault(name, []).append(subscription)

        def unsubscribe() -> None:
            current = self._listeners.get(name)
            if not current:
                return
            remaining = [s for s in current if s is not subscription]
            if remaining:
                self._listeners[name] = remaining
            else:
                del self._listeners[name]

        return unsubscribe

    def remove_listener(self, name: str) -> None:
        """Remove every listener for pushes named *name*."""
        self._listeners.pop(name, None)

    def _flush(self, client: ChannelClient) -> None:
        """Send messages that were queued while closed."""
        queued, self._queue = self._queue, []
        for message in queued:
            client.emit("message", message)
        if queued:
            logger.debug("Flushed %d queued request(s) to %s", len(queued), client.name)

    def _expire(self, call_id: str, timeout: float) -> None:
        call = self._pending.pop(call_id, None)
        if call is None:
            return
        call.timer = None
        logger.warning("Call %s to '%s' timed out after %ss", call_id, call.name, timeout)
        call.settle(CallTimeoutError(call.name, timeout))

    def _handle_message(self, payload: Any) -> None:
        try:
            envelope = parse_envelope(payload)
        except EnvelopeError as exc:
            # cannot go further without a decodable envelope
            logger.warning("Dropping message: %s", exc)
            return

        if isinstance(envelope, Push):
            self._deliver_push(envelope)
            return

        call = self._pending.pop(envelope.id, None)
        if call is None:
            logger.debug("Discarding reply for unknown or settled call %s", envelope.id)
            return
        if isinstance(envelope, ErrorReply):
            call.settle(RemoteError(envelope.result))
        else:
            call.settle(None, envelope.result)

    def _deliver_push(self, push: Push) -> None:
        subscriptions = self._listeners.get(push.name)
        if not subscriptions:
            return
        for subscription in list(subscriptions):
            try:
                subscription.listener(push.args)
            except Exception:
                logger.exception("Listener for push '%s' raised", push.name)


__all__ = [
    "Caller",
    "ChannelFactory",
    "ConnectCallback",
    "PendingCall",
    "PushListener",
    "ReplyCallback",
]
