"""hostcall: promise-style calls and push notifications between local processes."""

from hostcall.caller import Caller
from hostcall.discovery import find_open_socket, is_socket_taken
from hostcall.dispatcher import Dispatcher, broadcast
from hostcall.errors import (
    CallTimeoutError,
    ChannelError,
    DiscoveryError,
    EnvelopeError,
    HostcallError,
    RemoteError,
)

__version__ = "0.1.0"

__all__ = [
    "CallTimeoutError",
    "Caller",
    "ChannelError",
    "DiscoveryError",
    "Dispatcher",
    "EnvelopeError",
    "HostcallError",
    "RemoteError",
    "broadcast",
    "find_open_socket",
    "is_socket_taken",
]
