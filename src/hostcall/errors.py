"""Exception types raised by hostcall."""

from __future__ import annotations


class HostcallError(Exception):
    """Base class for all hostcall errors."""


class RemoteError(HostcallError):
    """A dispatcher handler failed; carries the remote error message only.

    Stack traces and structured error data never cross the channel, so
    ``message`` is the whole payload of the error reply.
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class CallTimeoutError(HostcallError):
    """A pending call was evicted because no reply arrived in time."""

    def __init__(self, name: str, timeout: float) -> None:
        self.name = name
        self.timeout = timeout
        super().__init__(f"Call to '{name}' timed out after {timeout}s")


class EnvelopeError(HostcallError, ValueError):
    """A payload could not be decoded into a known envelope."""


class DiscoveryError(HostcallError):
    """No free channel name was found within the probe limit."""


class ChannelError(HostcallError, ConnectionError):
    """Channel-level failure (unresolvable address, oversized frame)."""


__all__ = [
    "CallTimeoutError",
    "ChannelError",
    "DiscoveryError",
    "EnvelopeError",
    "HostcallError",
    "RemoteError",
]
