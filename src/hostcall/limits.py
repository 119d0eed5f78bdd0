"""Framing limits and timing defaults - no circular dependencies."""

from __future__ import annotations

MAX_LINE_BYTES = 4 * 1024 * 1024  # 4 MiB per JSON line (without framing overhead)
STREAM_LIMIT_BYTES = MAX_LINE_BYTES + 1  # Include trailing newline separator.

# Reconnect heartbeat for an established client connection that drops.
RETRY_INTERVAL_SECONDS = 0.5
MAX_RETRIES = 20

CONNECT_TIMEOUT_SECONDS = 5.0

__all__ = [
    "CONNECT_TIMEOUT_SECONDS",
    "MAX_LINE_BYTES",
    "MAX_RETRIES",
    "RETRY_INTERVAL_SECONDS",
    "STREAM_LIMIT_BYTES",
]
