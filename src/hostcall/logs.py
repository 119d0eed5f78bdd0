"""Logging setup for the hostcall command line."""

from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

_handler: logging.Handler | None = None


def setup_logging(level: int = logging.INFO) -> None:
    """Attach a stderr handler to the ``hostcall`` logger.

    This is idempotent - later calls only adjust the level.
    """
    global _handler

    root = logging.getLogger("hostcall")
    root.setLevel(level)
    if _handler is not None:
        _handler.setLevel(level)
        return

    _handler = logging.StreamHandler(sys.stderr)
    _handler.setLevel(level)
    _handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(_handler)


__all__ = ["setup_logging"]
