"""Runtime path helpers for hostcall channels."""

from __future__ import annotations

import os
import platform
import tempfile
from pathlib import Path

from platformdirs import user_config_dir, user_runtime_dir


def get_config_dir() -> Path:
    """Get the config directory for hostcall (config.toml)."""
    override = os.environ.get("HOSTCALL_CONFIG_DIR")
    if override:
        return Path(override).resolve()
    return Path(user_config_dir("hostcall"))


def get_config_path() -> Path:
    """Get the path to the main config file."""
    return get_config_dir() / "config.toml"


def get_runtime_dir() -> Path:
    """Get the directory holding channel sockets and port files.

    Unix socket paths are limited to ~104 bytes on macOS, so the fallback
    stays short when no per-user runtime directory exists.
    """
    override = os.environ.get("HOSTCALL_RUNTIME_DIR")
    if override:
        return Path(override).resolve()
    if platform.system() == "Linux":
        return Path(user_runtime_dir("hostcall"))
    return Path(tempfile.gettempdir()) / "hostcall"


def get_socket_path(channel: str, runtime_dir: Path | None = None) -> Path:
    """Get the Unix socket path for a channel name."""
    return (runtime_dir or get_runtime_dir()) / f"{channel}.sock"


def get_port_path(channel: str, runtime_dir: Path | None = None) -> Path:
    """Get the port descriptor path for a TCP loopback channel."""
    return (runtime_dir or get_runtime_dir()) / f"{channel}.port"


def ensure_runtime_dir(runtime_dir: Path | None = None) -> Path:
    """Create the runtime directory if it doesn't exist."""
    path = runtime_dir or get_runtime_dir()
    path.mkdir(parents=True, exist_ok=True)
    return path
