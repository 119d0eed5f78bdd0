"""Configuration loader for hostcall."""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Literal, TypeAlias

import tomlkit
from pydantic import BaseModel, Field, field_validator

from hostcall.limits import (
    CONNECT_TIMEOUT_SECONDS,
    MAX_LINE_BYTES,
    MAX_RETRIES,
    RETRY_INTERVAL_SECONDS,
)
from hostcall.paths import get_config_path

TransportPreference: TypeAlias = Literal["auto", "socket", "tcp"]


class ChannelConfig(BaseModel):
    """Transport and framing settings shared by both roles."""

    transport: TransportPreference = Field(
        default="auto",
        description="Transport to use (auto picks socket on POSIX, tcp on Windows)",
    )
    runtime_dir: Path | None = Field(
        default=None,
        description="Directory for socket and port files (default: platform runtime dir)",
    )
    max_line_bytes: int = Field(default=MAX_LINE_BYTES, gt=0)
    connect_timeout: float = Field(default=CONNECT_TIMEOUT_SECONDS, gt=0)
    retry_interval: float = Field(
        default=RETRY_INTERVAL_SECONDS,
        ge=0,
        description="Seconds between reconnect attempts after a dropped connection",
    )
    max_retries: int = Field(
        default=MAX_RETRIES,
        ge=0,
        description="Reconnect attempts before the client gives up",
    )


class CallerConfig(BaseModel):
    """Caller-side settings."""

    call_timeout: float | None = Field(
        default=None,
        description="Evict pending calls after this many seconds (None keeps them forever)",
    )

    @field_validator("call_timeout")
    @classmethod
    def validate_call_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            msg = "call_timeout must be positive or unset"
            raise ValueError(msg)
        return value


class DispatcherConfig(BaseModel):
    """Dispatcher-side settings."""

    log_arguments: bool = Field(
        default=True,
        description="Include call arguments in handler failure logs",
    )


class HostcallConfig(BaseModel):
    """Root configuration model."""

    channel: ChannelConfig = Field(default_factory=ChannelConfig)
    caller: CallerConfig = Field(default_factory=CallerConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)

    @classmethod
    def load(cls, config_path: Path | None = None) -> HostcallConfig:
        """Load configuration from TOML file or use defaults."""
        if config_path is None:
            config_path = get_config_path()

        if config_path.exists():
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
            return cls.model_validate(data)

        return cls()

    def save(self, path: Path) -> None:
        """Serialize current config to a TOML file."""
        doc = tomlkit.document()
        for section, model in (
            ("channel", self.channel),
            ("caller", self.caller),
            ("dispatcher", self.dispatcher),
        ):
            table = tomlkit.table()
            for key, value in model.model_dump(mode="json").items():
                if value is not None:
                    table[key] = value
            doc[section] = table

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(tomlkit.dumps(doc), encoding="utf-8")


__all__ = [
    "CallerConfig",
    "ChannelConfig",
    "DispatcherConfig",
    "HostcallConfig",
]
