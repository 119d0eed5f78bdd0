"""Pytest fixtures for hostcall tests."""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from hypothesis import Phase, Verbosity, settings

from hostcall.caller import Caller
from hostcall.config import ChannelConfig, HostcallConfig
from hostcall.dispatcher import Dispatcher
from tests.helpers.channels import FakeChannelClient, FakeChannelServer

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

settings.register_profile(
    "ci",
    max_examples=100,
    deadline=None,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
)
settings.register_profile(
    "dev",
    max_examples=30,
    deadline=None,
)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "dev"))

_PATH_MARKERS: tuple[tuple[str, str], ...] = (
    ("tests/unit/", "unit"),
    ("tests/smoke/", "smoke"),
)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Mark tests as unit or smoke by the directory they live in."""
    del config
    for item in items:
        path = str(item.path).replace("\\", "/")
        for fragment, marker in _PATH_MARKERS:
            if fragment in path:
                item.add_marker(getattr(pytest.mark, marker))


@pytest.fixture
def short_tmp() -> Generator[Path]:
    """Create a short temp directory for Unix socket paths (macOS 104-byte limit)."""
    d = tempfile.mkdtemp(prefix="hc-", dir="/tmp" if os.name != "nt" else None)
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def socket_config(short_tmp: Path, monkeypatch: pytest.MonkeyPatch) -> HostcallConfig:
    """Config whose channels live in an isolated runtime directory."""
    monkeypatch.setenv("HOSTCALL_RUNTIME_DIR", str(short_tmp))
    return HostcallConfig(
        channel=ChannelConfig(runtime_dir=short_tmp, retry_interval=0.05, max_retries=3)
    )


@pytest.fixture
def fake_channels() -> list[FakeChannelClient]:
    """Every fake channel client handed out by ``make_caller``."""
    return []


@pytest.fixture
def make_caller(
    fake_channels: list[FakeChannelClient],
) -> Callable[..., tuple[Caller, FakeChannelClient]]:
    """Build a caller wired to an in-memory channel and connect it."""

    def factory(
        config: HostcallConfig | None = None,
        name: str = "app1",
        callback=None,
    ) -> tuple[Caller, FakeChannelClient]:
        def channel_factory(channel_name: str) -> FakeChannelClient:
            channel = FakeChannelClient(channel_name)
            fake_channels.append(channel)
            return channel

        caller = Caller(config=config, channel_factory=channel_factory)
        caller.connect(name, callback)
        return caller, fake_channels[-1]

    return factory


@pytest.fixture
def make_dispatcher() -> Callable[..., tuple[Dispatcher, list[FakeChannelServer]]]:
    """Build a dispatcher bound to an in-memory channel server (call ``start`` yourself)."""

    def factory(
        handlers, config: HostcallConfig | None = None
    ) -> tuple[Dispatcher, list[FakeChannelServer]]:
        servers: list[FakeChannelServer] = []

        def server_factory(name: str) -> FakeChannelServer:
            server = FakeChannelServer(name)
            servers.append(server)
            return server

        dispatcher = Dispatcher(handlers, config=config, server_factory=server_factory)
        return dispatcher, servers

    return factory
