"""Find an unused channel name within a namespace."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from hostcall.channel import ChannelClient
from hostcall.config import ChannelConfig
from hostcall.errors import DiscoveryError

if TYPE_CHECKING:
    from hostcall.transports import Transport

logger = logging.getLogger(__name__)


async def is_socket_taken(
    name: str,
    *,
    transport: Transport | None = None,
    config: ChannelConfig | None = None,
) -> bool:
    """Check whether something is already listening on channel *name*.

    A probe connection that succeeds means taken; one that fails means free.
    The probe is closed as soon as it is classified.
    """
    probe_config = (config or ChannelConfig()).model_copy(update={"max_retries": 0})
    client = ChannelClient(name, transport=transport, config=probe_config)
    verdict: asyncio.Future[bool] = asyncio.get_running_loop().create_future()

    def classify(taken: bool) -> None:
        client.disconnect()
        if not verdict.done():
            verdict.set_result(taken)

    client.on("connect", lambda: classify(True))
    client.on("error", lambda _exc: classify(False))
    client.start()
    try:
        return await verdict
    finally:
        client.disconnect()
        await client.wait_closed()


async def find_open_socket(
    namespace: str,
    *,
    transport: Transport | None = None,
    config: ChannelConfig | None = None,
    limit: int | None = None,
) -> str:
    """Return the first free channel name among ``namespace1``, ``namespace2``, ...

    Probes run one at a time in increasing order.

    Raises:
        DiscoveryError: If *limit* names were probed and all were taken.
    """
    index = 1
    while await is_socket_taken(f"{namespace}{index}", transport=transport, config=config):
        if limit is not None and index >= limit:
            msg = f"No free channel in namespace '{namespace}' after {limit} probes"
            raise DiscoveryError(msg)
        index += 1
    name = f"{namespace}{index}"
    logger.debug("Found open channel %s", name)
    return name


__all__ = ["find_open_socket", "is_socket_taken"]
