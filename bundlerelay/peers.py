"""Connections to the searcher nodes of other regions and forwarding to them."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

import aiohttp

from . import region as _region
from .packets import BundleUuid, PacketBatch

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]


@dataclass
class PacketWrapper:
    """A packet batch tagged with the region it was first received in."""

    src_region: str = ""
    batch: PacketBatch | None = None


def _text_field(node: dict, key: str) -> str:
    value = node.get(key)
    if not isinstance(value, str):
        raise ValueError(f"node field {key!r} is not a string")
    return value


class PeerManager:
    """Keeps one client per remote searcher region, refreshed from the node directory.

    ``connect`` is awaited with an ``http://host:port`` address and must return a client
    whose ``send_packet`` and ``send_bundle`` coroutines deliver to that peer.
    """

    REFRESH_INTERVAL = 3600.0
    CONNECT_TIMEOUT = 2.0

    def __init__(
        self,
        api_host: str,
        api_key: str,
        connect: Connector,
        local_region: str | None = None,
    ) -> None:
        self.api_host = api_host
        self.api_key = api_key
        self._connect = connect
        self._local_region = local_region
        self._peers: dict[str, Any] = {}
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    @property
    def local_region(self) -> str:
        if self._local_region is None:
            self._local_region = _region.local_region()
        return self._local_region

    def start(self) -> asyncio.Task:
        """Start refreshing the peer list in the background on the running loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._refresh_loop())
        return self._task

    async def _refresh_loop(self) -> None:
        while True:
            try:
                await self.refresh()
            except Exception as exc:  # noqa: BLE001 - a failed round must not stop the loop
                logger.warning("peer refresh error: %s", exc)
            await asyncio.sleep(self.REFRESH_INTERVAL)

    async def refresh(self) -> None:
        """Fetch the node directory and update the peer connections."""
        url = f"{self.api_host}/api/nodes?api_key={self.api_key}"
        async with aiohttp.ClientSession() as session:
            async with session.get(url) as resp:
                payload = await resp.json(content_type=None)
        nodes = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(nodes, list):
            raise ValueError("bad json")
        await self.apply_nodes(nodes)

    async def apply_nodes(self, nodes: Iterable[Any]) -> None:
        """Connect to new remote searcher regions and forget those no longer listed.

        A connection failure aborts the update; peers added before it are kept.
        """
        searchers = [n for n in nodes if isinstance(n, dict) and n.get("category") == "SEARCHER"]
        local = self.local_region
        async with self._lock:
            for node in searchers:
                region = _text_field(node, "region")
                if region == local:
                    continue
                host = _text_field(node, "ip")
                if region in self._peers:
                    continue
                client = await asyncio.wait_for(
                    self._connect(f"http://{host}"), self.CONNECT_TIMEOUT
                )
                self._peers[region] = client
                logger.info("peer added: %s", region)

            listed = {_text_field(node, "region") for node in searchers}
            for region in [r for r in self._peers if r not in listed]:
                del self._peers[region]

    def regions(self) -> list[str]:
        """The regions currently connected, sorted."""
        return sorted(self._peers)

    async def forward_packet(self, batch: PacketBatch) -> None:
        """Send a batch to every peer; delivery failures are ignored."""
        message = PacketWrapper(src_region=self.local_region, batch=batch)
        async with self._lock:
            peers = list(self._peers.items())
        await asyncio.gather(*(self._send_packet(region, client, message) for region, client in peers))

    @staticmethod
    async def _send_packet(region: str, client: Any, message: PacketWrapper) -> None:
        try:
            await client.send_packet(message)
        except Exception as exc:  # noqa: BLE001 - delivery is best effort
            logger.debug("packet to %s failed: %s", region, exc)
        logger.debug("packet -> %s", region)

    async def forward_bundle(self, bundle: BundleUuid, target_region: str) -> bool:
        """Send a bundle to the peer of ``target_region``; False if there is none."""
        async with self._lock:
            client = self._peers.get(target_region)
        if client is None:
            logger.warning("no peer for region %s", target_region)
            return False
        try:
            await client.send_bundle(bundle)
        except Exception as exc:  # noqa: BLE001 - delivery is best effort
            logger.debug("bundle to %s failed: %s", target_region, exc)
        logger.debug("bundle -> %s", target_region)
        return True