"""RPC services of the searcher engine built on the hub."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import Any

from . import metrics
from . import region as _region
from .arbitrage import ArbitrageTxBatch, filter_packet_batch
from .blacklist import BlacklistStore, filter_batch
from .errors import ServiceError
from .hub import BroadcastReceiver, Hub, Lagged
from .packets import BundleUuid, PacketBatch
from .peers import PacketWrapper

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 1.0


@dataclass
class StartExpiringPacketStreamResponse:
    """A heartbeat sent to a connected relayer."""

    heartbeat: Any = None


class RelayerService:
    """Accepts packet streams from relayers and publishes them into the hub."""

    def __init__(
        self,
        hub: Hub,
        blacklist: BlacklistStore | None = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ) -> None:
        self.hub = hub
        self._blacklist = blacklist
        self.heartbeat_interval = heartbeat_interval
        self._tasks: set[asyncio.Task] = set()

    async def start_expiring_packet_stream(
        self, inbound: AsyncIterable[Any], peer: str | None = None
    ) -> AsyncIterator[StartExpiringPacketStreamResponse]:
        """Consume ``inbound`` in the background and return the heartbeat stream.

        Inbound items are packet batches, ``None`` for an empty update, or anything
        else, which counts as a heartbeat.
        """
        peer_text = peer if peer is not None else "<unknown>"
        logger.info("RELAYER connected from %s", peer_text)
        task = asyncio.get_running_loop().create_task(self._consume(inbound, peer_text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return self._heartbeats()

    async def _consume(self, inbound: AsyncIterable[Any], peer: str) -> None:
        try:
            async for update in inbound:
                if isinstance(update, PacketBatch):
                    before = len(update.packets)
                    filtered = filter_batch(update, self._blacklist)
                    self.hub.publish_local_packet(filtered)
                    logger.debug("RELAYER -> Hub (%d pkt -> %d pkt)", before, len(filtered.packets))
                elif update is None:
                    logger.warning("PacketBatchUpdate.msg is empty")
                else:
                    logger.debug("RELAYER heartbeat")
        except Exception as exc:  # noqa: BLE001 - a broken stream ends this connection only
            logger.error("inbound stream error: %s", exc)
        logger.warning("inbound stream closed for %s", peer)

    async def _heartbeats(self) -> AsyncIterator[StartExpiringPacketStreamResponse]:
        while True:
            yield StartExpiringPacketStreamResponse(heartbeat=None)
            await asyncio.sleep(self.heartbeat_interval)

    async def subscribe_accounts_of_interest(self, request: Any) -> None:
        """Refuse the subscription: accounts of interest are not served."""
        logger.debug("accounts-of-interest subscription refused: %r", request)
        raise ServiceError.unimplemented("AOI stream not supported in stub")

    async def subscribe_programs_of_interest(self, request: Any) -> None:
        """Refuse the subscription: programs of interest are not served."""
        logger.debug("programs-of-interest subscription refused: %r", request)
        raise ServiceError.unimplemented("POI stream not supported in stub")


class BlockEngineService:
    """Streams accepted bundles to validators."""

    def __init__(self, hub: Hub) -> None:
        self.hub = hub

    async def subscribe_bundles(self, peer: str | None = None) -> AsyncIterator[BundleUuid]:
        if peer is not None:
            logger.debug("BlockEngine subscribed bundles from %s", peer)
        else:
            logger.debug("BlockEngine subscribed bundles")
        return self._stream(self.hub.subscribe_bundles())

    @staticmethod
    async def _stream(sub: Any) -> AsyncIterator[BundleUuid]:
        try:
            async for bundle in sub:
                logger.debug("BlockEngine.subscribe_bundles uuid=%s", bundle.uuid)
                metrics.SEARCHER_BUNDLE_OUT_TOTAL.inc()
                yield bundle
        finally:
            sub.close()


class InterRegionService:
    """Receives packets and bundles forwarded by searcher nodes of other regions."""

    def __init__(
        self,
        hub: Hub,
        local_region: str | None = None,
        blacklist: BlacklistStore | None = None,
    ) -> None:
        self.hub = hub
        self._local_region = local_region
        self._blacklist = blacklist

    @property
    def local_region(self) -> str:
        if self._local_region is None:
            self._local_region = _region.local_region()
        return self._local_region

    async def send_packet(self, wrapper: PacketWrapper) -> None:
        """Publish a remote batch; batches that originated in this region are ignored."""
        if wrapper.src_region == self.local_region:
            return
        if wrapper.batch is not None:
            self.hub.publish_remote_packet(filter_batch(wrapper.batch, self._blacklist))

    async def send_bundle(self, bundle: BundleUuid) -> None:
        self.hub.publish_bundle(bundle)


def arbitrage_stream(hub: Hub) -> AsyncIterator[ArbitrageTxBatch]:
    """Subscribe now and stream the DEX-touching part of each later batch."""
    return _arbitrage_batches(hub.subscribe_packets_arc())


async def _arbitrage_batches(receiver: BroadcastReceiver[PacketBatch]) -> AsyncIterator[ArbitrageTxBatch]:
    while True:
        try:
            batch = await receiver.recv()
        except Lagged:
            continue
        except EOFError:
            return
        picked = filter_packet_batch(batch)
        if picked is not None:
            yield picked


class ArbitrageFeedService:
    """Streams transactions that touch watched DEX programs."""

    def __init__(self, hub: Hub) -> None:
        self.hub = hub

    async def subscribe_arbitrage(self) -> AsyncIterator[ArbitrageTxBatch]:
        return arbitrage_stream(self.hub)