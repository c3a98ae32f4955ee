"""The in-process fan-out of packets and bundles to subscribers."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import deque
from collections.abc import Awaitable, Callable, Coroutine
from typing import Any, Generic, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from . import metrics
from .packets import BundleUuid, Packet, PacketBatch
from .transaction import fast_first_signature_b58

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_REDIS_URL = "redis://127.0.0.1/"


class Lagged(Exception):
    """Raised by a receiver that fell behind; ``missed`` items were overwritten."""

    def __init__(self, missed: int) -> None:
        super().__init__(f"receiver lagged by {missed} item(s)")
        self.missed = missed


class Broadcast(Generic[T]):
    """A bounded ring buffer from which every receiver reads every item it keeps up with."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("broadcast capacity must be positive")
        self.capacity = capacity
        self._buffer: deque[T] = deque(maxlen=capacity)
        self._next_seq = 0
        self._closed = False
        self._changed = asyncio.Event()

    @property
    def _oldest(self) -> int:
        return self._next_seq - len(self._buffer)

    def _wake(self) -> None:
        self._changed.set()
        self._changed = asyncio.Event()

    def _close(self) -> None:
        self._closed = True
        self._wake()

    def send(self, item: T) -> bool:
        """Append an item, overwriting the oldest when full; False once closed."""
        if self._closed:
            return False
        self._buffer.append(item)
        self._next_seq += 1
        self._wake()
        return True

    def subscribe(self) -> BroadcastReceiver[T]:
        """A receiver of the items sent from now on."""
        return BroadcastReceiver(self, self._next_seq)


class BroadcastReceiver(Generic[T]):
    """One reader's position in a broadcast."""

    def __init__(self, channel: Broadcast[T], position: int) -> None:
        self._channel = channel
        self._next = position

    async def recv(self) -> T:
        """Wait for the next item; raise Lagged if items were lost, EOFError once closed."""
        channel = self._channel
        while True:
            oldest = channel._oldest
            if self._next < oldest:
                missed = oldest - self._next
                self._next = oldest
                raise Lagged(missed)
            if self._next < channel._next_seq:
                item = channel._buffer[self._next - oldest]
                self._next += 1
                return item
            if channel._closed:
                raise EOFError("broadcast closed")
            await channel._changed.wait()


_END = object()


class _Subscription(Generic[T]):
    """A bounded queue fed from a broadcast; iterate it or call ``get``."""

    def __init__(self, capacity: int) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=capacity)
        self._task: asyncio.Task | None = None
        self._ended = False

    def _offer(self, item: T) -> bool:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            return False
        return True

    async def _finish(self) -> None:
        await self._queue.put(_END)

    def qsize(self) -> int:
        return self._queue.qsize()

    async def get(self) -> T:
        """The next item; EOFError when the source closed or the subscription was closed."""
        if self._ended:
            raise EOFError("subscription ended")
        item = await self._queue.get()
        if item is _END:
            self._ended = True
            raise EOFError("subscription ended")
        return item

    def __aiter__(self) -> _Subscription[T]:
        return self

    async def __anext__(self) -> T:
        try:
            return await self.get()
        except EOFError:
            raise StopAsyncIteration from None

    def close(self) -> None:
        """Stop receiving; the feeding task ends."""
        self._ended = True
        if self._task is not None:
            self._task.cancel()


def env_capacity(name: str, default: int) -> int:
    """A positive integer from the environment, or ``default``."""
    try:
        value = int(os.environ[name])
    except (KeyError, ValueError):
        return default
    return value if value > 0 else default


_redis_client: aioredis.Redis | None = None


async def get_redis_conn() -> aioredis.Redis:
    """The shared Redis client for ``REDIS_SERVER``, created on first use."""
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(os.environ.get("REDIS_SERVER", DEFAULT_REDIS_URL))
    return _redis_client


def _signatures(packets: list[Packet]) -> list[str]:
    return [sig for sig in map(fast_first_signature_b58, (p.data for p in packets)) if sig is not None]


class Hub:
    """Fans packets and bundles out to subscribers and indexes packet signatures in Redis.

    ``forwarder``, if given, has a ``forward_packet`` coroutine that receives every locally
    received batch. ``redis_factory`` is awaited for the Redis client used by the indexer.
    """

    def __init__(
        self,
        forwarder: Any = None,
        redis_factory: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        self._packets: Broadcast[PacketBatch] = Broadcast(env_capacity("PACKET_RING_CAP", 2048))
        self._bundles: Broadcast[BundleUuid] = Broadcast(env_capacity("BUNDLE_RING_CAP", 1024))
        self._sig_queue: asyncio.Queue[PacketBatch] = asyncio.Queue(
            maxsize=env_capacity("SIG_INDEX_Q_CAP", 4096)
        )
        self.sig_ttl_sec = env_capacity("PKT_SIG_TTL_SEC", 3000)
        self._forwarder = forwarder
        self._redis_factory = redis_factory if redis_factory is not None else get_redis_conn
        self._packet_subscribers = 0
        self._indexer: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def packet_subscribers(self) -> int:
        return self._packet_subscribers

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def start(self) -> asyncio.Task:
        """Start the background signature indexer on the running loop."""
        if self._indexer is None or self._indexer.done():
            self._indexer = asyncio.get_running_loop().create_task(self._index_signatures())
        return self._indexer

    def close(self) -> None:
        """Close both broadcasts, ending every subscription, and stop the indexer."""
        self._packets._close()
        self._bundles._close()
        if self._indexer is not None:
            self._indexer.cancel()

    async def _index_signatures(self) -> None:
        while True:
            batch = await self._sig_queue.get()
            sigs = await asyncio.to_thread(_signatures, batch.packets)
            if not sigs:
                continue
            try:
                conn = await self._redis_factory()
                now = str(time.time_ns() // 1_000_000)
                pipe = conn.pipeline(transaction=False)
                for sig in sigs:
                    pipe.setex(sig, self.sig_ttl_sec, now)
                await pipe.execute()
            except (RedisError, OSError) as exc:
                logger.debug("signature indexing failed: %s", exc)

    def _queue_for_indexing(self, batch: PacketBatch) -> None:
        try:
            self._sig_queue.put_nowait(batch)
        except asyncio.QueueFull:
            logger.debug("sig-index queue full; skip indexing for this batch")

    async def _pump(
        self,
        receiver: BroadcastReceiver[T],
        sub: _Subscription[T],
        convert: Callable[[T], T],
        dropped: metrics.Counter,
        kind: str,
        on_exit: Callable[[], None] | None = None,
    ) -> None:
        try:
            while True:
                try:
                    item = await receiver.recv()
                except Lagged as exc:
                    logger.debug("%s subscriber lagged: dropped %d items", kind, exc.missed)
                    continue
                except EOFError:
                    break
                if not sub._offer(convert(item)):
                    dropped.inc()
                    logger.debug("drop to slow subscriber (%s)", kind)
            await sub._finish()
        finally:
            if on_exit is not None:
                on_exit()

    def _packet_subscriber_left(self) -> None:
        self._packet_subscribers -= 1
        metrics.SEARCHER_COUNT.set(self._packet_subscribers)

    def subscribe_packets(self) -> _Subscription[PacketBatch]:
        """A bounded subscription to packet batches; a full subscription drops new batches."""
        sub: _Subscription[PacketBatch] = _Subscription(env_capacity("PACKET_SUB_CAP", 512))
        receiver = self._packets.subscribe()
        self._packet_subscribers += 1
        metrics.SEARCHER_COUNT.set(self._packet_subscribers)
        sub._task = self._spawn(
            self._pump(
                receiver,
                sub,
                lambda batch: PacketBatch(packets=list(batch.packets)),
                metrics.PACKET_DROP_TOTAL,
                "packets",
                self._packet_subscriber_left,
            )
        )
        return sub

    def _publish_packet(self, batch: PacketBatch) -> None:
        self._packets.send(batch)
        metrics.PKT_IN_TOTAL.inc(len(batch.packets))
        self._queue_for_indexing(batch)

    def publish_local_packet(self, batch: PacketBatch) -> None:
        """Publish a batch received here and forward it to the other regions."""
        self._publish_packet(batch)
        if self._forwarder is not None:
            self._spawn(self._forwarder.forward_packet(batch))

    def publish_remote_packet(self, batch: PacketBatch) -> None:
        """Publish a batch received from another region."""
        self._publish_packet(batch)

    def subscribe_packets_arc(self) -> BroadcastReceiver[PacketBatch]:
        """A direct receiver of the shared packet batches."""
        return self._packets.subscribe()

    def subscribe_bundles(self) -> _Subscription[BundleUuid]:
        """A bounded subscription to bundles; a full subscription drops new bundles."""
        sub: _Subscription[BundleUuid] = _Subscription(env_capacity("BUNDLE_SUB_CAP", 1024))
        receiver = self._bundles.subscribe()
        sub._task = self._spawn(
            self._pump(receiver, sub, lambda bundle: bundle, metrics.BUNDLE_DROP_TOTAL, "bundles")
        )
        return sub

    def publish_bundle(self, bundle: BundleUuid) -> None:
        self._bundles.send(bundle)