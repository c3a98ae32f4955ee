"""The searcher-facing RPC service: bundle submission, pending packets and leader queries."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from redis.exceptions import RedisError

from . import metrics
from . import region as _region
from .blacklist import bundle_has_blacklisted
from .clickhouse import ClickhouseLog, log_to_clickhouse
from .errors import ServiceError, StatusCode
from .hub import Hub, get_redis_conn
from .ids import gen_bundle_uuid
from .packets import Bundle, BundleUuid, Header, Packet
from .transaction import fast_first_signature_b58

logger = logging.getLogger(__name__)

BUNDLE_TTL_SEC = 6 * 60 * 60
_U64_MAX = 2**64 - 1


@dataclass
class SendBundleRequest:
    bundle: Bundle | None = None


@dataclass
class SendBundleResponse:
    uuid: str = ""


@dataclass
class PendingTxNotification:
    server_side_ts: datetime | None = None
    expiration_time: datetime | None = None
    transactions: list[Packet] = field(default_factory=list)


@dataclass
class NextScheduledLeaderResponse:
    current_slot: int = 0
    next_leader_slot: int = 0
    next_leader_identity: str = ""
    next_leader_region: str = ""


@dataclass
class SlotList:
    slots: list[int] = field(default_factory=list)


@dataclass
class ConnectedLeadersResponse:
    connected_validators: dict[str, SlotList] = field(default_factory=dict)


@dataclass
class ConnectedLeadersRegionedResponse:
    connected_validators: dict[str, ConnectedLeadersResponse] = field(default_factory=dict)


def first_sig_from_packets(packets: Iterable[Packet]) -> str | None:
    """The first signature found among the packets, or None."""
    return next(
        (sig for sig in (fast_first_signature_b58(p.data) for p in packets) if sig is not None),
        None,
    )


def detect_front_run(signatures: Sequence[str], exists: Sequence[int]) -> str | None:
    """Return the first already-seen (mempool) signature that follows a new one, else None."""
    seen_searcher_tx = False
    for sig, flag in zip(signatures, exists):
        if flag:
            if seen_searcher_tx:
                return sig
        else:
            seen_searcher_tx = True
    return None


def _parse_u64(text: str) -> int | None:
    digits = text[1:] if text.startswith("+") else text
    if not digits or not digits.isascii() or not digits.isdigit():
        return None
    value = int(digits)
    return value if value <= _U64_MAX else None


def _as_text(value: Any) -> str:
    return value.decode() if isinstance(value, (bytes, bytearray)) else str(value)


async def _stream_of(items: Iterable[Any]) -> AsyncIterator[Any]:
    """Yield the given items as an asynchronous stream."""
    for item in items:
        yield item


class SearcherService:
    """Serves searchers: accepts bundles, streams pending packets and answers leader queries.

    ``redis_factory`` is awaited for a Redis client; ``peers`` has a ``forward_bundle``
    coroutine used for bundles whose leader is in another region.
    """

    def __init__(
        self,
        hub: Hub,
        redis_factory: Callable[[], Awaitable[Any]] | None = None,
        peers: Any = None,
        region: str | None = None,
    ) -> None:
        self.hub = hub
        self._redis_factory = redis_factory if redis_factory is not None else get_redis_conn
        self._peers = peers
        self._region = region
        self._tasks: set[asyncio.Task] = set()

    @property
    def local_region(self) -> str:
        if self._region is None:
            self._region = _region.local_region()
        return self._region

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def read_redis(self, key: str) -> str | None:
        """The value stored at ``key`` as text, None if absent; Redis failures are INTERNAL."""
        try:
            conn = await self._redis_factory()
            value = await conn.get(key)
        except (RedisError, OSError) as exc:
            raise ServiceError.internal(str(exc)) from exc
        return None if value is None else _as_text(value)

    async def _set_status(self, bundle_id: str, status: str) -> None:
        try:
            conn = await self._redis_factory()
            await conn.setex(f"{bundle_id}_status", BUNDLE_TTL_SEC, status)
        except (RedisError, OSError) as exc:
            logger.debug("status write for %s failed: %s", bundle_id, exc)

    async def _record_submission(self, bundle_id: str, sig_join: str) -> None:
        try:
            conn = await self._redis_factory()
        except (RedisError, OSError):
            logger.warning("send_bundle: failed to get redis conn for fire-and-forget write")
            return
        try:
            pipe = conn.pipeline(transaction=False)
            pipe.setex(bundle_id, BUNDLE_TTL_SEC, sig_join)
            pipe.lpush("bundle_queue", bundle_id)
            pipe.setex(f"{bundle_id}_status", BUNDLE_TTL_SEC, "submitted")
            await pipe.execute()
        except (RedisError, OSError) as exc:
            logger.debug("submission write for %s failed: %s", bundle_id, exc)

    async def _exists_flags(self, signatures: list[str]) -> list[int] | None:
        try:
            conn = await self._redis_factory()
        except (RedisError, OSError):
            return None
        try:
            pipe = conn.pipeline(transaction=False)
            for sig in signatures:
                pipe.exists(sig)
            return [int(v) for v in await pipe.execute()]
        except (RedisError, OSError, ValueError, TypeError) as exc:
            logger.warning("redis EXISTS pipeline failed: %s", exc)
            return [0] * len(signatures)

    async def send_bundle(
        self, request: SendBundleRequest, remote_addr: str | None = None
    ) -> SendBundleResponse:
        """Accept a bundle, drop it if blacklisted or front-running, else route it to its leader."""
        remote = remote_addr if remote_addr is not None else "<unknown>"
        bundle_id = gen_bundle_uuid()
        packets = request.bundle.packets if request.bundle is not None else []

        if request.bundle is not None and bundle_has_blacklisted(packets):
            self._spawn(self._set_status(bundle_id, "dropped_blacklist"))
            return SendBundleResponse(uuid=bundle_id)

        tx_sigs = [sig for sig in map(fast_first_signature_b58, (p.data for p in packets)) if sig]

        if tx_sigs:
            flags = await self._exists_flags(tx_sigs)
            preceding = detect_front_run(tx_sigs, flags) if flags is not None else None
            if preceding is not None:
                logger.warning("Detected Front-run: mempool TX %s is preceding", preceding)
                log_to_clickhouse(
                    ClickhouseLog(
                        bundle_id=bundle_id,
                        tx_sig=preceding,
                        stage="SEARCHER.bundle_dropped",
                        node="searcher",
                        from_addr=remote,
                        description="front-running detected → dropped",
                    )
                )
                self._spawn(self._set_status(bundle_id, "dropped"))
                metrics.SEARCHER_BUNDLE_DROP_TOTAL.inc()
                return SendBundleResponse(uuid=bundle_id)

        leader_info = await self.read_redis("next_leader")
        if leader_info is None:
            raise ServiceError.unavailable("next_leader")
        leader_id, sep, _slot = leader_info.partition(";")
        if not sep:
            raise ServiceError.internal("malformed next_leader")
        leader_region = await self.read_redis(f"{leader_id}_region")
        if leader_region is None:
            leader_region = self.local_region

        if request.bundle is None:
            raise ServiceError(StatusCode.INVALID_ARGUMENT, "bundle missing")
        inner = replace(request.bundle, packets=list(request.bundle.packets))
        if inner.header is None or inner.header.ts is None:
            inner.header = Header(ts=datetime.now(timezone.utc))

        tagged = BundleUuid(bundle=inner, uuid=bundle_id)
        if leader_region == self.local_region:
            self.hub.publish_bundle(tagged)
        elif self._peers is not None:
            await self._peers.forward_bundle(tagged, leader_region)
        else:
            logger.warning("no peer for region %s", leader_region)

        self._spawn(self._record_submission(bundle_id, ";".join(tx_sigs)))

        for sig in tx_sigs:
            log_to_clickhouse(
                ClickhouseLog(
                    bundle_id=bundle_id,
                    tx_sig=sig,
                    stage="SEARCHER.send_bundle",
                    node="searcher",
                    from_addr=remote,
                    description="bundle forwarded to Hub",
                )
            )
        metrics.SEARCHER_BUNDLE_IN_TOTAL.inc()
        return SendBundleResponse(uuid=bundle_id)

    async def subscribe_bundle_results(self, request: Any) -> AsyncIterator[Any]:
        """An empty stream: bundle results are not reported."""
        logger.debug("bundle results subscription: no results are reported")
        return _stream_of(())

    async def subscribe_pending_transactions(
        self, request: Any, remote_addr: str | None = None
    ) -> AsyncIterator[PendingTxNotification]:
        """Subscribe now and stream every later packet batch as a notification."""
        if remote_addr is not None:
            logger.debug("SEARCHER subscribed packets from %s", remote_addr)
            remote = remote_addr
        else:
            logger.debug("SEARCHER subscribed packets")
            remote = "<unknown>"
        return self._pending(self.hub.subscribe_packets(), remote)

    @staticmethod
    async def _pending(sub: Any, remote: str) -> AsyncIterator[PendingTxNotification]:
        try:
            async for batch in sub:
                count = len(batch.packets)
                logger.debug("SEARCHER.subscribe_pending %d pkt(s)", count)
                log_to_clickhouse(
                    ClickhouseLog(
                        tx_sig=first_sig_from_packets(batch.packets) or "",
                        stage="SEARCHER.subscribe_pending",
                        node="searcher",
                        to_addr=remote,
                        description=f"streamed {count} packets",
                    )
                )
                metrics.PKT_OUT_TOTAL.inc()
                yield PendingTxNotification(
                    server_side_ts=datetime.now(timezone.utc),
                    expiration_time=None,
                    transactions=batch.packets,
                )
        finally:
            sub.close()

    async def get_next_scheduled_leader(self, request: Any) -> NextScheduledLeaderResponse:
        raw_slot = await self.read_redis("current_slot")
        if raw_slot is None:
            raise ServiceError.unavailable("current_slot not found")
        current_slot = _parse_u64(raw_slot)
        if current_slot is None:
            raise ServiceError.internal(f"invalid current_slot: {raw_slot!r}")

        next_leader = await self.read_redis("next_leader")
        if next_leader is None:
            raise ServiceError.unavailable("next_leader not found")
        parts = next_leader.split(";")
        if len(parts) < 2:
            raise ServiceError.internal("malformed next_leader")
        abs_slot = _parse_u64(parts[1])
        if abs_slot is None:
            raise ServiceError.internal("invalid slot in next_leader")

        return NextScheduledLeaderResponse(
            current_slot=current_slot,
            next_leader_slot=abs_slot,
            next_leader_identity=parts[0],
            next_leader_region="",
        )

    async def get_connected_leaders(self, request: Any) -> ConnectedLeadersResponse:
        next_leader = await self.read_redis("next_leader")
        if next_leader is None:
            raise ServiceError.unavailable("next_leader not found")
        identity, sep, slot = next_leader.partition(";")
        if not sep:
            raise ServiceError.internal("malformed next_leader")
        abs_slot = _parse_u64(slot)
        if abs_slot is None:
            raise ServiceError.internal("invalid slot")
        return ConnectedLeadersResponse(connected_validators={identity: SlotList(slots=[abs_slot])})

    async def get_connected_leaders_regioned(self, request: Any) -> ConnectedLeadersRegionedResponse:
        inner = await self.get_connected_leaders(None)
        return ConnectedLeadersRegionedResponse(connected_validators={self.local_region: inner})

    async def get_tip_accounts(self, request: Any) -> None:
        """Refuse the query: tip accounts are not served."""
        logger.debug("tip accounts request refused: %r", request)
        raise ServiceError.unimplemented("get_tip_accounts not supported")

    async def get_regions(self, request: Any) -> None:
        """Refuse the query: regions are not served."""
        logger.debug("regions request refused: %r", request)
        raise ServiceError.unimplemented("not implemented")