import asyncio

import pytest

from bundlerelay import metrics
from bundlerelay.base58 import b58encode
from bundlerelay.hub import Broadcast, Hub, Lagged, env_capacity, get_redis_conn
from bundlerelay.packets import Bundle, BundleUuid, Packet, PacketBatch


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


class FakePipeline:
    def __init__(self, store):
        self.store = store
        self.ops = []

    def setex(self, name, ttl, value):
        self.ops.append((name, ttl, value))
        return self

    async def execute(self):
        for name, ttl, value in self.ops:
            self.store[name] = (ttl, value)
        return [True] * len(self.ops)


class FakeRedis:
    def __init__(self):
        self.store = {}

    def pipeline(self, transaction=True):
        return FakePipeline(self.store)


class FakeForwarder:
    def __init__(self):
        self.batches = []

    async def forward_packet(self, batch):
        self.batches.append(batch)


def signed_packet(body):
    return Packet(data=(1).to_bytes(8, "little") + body)


def test_env_capacity(monkeypatch):
    monkeypatch.setenv("HUB_TEST_CAP", "17")
    assert env_capacity("HUB_TEST_CAP", 5) == 17
    monkeypatch.setenv("HUB_TEST_CAP", "many")
    assert env_capacity("HUB_TEST_CAP", 5) == 5
    monkeypatch.setenv("HUB_TEST_CAP", "-3")
    assert env_capacity("HUB_TEST_CAP", 5) == 5
    monkeypatch.delenv("HUB_TEST_CAP")
    assert env_capacity("HUB_TEST_CAP", 5) == 5


@pytest.mark.asyncio
async def test_broadcast_delivers_in_order_to_each_receiver():
    channel = Broadcast(8)
    early = channel.subscribe()
    channel.send("a")
    late = channel.subscribe()
    channel.send("b")
    assert [await early.recv(), await early.recv()] == ["a", "b"]
    assert await late.recv() == "b"


@pytest.mark.asyncio
async def test_broadcast_reports_lag_then_resumes():
    channel = Broadcast(2)
    rx = channel.subscribe()
    for item in (1, 2, 3):
        channel.send(item)
    with pytest.raises(Lagged) as info:
        await rx.recv()
    assert info.value.missed == 1
    assert [await rx.recv(), await rx.recv()] == [2, 3]


def test_broadcast_rejects_zero_capacity():
    with pytest.raises(ValueError):
        Broadcast(0)


@pytest.mark.asyncio
async def test_receiver_waits_for_later_send():
    channel = Broadcast(4)
    rx = channel.subscribe()
    pending = asyncio.ensure_future(rx.recv())
    await asyncio.sleep(0)
    channel.send("late")
    assert await asyncio.wait_for(pending, 1) == "late"


@pytest.mark.asyncio
async def test_close_ends_receivers_and_subscriptions():
    hub = Hub()
    rx = hub.subscribe_packets_arc()
    sub = hub.subscribe_bundles()
    hub.close()
    with pytest.raises(EOFError):
        await rx.recv()
    assert [b async for b in sub] == []


@pytest.mark.asyncio
async def test_bundles_reach_subscriber():
    hub = Hub()
    sub = hub.subscribe_bundles()
    bundle = BundleUuid(bundle=Bundle(packets=[Packet(data=b"x")]), uuid="bundle-1")
    hub.publish_bundle(bundle)
    assert await asyncio.wait_for(sub.get(), 1) == bundle
    hub.close()


@pytest.mark.asyncio
async def test_slow_bundle_subscriber_drops(monkeypatch):
    monkeypatch.setenv("BUNDLE_SUB_CAP", "1")
    hub = Hub()
    sub = hub.subscribe_bundles()
    before = metrics.BUNDLE_DROP_TOTAL.value
    for n in range(3):
        hub.publish_bundle(BundleUuid(uuid=str(n)))
    await wait_until(lambda: metrics.BUNDLE_DROP_TOTAL.value - before == 2)
    assert sub.qsize() == 1
    assert (await sub.get()).uuid == "0"
    hub.close()


@pytest.mark.asyncio
async def test_packet_subscription_copies_and_counts_subscribers():
    hub = Hub()
    sub = hub.subscribe_packets()
    assert hub.packet_subscribers == 1
    assert metrics.SEARCHER_COUNT.value == hub.packet_subscribers
    batch = PacketBatch([Packet(data=b"one"), Packet(data=b"two")])
    before = metrics.PKT_IN_TOTAL.value
    hub.publish_remote_packet(batch)
    got = await asyncio.wait_for(sub.get(), 1)
    assert got == batch
    assert got is not batch
    assert metrics.PKT_IN_TOTAL.value - before == 2
    sub.close()
    await wait_until(lambda: hub.packet_subscribers == 0)
    assert metrics.SEARCHER_COUNT.value == 0
    hub.close()


@pytest.mark.asyncio
async def test_local_packets_are_forwarded():
    forwarder = FakeForwarder()
    hub = Hub(forwarder=forwarder)
    batch = PacketBatch([Packet(data=b"p")])
    hub.publish_local_packet(batch)
    await wait_until(lambda: forwarder.batches)
    assert forwarder.batches == [batch]
    hub.publish_remote_packet(PacketBatch([Packet(data=b"q")]))
    await asyncio.sleep(0.01)
    assert forwarder.batches == [batch]
    hub.close()


@pytest.mark.asyncio
async def test_indexer_stores_signatures(monkeypatch):
    monkeypatch.delenv("PKT_SIG_TTL_SEC", raising=False)
    fake = FakeRedis()

    async def factory():
        return fake

    hub = Hub(redis_factory=factory)
    hub.start()
    body = bytes(range(64))
    hub.publish_remote_packet(PacketBatch([signed_packet(body), Packet(data=b"\x00")]))
    await wait_until(lambda: fake.store)
    sig = b58encode(body)
    assert list(fake.store) == [sig]
    ttl, stamp = fake.store[sig]
    assert ttl == hub.sig_ttl_sec == 3000
    assert stamp.isdigit()
    hub.close()


@pytest.mark.asyncio
async def test_redis_client_is_shared():
    first = await get_redis_conn()
    second = await get_redis_conn()
    assert first is second