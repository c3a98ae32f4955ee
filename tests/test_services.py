import asyncio

import pytest

from bundlerelay import metrics
from bundlerelay.arbitrage import PUMPSWAP, ArbitrageIxKv, anchor_discriminator
from bundlerelay.base58 import b58decode
from bundlerelay.blacklist import BlacklistStore
from bundlerelay.errors import ServiceError, StatusCode
from bundlerelay.hub import Hub
from bundlerelay.packets import Bundle, BundleUuid, Packet, PacketBatch
from bundlerelay.peers import PacketWrapper
from bundlerelay.services import (
    ArbitrageFeedService,
    BlockEngineService,
    InterRegionService,
    RelayerService,
    StartExpiringPacketStreamResponse,
    arbitrage_stream,
)
from bundlerelay.transaction import (
    CompiledInstruction,
    Message,
    MessageHeader,
    VersionedTransaction,
    packet_from_transaction,
)

BAD = bytes([9] * 32)
GOOD = bytes([3] * 32)
OTHER = bytes([4] * 32)


def tx_packet(keys, instructions=()):
    tx = VersionedTransaction(
        signatures=[bytes([7] * 64)],
        message=Message(
            header=MessageHeader(1, 0, 0),
            account_keys=list(keys),
            instructions=list(instructions),
        ),
    )
    return packet_from_transaction(tx)


async def from_items(*items):
    for item in items:
        yield item


async def broken_inbound():
    yield PacketBatch([Packet(data=b"x")])
    raise RuntimeError("stream reset")


@pytest.mark.asyncio
async def test_relayer_filters_blacklisted_and_publishes():
    hub = Hub()
    service = RelayerService(hub, blacklist=BlacklistStore([BAD]))
    rx = hub.subscribe_packets_arc()
    bad = tx_packet([BAD, OTHER])
    good = tx_packet([GOOD, OTHER])
    stream = await service.start_expiring_packet_stream(
        from_items(None, "heartbeat", PacketBatch([bad, good])), "10.0.0.1:9"
    )
    got = await asyncio.wait_for(rx.recv(), 1)
    assert got.packets == [good]
    await stream.aclose()
    hub.close()


@pytest.mark.asyncio
async def test_relayer_survives_broken_inbound():
    hub = Hub()
    service = RelayerService(hub)
    rx = hub.subscribe_packets_arc()
    stream = await service.start_expiring_packet_stream(broken_inbound())
    got = await asyncio.wait_for(rx.recv(), 1)
    assert got.packets == [Packet(data=b"x")]
    await stream.aclose()
    hub.close()


@pytest.mark.asyncio
async def test_relayer_heartbeats():
    hub = Hub()
    service = RelayerService(hub, heartbeat_interval=0)
    stream = await service.start_expiring_packet_stream(from_items())
    beats = [await stream.__anext__(), await stream.__anext__()]
    assert beats == [StartExpiringPacketStreamResponse(), StartExpiringPacketStreamResponse()]
    await stream.aclose()
    hub.close()


@pytest.mark.asyncio
async def test_accounts_of_interest_unimplemented():
    service = RelayerService(Hub())
    with pytest.raises(ServiceError) as info:
        await service.subscribe_accounts_of_interest(None)
    assert info.value.code == StatusCode.UNIMPLEMENTED


@pytest.mark.asyncio
async def test_programs_of_interest_unimplemented():
    service = RelayerService(Hub())
    with pytest.raises(ServiceError) as info:
        await service.subscribe_programs_of_interest(None)
    assert info.value.code == StatusCode.UNIMPLEMENTED


@pytest.mark.asyncio
async def test_block_engine_streams_bundles_and_counts():
    hub = Hub()
    service = BlockEngineService(hub)
    stream = await service.subscribe_bundles("10.0.0.2:1")
    bundle = BundleUuid(bundle=Bundle(packets=[Packet(data=b"b")]), uuid="u1")
    before = metrics.SEARCHER_BUNDLE_OUT_TOTAL.value
    hub.publish_bundle(bundle)
    assert await asyncio.wait_for(stream.__anext__(), 1) == bundle
    assert metrics.SEARCHER_BUNDLE_OUT_TOTAL.value - before == 1
    await stream.aclose()
    hub.close()


@pytest.mark.asyncio
async def test_inter_region_ignores_own_region():
    hub = Hub()
    service = InterRegionService(hub, local_region="NYC")
    rx = hub.subscribe_packets_arc()
    own = PacketBatch([Packet(data=b"own")])
    remote = PacketBatch([Packet(data=b"remote")])
    await service.send_packet(PacketWrapper(src_region="NYC", batch=own))
    await service.send_packet(PacketWrapper(src_region="FRA", batch=None))
    await service.send_packet(PacketWrapper(src_region="FRA", batch=remote))
    assert await asyncio.wait_for(rx.recv(), 1) == remote
    hub.close()


@pytest.mark.asyncio
async def test_inter_region_bundle_published():
    hub = Hub()
    service = InterRegionService(hub, local_region="NYC")
    sub = hub.subscribe_bundles()
    bundle = BundleUuid(uuid="remote-bundle")
    await service.send_bundle(bundle)
    assert await asyncio.wait_for(sub.get(), 1) == bundle
    hub.close()


def pump_buy_packet():
    data = anchor_discriminator("buy") + (5).to_bytes(8, "little") + (7).to_bytes(8, "little")
    return tx_packet([GOOD, b58decode(PUMPSWAP)], [CompiledInstruction(1, b"\x00", data)])


@pytest.mark.asyncio
async def test_arbitrage_feed_yields_only_matching_batches():
    hub = Hub()
    stream = await ArbitrageFeedService(hub).subscribe_arbitrage()
    hub.publish_remote_packet(PacketBatch([tx_packet([GOOD, OTHER])]))
    packet = pump_buy_packet()
    hub.publish_remote_packet(PacketBatch([packet]))
    batch = await asyncio.wait_for(stream.__anext__(), 1)
    assert len(batch.txs) == 1
    tx = batch.txs[0]
    assert tx.raw_tx == packet.data
    assert tx.ixs[0].program_id == PUMPSWAP
    assert tx.ixs[0].method == "buy"
    assert tx.ixs[0].attrs == [
        ArbitrageIxKv("base_amount_out", "5"),
        ArbitrageIxKv("max_quote_amount_in", "7"),
    ]
    await stream.aclose()
    hub.close()


@pytest.mark.asyncio
async def test_arbitrage_stream_ends_when_hub_closes():
    hub = Hub()
    stream = arbitrage_stream(hub)
    hub.close()
    assert [batch async for batch in stream] == []