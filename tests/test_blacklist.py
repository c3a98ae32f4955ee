import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from bundlerelay.arbitrage import PUMPSWAP, RAYDIUM_V4
from bundlerelay.base58 import b58decode
from bundlerelay.blacklist import (
    BlacklistStore,
    bundle_has_blacklisted,
    filter_batch,
    parse_blacklist,
    refresh_once,
)
from bundlerelay.packets import Packet, PacketBatch
from bundlerelay.transaction import Message, MessageHeader, VersionedTransaction

KEY_A = b58decode(RAYDIUM_V4)
KEY_B = b58decode(PUMPSWAP)
KEY_C = bytes(range(32))


def _packet(*keys):
    tx = VersionedTransaction(
        signatures=[bytes(64)],
        message=Message(header=MessageHeader(1, 0, 0), account_keys=list(keys)),
    )
    return Packet(data=tx.to_bytes())


def test_parse_data_strings_and_objects():
    payload = {"data": [RAYDIUM_V4, {"address": PUMPSWAP}, "not-base58!", 5, "1111"]}
    assert parse_blacklist(payload) == {KEY_A, KEY_B}


def test_parse_wallets():
    assert parse_blacklist({"wallets": [PUMPSWAP, {"address": RAYDIUM_V4}]}) == {KEY_B}


def test_parse_non_list_data_falls_back_to_wallets():
    assert parse_blacklist({"data": "x", "wallets": [RAYDIUM_V4]}) == {KEY_A}


def test_parse_unknown_shape_is_empty():
    assert parse_blacklist({"other": [RAYDIUM_V4]}) == set()
    assert parse_blacklist([RAYDIUM_V4]) == set()


def test_store_replace_and_snapshot():
    store = BlacklistStore()
    before = store.snapshot()
    store.replace([KEY_A, KEY_A])
    assert store.snapshot() == {KEY_A}
    assert before == frozenset()


def test_filter_batch_empty_store_returns_same_batch():
    batch = PacketBatch([_packet(KEY_A)])
    assert filter_batch(batch, BlacklistStore()) is batch


def test_filter_batch_drops_blacklisted():
    store = BlacklistStore([KEY_A])
    bad = _packet(KEY_C, KEY_A)
    good = _packet(KEY_B, KEY_C)
    garbage = Packet(data=b"\xff\xff")
    result = filter_batch(PacketBatch([bad, good, garbage]), store)
    assert result.packets == [good, garbage]


def test_bundle_has_blacklisted():
    store = BlacklistStore([KEY_B])
    assert bundle_has_blacklisted([_packet(KEY_A), _packet(KEY_B)], store) is True
    assert bundle_has_blacklisted([_packet(KEY_A), _packet(KEY_C)], store) is False
    assert bundle_has_blacklisted([_packet(KEY_B)], BlacklistStore()) is False


@pytest.mark.asyncio
async def test_refresh_without_key_keeps_store():
    store = BlacklistStore([KEY_C])
    assert await refresh_once("http://127.0.0.1:1", "", store) is None
    assert store.snapshot() == {KEY_C}


@pytest.mark.asyncio
async def test_refresh_fetches_and_replaces():
    seen = {}

    async def handler(request):
        seen["api_key"] = request.query.get("api_key")
        return web.json_response({"data": [RAYDIUM_V4, {"address": PUMPSWAP}]})

    app = web.Application()
    app.router.add_get("/api/blacklists", handler)
    store = BlacklistStore([KEY_C])
    async with TestServer(app) as server:
        count = await refresh_once(f"http://{server.host}:{server.port}", "placeholder", store)
    assert seen["api_key"] == "placeholder"
    assert store.snapshot() == {KEY_A, KEY_B}
    assert count == len(store.snapshot())