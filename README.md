# bundlerelay

`bundlerelay` is an asyncio library for a node that sits between a packet
relayer, searchers and a block engine. It takes in batches of serialized
transactions, fans them out to subscribers, accepts bundles from searchers,
screens them, and hands them to the local bundle stream or to a peer node in
the region of the next leader.

## Modules

- `bundlerelay.hub`: `Hub` holds two bounded broadcast rings (`Broadcast`),
  one for packet batches and one for bundles.
  `subscribe_packets()` and `subscribe_bundles()` return bounded subscriptions
  that can be iterated with `async for` or read with `await sub.get()`; when a
  subscription is full, new items are dropped for it and counted in
  `packet_drop_total` / `bundle_drop_total` instead of blocking the publisher.
  `subscribe_packets_arc()` returns a raw `BroadcastReceiver` whose `recv()`
  raises `Lagged` when items were overwritten and `EOFError` once the hub is
  closed. After `Hub.start()`, a background task writes the first signature of
  every published transaction to Redis (`SETEX <signature> PKT_SIG_TTL_SEC
  <ms timestamp>`). `publish_local_packet()` also passes the batch to the
  optional `forwarder` (for example a `PeerManager`); `publish_remote_packet()`
  does not. `Hub.close()` ends all subscriptions and stops the indexer.
- `bundlerelay.searcher`: `SearcherService.send_bundle()` gives each bundle a
  64-character hex id (`bundlerelay.ids.gen_bundle_uuid`), drops bundles that
  touch a blacklisted wallet (status `dropped_blacklist`), and drops bundles in
  which a transaction already seen in the packet stream follows one of the
  searcher's own (`detect_front_run`, status `dropped`). Otherwise it reads
  `next_leader` and `<identity>_region` from Redis, fills in a missing header
  timestamp, publishes the bundle on the hub if the leader is in the local
  region or passes it to `peers.forward_bundle()`, and records the bundle in
  Redis. It also streams pending packets (`subscribe_pending_transactions`)
  and answers `get_next_scheduled_leader`, `get_connected_leaders` and
  `get_connected_leaders_regioned`. `get_tip_accounts` and `get_regions`
  raise `UNIMPLEMENTED`; `subscribe_bundle_results` is an empty stream.
- `bundlerelay.services`: `RelayerService` consumes a relayer's inbound
  stream (blacklist-filtering each `PacketBatch` into the hub) and returns a
  heartbeat stream; `BlockEngineService` streams accepted bundles;
  `InterRegionService` accepts packets and bundles from other regions,
  ignoring packets that came from its own region; `ArbitrageFeedService` and
  `arbitrage_stream()` stream the DEX-touching part of each packet batch.
- `bundlerelay.blacklist`: `BlacklistStore`, `parse_blacklist()`,
  `refresh_once()`, `run_refresh_loop()` and `init()` keep a set of wallet keys
  fetched from `<host>/api/blacklists?api_key=<key>`. `filter_batch()` and
  `bundle_has_blacklisted()` check each transaction's static account keys
  against it; transactions that cannot be decoded are kept.
- `bundlerelay.transaction`: reads and writes legacy and v0 transactions
  (`VersionedTransaction.from_bytes` / `to_bytes`, raising `TransactionError`).
  `fast_first_signature_b58()` first tries an 8-byte little-endian length
  prefix followed by a 64-byte signature and otherwise falls back to a full
  decode; `extract_static_account_keys()` returns the static account keys;
  `packet_from_transaction()` wraps a transaction in a `Packet`.
- `bundlerelay.arbitrage`: `try_filter_tx()` and `filter_packet_batch()` pick
  out transactions calling watched programs (Raydium CLMM, CPMM and AMM v4,
  Orca Whirlpools, Meteora DLMM, Pools v1 and DAMM v2, Saber StableSwap,
  Cropper Whirlpool, marginfi v2, Pump.fun AMM). Instructions with a known
  Anchor discriminator (`anchor_discriminator`, `decode_anchor`) or a Raydium
  AMM v4 swap (`decode_raydium_v4`) get their arguments decoded; other
  instructions to those programs are reported as `unknown` with their data
  length.
- `bundlerelay.peers`: `PeerManager` keeps one client per other searcher
  region listed at `<api_host>/api/nodes?api_key=<key>`, using the `connect`
  coroutine you supply, and forwards packets (`PacketWrapper`) and bundles.
- `bundlerelay.region`: `find_region()`, `detect_region()` and the cached
  `local_region()` (`UNKNOWN` when detection fails).
- `bundlerelay.metrics`: `Counter`, `Gauge`, `Histogram` and `Registry`
  rendered in the Prometheus text format, the shared counters of the node,
  `metrics_app()` (an aiohttp application answering every path) and
  `serve(addr)`.
- `bundlerelay.clickhouse`: `ClickhouseLog` rows and `ClickhouseWriter`, a
  bounded queue posted one row per request to
  `INSERT INTO tx_tracking_logs FORMAT JSONEachRow`. `init()` starts the
  shared writer; `log_to_clickhouse()` drops rows when there is no writer or
  its queue is full.
- `bundlerelay.packets`, `bundlerelay.errors`, `bundlerelay.base58`,
  `bundlerelay.ids`: the message dataclasses, `ServiceError` with its
  `StatusCode`, base58 encoding and bundle ids.

## Quick look

```python
import asyncio

from bundlerelay.hub import Hub
from bundlerelay.packets import PacketBatch
from bundlerelay.transaction import Message, VersionedTransaction, packet_from_transaction


async def main() -> None:
    hub = Hub()
    sub = hub.subscribe_packets()

    tx = VersionedTransaction(signatures=[bytes(64)], message=Message(account_keys=[bytes(32)]))
    hub.publish_remote_packet(PacketBatch(packets=[packet_from_transaction(tx)]))

    batch = await sub.get()
    print(len(batch.packets))
    hub.close()


asyncio.run(main())
```

Service methods report failures by raising `bundlerelay.errors.ServiceError`,
whose `code` is a `StatusCode` such as `UNAVAILABLE`, `INTERNAL` or
`UNIMPLEMENTED`.

## Configuration

Settings are read from environment variables where a constructor argument is
not given.

| Variable | Default | Read by |
| --- | --- | --- |
| `REDIS_SERVER` | `redis://127.0.0.1/` | `hub.get_redis_conn` |
| `MEVITY_HOST` | `https://` | `blacklist.init`, `region.detect_region` |
| `MEVITY_API_KEY` | unset | `blacklist.init` (no key: the blacklist stays empty), `region.detect_region` (no key: region unknown) |
| `BLACKLIST_REFRESH_SECS` | `3600` | `blacklist.init` |
| `PACKET_RING_CAP` | `2048` | `Hub` |
| `BUNDLE_RING_CAP` | `1024` | `Hub` |
| `PACKET_SUB_CAP` | `512` | `Hub.subscribe_packets` |
| `BUNDLE_SUB_CAP` | `1024` | `Hub.subscribe_bundles` |
| `SIG_INDEX_Q_CAP` | `4096` | `Hub` |
| `PKT_SIG_TTL_SEC` | `3000` | `Hub` |
| `CLICKHOUSE_URL` | `http://127.0.0.1:8123` | `ClickhouseWriter` |
| `CLICKHOUSE_USER` | `default` | `ClickhouseWriter` |
| `CLICKHOUSE_PASSWORD` | empty | `ClickhouseWriter` |

## Redis keys

- `<signature>`: millisecond timestamp of when the transaction was seen.
- `<bundle id>`: the bundle's signatures joined with `;` (six hours).
- `<bundle id>_status`: `submitted`, `dropped` or `dropped_blacklist` (six hours).
- `bundle_queue`: list of accepted bundle ids.
- `next_leader` is read as `<identity>;<slot>`; `current_slot` and
  `<identity>_region` are read as well.

## What it does not do

- There is no command to run and no process entry point; you assemble a node
  yourself from `Hub`, the service classes, `blacklist.init()`,
  `clickhouse.init()` and `metrics.serve()`.
- There is no RPC transport. The service classes are plain asyncio objects
  that take and return the dataclasses in `bundlerelay.packets`,
  `bundlerelay.searcher` and `bundlerelay.services`; exposing them over the
  network, and providing the `connect` coroutine that `PeerManager` uses to
  reach other regions, is left to you.

## Tests

The test suite uses pytest and pytest-asyncio, available through the `test`
extra:

```
pip install -e .[test]
pytest
```