"""A periodically refreshed set of blacklisted wallets and packet filtering against it."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from collections.abc import Iterable
from typing import Any

import aiohttp

from .base58 import b58decode
from .packets import Packet, PacketBatch
from .transaction import PUBKEY_LEN, extract_static_account_keys

logger = logging.getLogger(__name__)

REFRESH_SECS_DEFAULT = 3600
_MAX_PUBKEY_TEXT = 44


class BlacklistStore:
    """A thread-safe, atomically replaced set of public keys."""

    def __init__(self, keys: Iterable[bytes] = ()) -> None:
        self._lock = threading.Lock()
        self._keys: frozenset[bytes] = frozenset(keys)

    def snapshot(self) -> frozenset[bytes]:
        with self._lock:
            return self._keys

    def replace(self, keys: Iterable[bytes]) -> None:
        new = frozenset(keys)
        with self._lock:
            self._keys = new


BLACKLIST = BlacklistStore()


def _parse_pubkey(text: Any) -> bytes | None:
    if not isinstance(text, str) or len(text) > _MAX_PUBKEY_TEXT:
        return None
    try:
        raw = b58decode(text)
    except ValueError:
        return None
    return raw if len(raw) == PUBKEY_LEN else None


def parse_blacklist(payload: Any) -> set[bytes]:
    """Read keys from ``{"data": [str | {"address": str}]}`` or ``{"wallets": [str]}``."""
    if not isinstance(payload, dict):
        return set()
    data = payload.get("data")
    if isinstance(data, list):
        texts = (
            item if isinstance(item, str) else item.get("address") if isinstance(item, dict) else None
            for item in data
        )
    elif isinstance(payload.get("wallets"), list):
        texts = iter(payload["wallets"])
    else:
        return set()
    return {key for key in map(_parse_pubkey, texts) if key is not None}


async def refresh_once(host: str, key: str, store: BlacklistStore | None = None) -> int | None:
    """Fetch the blacklist and replace the store; return its size, or None when no key is set."""
    store = store if store is not None else BLACKLIST
    if not key:
        logger.warning("MEVITY_API_KEY not set; blacklist disabled")
        return None
    url = f"{host}/api/blacklists?api_key={key}"
    async with aiohttp.ClientSession() as session:
        async with session.get(url) as resp:
            payload = await resp.json(content_type=None)
    store.replace(parse_blacklist(payload))
    count = len(store.snapshot())
    logger.info("blacklist refreshed: %d wallet(s)", count)
    return count


async def run_refresh_loop(
    host: str, key: str, interval: float, store: BlacklistStore | None = None
) -> None:
    """Refresh forever, logging failures and waiting ``interval`` seconds between rounds."""
    while True:
        try:
            await refresh_once(host, key, store)
        except Exception as exc:  # noqa: BLE001 - a failed round must not stop the loop
            logger.warning("blacklist refresh error: %s", exc)
        await asyncio.sleep(interval)


_tasks: set[asyncio.Task] = set()


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ[name])
    except (KeyError, ValueError):
        return default


def init() -> asyncio.Task:
    """Start the background refresh of the shared blacklist on the running loop."""
    host = os.environ.get("MEVITY_HOST", "https://")
    key = os.environ.get("MEVITY_API_KEY", "")
    interval = _env_int("BLACKLIST_REFRESH_SECS", REFRESH_SECS_DEFAULT)
    task = asyncio.get_running_loop().create_task(run_refresh_loop(host, key, interval))
    _tasks.add(task)
    task.add_done_callback(_tasks.discard)
    return task


def _is_blacklisted(packet: Packet, keys: frozenset[bytes]) -> bool:
    accounts = extract_static_account_keys(packet.data)
    return accounts is not None and any(account in keys for account in accounts)


def filter_batch(batch: PacketBatch, store: BlacklistStore | None = None) -> PacketBatch:
    """Drop packets touching a blacklisted account; undecodable packets are kept."""
    keys = (store if store is not None else BLACKLIST).snapshot()
    if not keys:
        return batch
    return PacketBatch(packets=[p for p in batch.packets if not _is_blacklisted(p, keys)])


def bundle_has_blacklisted(packets: Iterable[Packet], store: BlacklistStore | None = None) -> bool:
    """Tell whether any packet touches a blacklisted account."""
    keys = (store if store is not None else BLACKLIST).snapshot()
    if not keys:
        return False
    return any(_is_blacklisted(p, keys) for p in packets)