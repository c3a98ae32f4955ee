"""Asynchronous, lossy shipping of tracking logs to a ClickHouse HTTP endpoint."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timezone

import aiohttp

logger = logging.getLogger(__name__)

DEFAULT_URL = "http://127.0.0.1:8123"
DEFAULT_USER = "default"
DEFAULT_CAPACITY = 1000
TABLE_QUERY = "INSERT INTO tx_tracking_logs FORMAT JSONEachRow"
_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


def _rfc3339(value: datetime) -> str:
    value = value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += f".{value.microsecond:06d}".rstrip("0")
    return text + "Z"


@dataclass
class ClickhouseLog:
    """One row of the transaction tracking table."""

    tx_sig: str = ""
    bundle_id: str = ""
    stage: str = ""
    node: str = ""
    from_node: str = ""
    from_addr: str = ""
    to_node: str = ""
    to_addr: str = ""
    description: str = ""
    slot: int | None = None
    block_time: datetime | None = None
    timestamp: str = ""

    def to_json(self) -> str:
        """Serialize as a compact JSON object with fields in declaration order."""
        row = {f.name: getattr(self, f.name) for f in fields(self)}
        if self.block_time is not None:
            row["block_time"] = _rfc3339(self.block_time)
        return json.dumps(row, separators=(",", ":"), ensure_ascii=False)


class ClickhouseWriter:
    """A bounded queue of logs drained by a background task that posts each row."""

    def __init__(
        self,
        url: str | None = None,
        user: str | None = None,
        password: str | None = None,
        capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        self.url = url if url is not None else os.environ.get("CLICKHOUSE_URL", DEFAULT_URL)
        self.user = user if user is not None else os.environ.get("CLICKHOUSE_USER", DEFAULT_USER)
        self.password = password if password is not None else os.environ.get("CLICKHOUSE_PASSWORD", "")
        self._queue: asyncio.Queue[ClickhouseLog] = asyncio.Queue(maxsize=capacity)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def insert_url(self) -> str:
        return f"{self.url}/?query={TABLE_QUERY}"

    def submit(self, log: ClickhouseLog) -> bool:
        """Queue a log; return False and drop it when the queue is full."""
        try:
            self._queue.put_nowait(log)
        except asyncio.QueueFull:
            return False
        return True

    async def run(self, session: aiohttp.ClientSession | None = None) -> None:
        """Post queued logs forever, one row per request."""
        if session is not None:
            await self._drain(session)
            return
        timeout = aiohttp.ClientTimeout(connect=3)
        connector = aiohttp.TCPConnector(limit_per_host=64, keepalive_timeout=120)
        async with aiohttp.ClientSession(timeout=timeout, connector=connector) as own:
            await self._drain(own)

    async def _drain(self, session: aiohttp.ClientSession) -> None:
        auth = aiohttp.BasicAuth(self.user, self.password)
        headers = {"Content-Type": "application/json", "Connection": "keep-alive"}
        while True:
            log = await self._queue.get()
            stamped = replace(log, timestamp=datetime.now(timezone.utc).strftime(_TIMESTAMP_FORMAT))
            body = stamped.to_json() + "\n"
            try:
                async with session.post(self.insert_url(), data=body, auth=auth, headers=headers) as resp:
                    await resp.read()
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                logger.warning("ClickHouse write error: %s", exc)


_writer: ClickhouseWriter | None = None
_tasks: set[asyncio.Task] = set()


def init() -> ClickhouseWriter:
    """Create the shared writer (once) and start draining it on the running loop."""
    global _writer
    writer = ClickhouseWriter()
    if _writer is None:
        _writer = writer
    task = asyncio.get_running_loop().create_task(writer.run())
    _tasks.add(task)
    task.add_done_callback(_tasks.discard)
    return _writer


def log_to_clickhouse(log: ClickhouseLog) -> None:
    """Queue a log on the shared writer; silently drop it if there is none or it is full."""
    if _writer is not None:
        _writer.submit(log)


__all__ = ["ClickhouseLog", "ClickhouseWriter", "asdict", "init", "log_to_clickhouse"]