"""Packet and bundle messages exchanged between relayers, searchers and validators."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Meta:
    """Transport metadata attached to a packet."""

    size: int = 0
    addr: str = ""
    port: int = 0
    flags: dict[str, bool] | None = None
    sender_stake: int = 0


@dataclass
class Packet:
    """A serialized transaction with optional metadata."""

    data: bytes = b""
    meta: Meta | None = None


@dataclass
class PacketBatch:
    """A group of packets delivered together."""

    packets: list[Packet] = field(default_factory=list)


@dataclass
class Header:
    """Bundle header holding the submission time."""

    ts: datetime | None = None


@dataclass
class Bundle:
    """An ordered set of transactions executed atomically."""

    header: Header | None = None
    packets: list[Packet] = field(default_factory=list)


@dataclass
class BundleUuid:
    """A bundle tagged with its identifier."""

    bundle: Bundle | None = None
    uuid: str = ""