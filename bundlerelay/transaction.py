"""Wire encoding of versioned transactions and fast field extraction."""

from __future__ import annotations

from dataclasses import dataclass, field

from .base58 import b58encode
from .packets import Meta, Packet

SIGNATURE_LEN = 64
PUBKEY_LEN = 32
HASH_LEN = 32
_VERSION_PREFIX = 0x80


class TransactionError(ValueError):
    """Raised when transaction bytes cannot be decoded or encoded."""


def _short_u16(value: int) -> bytes:
    if not 0 <= value <= 0xFFFF:
        raise TransactionError(f"length {value} does not fit in compact-u16")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _u8(value: int, what: str) -> int:
    if not 0 <= value <= 0xFF:
        raise TransactionError(f"{what} {value} does not fit in a byte")
    return value


def _fixed(value: bytes, size: int, what: str) -> bytes:
    if len(value) != size:
        raise TransactionError(f"{what} must be {size} bytes, got {len(value)}")
    return bytes(value)


def _byte_vec(value: bytes) -> bytes:
    return _short_u16(len(value)) + bytes(value)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = bytes(data)
        self._pos = 0

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise TransactionError("unexpected end of data")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def short_u16(self) -> int:
        value = 0
        for shift in (0, 7, 14):
            byte = self.u8()
            value |= (byte & 0x7F) << shift
            if not byte & 0x80:
                if byte == 0 and shift:
                    raise TransactionError("non-canonical compact-u16")
                if value > 0xFFFF:
                    raise TransactionError("compact-u16 overflow")
                return value
        raise TransactionError("compact-u16 longer than three bytes")

    def byte_vec(self) -> bytes:
        return self.take(self.short_u16())


@dataclass
class MessageHeader:
    num_required_signatures: int = 0
    num_readonly_signed_accounts: int = 0
    num_readonly_unsigned_accounts: int = 0


@dataclass
class CompiledInstruction:
    program_id_index: int = 0
    accounts: bytes = b""
    data: bytes = b""


@dataclass
class AddressTableLookup:
    account_key: bytes = bytes(PUBKEY_LEN)
    writable_indexes: bytes = b""
    readonly_indexes: bytes = b""


@dataclass
class Message:
    """A transaction message; ``version`` is None for legacy messages and 0 for v0."""

    header: MessageHeader = field(default_factory=MessageHeader)
    account_keys: list[bytes] = field(default_factory=list)
    recent_blockhash: bytes = bytes(HASH_LEN)
    instructions: list[CompiledInstruction] = field(default_factory=list)
    address_table_lookups: list[AddressTableLookup] = field(default_factory=list)
    version: int | None = None

    def _encode(self) -> bytes:
        out = bytearray()
        if self.version is None:
            if self.address_table_lookups:
                raise TransactionError("legacy messages have no address table lookups")
            if self.header.num_required_signatures >= _VERSION_PREFIX:
                raise TransactionError("legacy message requires fewer than 128 signatures")
        elif self.version == 0:
            out.append(_VERSION_PREFIX)
        else:
            raise TransactionError(f"unsupported message version {self.version}")

        out.append(_u8(self.header.num_required_signatures, "num_required_signatures"))
        out.append(_u8(self.header.num_readonly_signed_accounts, "num_readonly_signed_accounts"))
        out.append(_u8(self.header.num_readonly_unsigned_accounts, "num_readonly_unsigned_accounts"))

        out += _short_u16(len(self.account_keys))
        for key in self.account_keys:
            out += _fixed(key, PUBKEY_LEN, "account key")
        out += _fixed(self.recent_blockhash, HASH_LEN, "recent blockhash")

        out += _short_u16(len(self.instructions))
        for ix in self.instructions:
            out.append(_u8(ix.program_id_index, "program_id_index"))
            out += _byte_vec(ix.accounts)
            out += _byte_vec(ix.data)

        if self.version is not None:
            out += _short_u16(len(self.address_table_lookups))
            for lookup in self.address_table_lookups:
                out += _fixed(lookup.account_key, PUBKEY_LEN, "lookup table key")
                out += _byte_vec(lookup.writable_indexes)
                out += _byte_vec(lookup.readonly_indexes)
        return bytes(out)

    @classmethod
    def _decode(cls, reader: _Reader) -> Message:
        prefix = reader.u8()
        if prefix & _VERSION_PREFIX:
            version: int | None = prefix & 0x7F
            if version != 0:
                raise TransactionError(f"unsupported message version {version}")
            num_required = reader.u8()
        else:
            version = None
            num_required = prefix
        header = MessageHeader(num_required, reader.u8(), reader.u8())

        keys = [reader.take(PUBKEY_LEN) for _ in range(reader.short_u16())]
        blockhash = reader.take(HASH_LEN)
        instructions = [
            CompiledInstruction(reader.u8(), reader.byte_vec(), reader.byte_vec())
            for _ in range(reader.short_u16())
        ]
        lookups = []
        if version is not None:
            lookups = [
                AddressTableLookup(reader.take(PUBKEY_LEN), reader.byte_vec(), reader.byte_vec())
                for _ in range(reader.short_u16())
            ]
        return cls(header, keys, blockhash, instructions, lookups, version)


@dataclass
class VersionedTransaction:
    """Signatures plus a legacy or v0 message."""

    signatures: list[bytes] = field(default_factory=list)
    message: Message = field(default_factory=Message)

    @classmethod
    def from_bytes(cls, data: bytes) -> VersionedTransaction:
        """Decode a transaction; bytes after the message are ignored."""
        reader = _Reader(data)
        signatures = [reader.take(SIGNATURE_LEN) for _ in range(reader.short_u16())]
        return cls(signatures, Message._decode(reader))

    def to_bytes(self) -> bytes:
        out = bytearray(_short_u16(len(self.signatures)))
        for sig in self.signatures:
            out += _fixed(sig, SIGNATURE_LEN, "signature")
        out += self.message._encode()
        return bytes(out)


def fast_first_signature_b58(data: bytes) -> str | None:
    """Return the first signature in base58, reading a u64 length prefix and
    falling back to a full decode."""
    raw = bytes(data)
    if len(raw) >= 8 + SIGNATURE_LEN and int.from_bytes(raw[:8], "little") > 0:
        return b58encode(raw[8:8 + SIGNATURE_LEN])
    try:
        tx = VersionedTransaction.from_bytes(raw)
    except TransactionError:
        return None
    return b58encode(tx.signatures[0]) if tx.signatures else None


def extract_static_account_keys(data: bytes) -> list[bytes] | None:
    """Return the static account keys of a serialized transaction, or None."""
    try:
        return VersionedTransaction.from_bytes(data).message.account_keys
    except TransactionError:
        return None


def packet_from_transaction(tx: VersionedTransaction) -> Packet:
    """Wrap a transaction's serialized bytes in a packet."""
    data = tx.to_bytes()
    return Packet(data=data, meta=Meta(size=len(data), addr="", port=0, flags=None, sender_stake=0))