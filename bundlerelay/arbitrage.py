"""Detection and decoding of DEX instructions in packet batches for the arbitrage feed."""

from __future__ import annotations

import hashlib
from collections.abc import Callable
from dataclasses import dataclass, field

from .base58 import b58decode, b58encode
from .packets import Packet, PacketBatch
from .transaction import (
    PUBKEY_LEN,
    TransactionError,
    VersionedTransaction,
    fast_first_signature_b58,
)

RAYDIUM_CLMM = "CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK"
RAYDIUM_CPMM = "CPMMoo8L3F4NbTegBCKVNunggL7H1ZpdTHKxQB5qKP1C"
RAYDIUM_V4 = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"
ORCA_WHIRLPOOL = "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc"
METEORA_DLMM = "LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo"
METEORA_DAMM_V1 = "Eo7WjKq67rjJQSZxS6z3YkapzY3eMj6Xy8X5EQVn5UaB"
METEORA_DAMM_V2 = "cpamdpZCGKUy5JxQXB4dcpGPiikHawvSWAd6mEn1sGG"
SABER_STABLE_SWAP = "SSwpkEEcbUqx4vtoEByFjSkhKdCT862DNVb52nZg1UZ"
CROPPER_WHIRLPOOL = "H8W3ctz92svYg6mkn1UtGfu2aQr2fnUFHM1RhScEtQDt"
MARGINFI_V2 = "MFv2hWf31Z9kbCa1snEPYctyafyhdvnV7FZnsebVacA"
PUMPSWAP = "pAMMBay6oceH9fJKBRHGP5D4bD4sWpmSwMn52FMfXEA"

_LABELLED_PROGRAMS = {
    RAYDIUM_CLMM: "Raydium CLMM",
    RAYDIUM_CPMM: "Raydium CPMM",
    RAYDIUM_V4: "Raydium AMM v4",
    ORCA_WHIRLPOOL: "Orca Whirlpools",
    METEORA_DLMM: "Meteora DLMM",
    METEORA_DAMM_V1: "Meteora Pools v1",
    METEORA_DAMM_V2: "Meteora DAMM v2",
    SABER_STABLE_SWAP: "Saber StableSwap",
    CROPPER_WHIRLPOOL: "Cropper Whirlpool",
    MARGINFI_V2: "marginfi v2",
    PUMPSWAP: "Pump.fun AMM",
}


def _pubkey(text: str) -> bytes | None:
    try:
        raw = b58decode(text)
    except ValueError:
        return None
    return raw if len(raw) == PUBKEY_LEN else None


LABELS: dict[bytes, str] = {
    key: label
    for key, label in ((_pubkey(text), label) for text, label in _LABELLED_PROGRAMS.items())
    if key is not None
}
TARGET_SET: frozenset[bytes] = frozenset(LABELS)
_RAYDIUM_V4_KEY = _pubkey(RAYDIUM_V4)

Attrs = list[tuple[str, str]]
Decoded = tuple[str, Attrs]
Parser = Callable[[bytes], Decoded]


def _int_le(data: bytes, offset: int, size: int, signed: bool = False) -> tuple[int, int]:
    """Read a little-endian integer; on short input yield (0, 0) like the wire decoders do."""
    end = offset + size
    if len(data) < end:
        return 0, 0
    return int.from_bytes(data[offset:end], "little", signed=signed), end


def _flag(data: bytes, offset: int) -> str:
    """Render the boolean byte at offset as "1" or "0"; a missing byte reads as false."""
    chunk = data[offset:offset + 1]
    value = chunk[0] if chunk else 0
    return str(int(value != 0))


def anchor_discriminator(name: str) -> bytes:
    """Return the 8-byte Anchor discriminator of a global instruction name."""
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def _two_u64(method: str, first: str, second: str) -> Parser:
    def parse(rest: bytes) -> Decoded:
        a, offset = _int_le(rest, 0, 8)
        b, _ = _int_le(rest, offset, 8)
        return method, [(first, str(a)), (second, str(b))]

    return parse


def _clmm_swap_v2(rest: bytes) -> Decoded:
    amount, o1 = _int_le(rest, 0, 8)
    threshold, o2 = _int_le(rest, o1, 8)
    sqrt_price, o3 = _int_le(rest, o2, 16)
    return "swap_v2", [
        ("amount", str(amount)),
        ("other_amount_threshold", str(threshold)),
        ("sqrt_price_limit_x64", str(sqrt_price)),
        ("is_base_input", _flag(rest, o3)),
    ]


def _whirlpool_swap(rest: bytes) -> Decoded:
    amount, o1 = _int_le(rest, 0, 8)
    threshold, o2 = _int_le(rest, o1, 8)
    sqrt_price, o3 = _int_le(rest, o2, 16)
    return "swap", [
        ("amount", str(amount)),
        ("other_amount_threshold", str(threshold)),
        ("sqrt_price_limit", str(sqrt_price)),
        ("amount_specified_is_input", _flag(rest, o3)),
        ("a_to_b", _flag(rest, o3 + 1)),
    ]


def _dlmm_initialize_bin_array(rest: bytes) -> Decoded:
    index, _ = _int_le(rest, 0, 8, signed=True)
    return "initialize_bin_array", [("index", str(index))]


def _dlmm_rebalance_liquidity(rest: bytes) -> Decoded:
    active, o1 = _int_le(rest, 0, 4, signed=True)
    slippage, o2 = _int_le(rest, o1, 2)
    fee = _flag(rest, o2)
    reward = _flag(rest, o2 + 1)
    min_x, o3 = _int_le(rest, o2 + 2, 8)
    max_x, o4 = _int_le(rest, o3, 8)
    min_y, o5 = _int_le(rest, o4, 8)
    max_y, _ = _int_le(rest, o5, 8)
    return "rebalance_liquidity", [
        ("active_id", str(active)),
        ("max_active_bin_slippage", str(slippage)),
        ("should_claim_fee", fee),
        ("should_claim_reward", reward),
        ("min_withdraw_x_amount", str(min_x)),
        ("max_deposit_x_amount", str(max_x)),
        ("min_withdraw_y_amount", str(min_y)),
        ("max_deposit_y_amount", str(max_y)),
    ]


def _build_dispatch() -> dict[bytes, dict[bytes, Parser]]:
    tables: dict[str, dict[str, Parser]] = {
        PUMPSWAP: {
            "buy": _two_u64("buy", "base_amount_out", "max_quote_amount_in"),
            "sell": _two_u64("sell", "base_amount_in", "min_quote_amount_out"),
        },
        RAYDIUM_CLMM: {"swap_v2": _clmm_swap_v2},
        RAYDIUM_CPMM: {
            "swap_base_input": _two_u64("swap_base_input", "amount_in", "minimum_amount_out"),
            "swap_base_output": _two_u64("swap_base_output", "max_amount_in", "amount_out"),
        },
        ORCA_WHIRLPOOL: {"swap": _whirlpool_swap},
        METEORA_DLMM: {
            "swap": _two_u64("swap", "amount_in", "min_amount_out"),
            "initialize_bin_array": _dlmm_initialize_bin_array,
            "rebalance_liquidity": _dlmm_rebalance_liquidity,
        },
        METEORA_DAMM_V2: {"swap": _two_u64("swap", "amount_in", "minimum_amount_out")},
        METEORA_DAMM_V1: {"swap": _two_u64("swap", "inAmount", "minimumOutAmount")},
    }
    dispatch: dict[bytes, dict[bytes, Parser]] = {}
    for program, parsers in tables.items():
        key = _pubkey(program)
        if key is None:
            raise ValueError(f"invalid program id {program}")
        dispatch[key] = {anchor_discriminator(name): parser for name, parser in parsers.items()}
    return dispatch


ANCHOR_DISPATCH: dict[bytes, dict[bytes, Parser]] = _build_dispatch()


def decode_anchor(program_id: bytes, data: bytes) -> Decoded | None:
    """Decode an Anchor instruction of a known program, or return None."""
    data = bytes(data)
    if len(data) < 8:
        return None
    parsers = ANCHOR_DISPATCH.get(bytes(program_id))
    if parsers is None:
        return None
    parser = parsers.get(data[:8])
    if parser is None:
        return None
    return parser(data[8:])


def decode_raydium_v4(data: bytes) -> Decoded | None:
    """Decode a Raydium AMM v4 instruction; only the swap tag (9) is understood."""
    data = bytes(data)
    if not data:
        return None
    if data[0] != 9:
        return "unknown", [("tag", str(data[0]))]
    if len(data) < 17:
        return None
    amount_in = int.from_bytes(data[1:9], "little")
    min_out = int.from_bytes(data[9:17], "little")
    return "swap", [("amount_in", str(amount_in)), ("minimum_amount_out", str(min_out))]


@dataclass
class DecodedIx:
    """An instruction to a watched program, with its decoded method and arguments."""

    program_id: bytes = bytes(PUBKEY_LEN)
    program_label: str = ""
    method: str = ""
    attrs: Attrs = field(default_factory=list)
    raw: bytes = b""


@dataclass
class ArbitrageIxKv:
    key: str = ""
    val: str = ""


@dataclass
class ArbitrageIx:
    program_id: str = ""
    program_label: str = ""
    method: str = ""
    attrs: list[ArbitrageIxKv] = field(default_factory=list)
    raw: bytes = b""


@dataclass
class ArbitrageTx:
    signature: str = ""
    raw_tx: bytes = b""
    ixs: list[ArbitrageIx] = field(default_factory=list)


@dataclass
class ArbitrageTxBatch:
    txs: list[ArbitrageTx] = field(default_factory=list)


def _decode_instruction(program_id: bytes, data: bytes) -> DecodedIx:
    label = LABELS.get(program_id, "")
    decoded = decode_anchor(program_id, data)
    if decoded is None and program_id == _RAYDIUM_V4_KEY:
        decoded = decode_raydium_v4(data)
    if decoded is None:
        decoded = ("unknown", [("data_len", str(len(data)))])
    method, attrs = decoded
    return DecodedIx(program_id, label, method, attrs, bytes(data))


def try_filter_tx(packet: Packet) -> tuple[str, list[DecodedIx], bytes] | None:
    """Return (signature, watched instructions, raw bytes) if the packet touches a watched program."""
    signature = fast_first_signature_b58(packet.data)
    if signature is None:
        return None
    try:
        tx = VersionedTransaction.from_bytes(packet.data)
    except TransactionError:
        return None

    keys = tx.message.account_keys
    matched = [
        _decode_instruction(keys[ix.program_id_index], ix.data)
        for ix in tx.message.instructions
        if ix.program_id_index < len(keys) and keys[ix.program_id_index] in TARGET_SET
    ]
    if not matched:
        return None
    return signature, matched, bytes(packet.data)


def _to_message(ix: DecodedIx) -> ArbitrageIx:
    return ArbitrageIx(
        program_id=b58encode(ix.program_id),
        program_label=ix.program_label,
        method=ix.method,
        attrs=[ArbitrageIxKv(key, val) for key, val in ix.attrs],
        raw=ix.raw,
    )


def filter_packet_batch(batch: PacketBatch) -> ArbitrageTxBatch | None:
    """Select the transactions of a batch that touch watched programs; None if there are none."""
    picked = [
        ArbitrageTx(signature=sig, raw_tx=raw, ixs=[_to_message(ix) for ix in ixs])
        for sig, ixs, raw in filter(None, map(try_filter_tx, batch.packets))
    ]
    return ArbitrageTxBatch(picked) if picked else None