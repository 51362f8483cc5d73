"""Key and value layouts of the rows kept in the index databases.

Keys are laid out so that a bytewise ordering of the store groups related
rows together: history keys carry their height big-endian so that a prefix
scan walks a script's history in block order.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Union

from chainindex.chain import OutPoint, Transaction, TxOut
from chainindex.db import DBRow

HASH_LEN = 32
U32_MAX = 0xFFFFFFFF

CODE_TX = ord("T")
CODE_CONF = ord("C")
CODE_TXOUT = ord("O")
CODE_BLOCK_HEADER = ord("B")
CODE_BLOCK_TXIDS = ord("X")
CODE_BLOCK_META = ord("M")
CODE_BLOCK_DONE = ord("D")
CODE_HISTORY = ord("H")
CODE_EDGE = ord("S")
CODE_STATS_CACHE = ord("A")
CODE_UTXO_CACHE = ord("U")

_FUNDING_TAG = 0
_SPENDING_TAG = 1


def _full_hash(data: bytes) -> bytes:
    data = bytes(data)
    if len(data) != HASH_LEN:
        raise ValueError(f"expected a {HASH_LEN}-byte hash, got {len(data)} bytes")
    return data


def _sized_hash(data: bytes) -> bytes:
    # Hashes are written as length-prefixed byte strings inside values.
    return struct.pack("<Q", HASH_LEN) + _full_hash(data)


class _Reader:
    """Sequential reader over an encoded key or value."""

    def __init__(self, data: bytes, order: str) -> None:
        self._data = bytes(data)
        self._pos = 0
        self._order = order

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise ValueError("unexpected end of data")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def uint(self, fmt: str) -> int:
        (value,) = struct.unpack(self._order + fmt, self.take(struct.calcsize(fmt)))
        return value

    def hash(self) -> bytes:
        return self.take(HASH_LEN)

    def sized_hash(self) -> bytes:
        size = self.uint("Q")
        if size != HASH_LEN:
            raise ValueError(f"invalid hash length {size}")
        return self.take(HASH_LEN)

    def finish(self) -> None:
        if self._pos != len(self._data):
            raise ValueError("trailing data")


def compute_script_hash(script: bytes) -> bytes:
    """Return the SHA-256 of an output script, the key of its history."""
    return hashlib.sha256(bytes(script)).digest()


@dataclass(frozen=True)
class FundingInfo:
    """A transaction output paying to a script."""

    txid: bytes
    vout: int
    value: int

    def _encode(self) -> bytes:
        return (
            struct.pack(">I", _FUNDING_TAG)
            + _full_hash(self.txid)
            + struct.pack(">HQ", self.vout, self.value)
        )


@dataclass(frozen=True)
class SpendingInfo:
    """A transaction input spending an output of a script."""

    txid: bytes
    vin: int
    prev_txid: bytes
    prev_vout: int
    value: int

    def _encode(self) -> bytes:
        return (
            struct.pack(">I", _SPENDING_TAG)
            + _full_hash(self.txid)
            + struct.pack(">H", self.vin)
            + _full_hash(self.prev_txid)
            + struct.pack(">HQ", self.prev_vout, self.value)
        )


TxHistoryInfo = Union[FundingInfo, SpendingInfo]


def _read_txinfo(reader: _Reader) -> TxHistoryInfo:
    tag = reader.uint("I")
    if tag == _FUNDING_TAG:
        txid = reader.hash()
        vout = reader.uint("H")
        return FundingInfo(txid, vout, reader.uint("Q"))
    if tag == _SPENDING_TAG:
        txid = reader.hash()
        vin = reader.uint("H")
        prev_txid = reader.hash()
        prev_vout = reader.uint("H")
        return SpendingInfo(txid, vin, prev_txid, prev_vout, reader.uint("Q"))
    raise ValueError(f"unknown history entry kind {tag}")


@dataclass(frozen=True)
class TxHistoryKey:
    """Key of a history row: ``code``, script hash, height and entry."""

    code: int
    hash: bytes
    confirmed_height: int
    txinfo: TxHistoryInfo


@dataclass(frozen=True)
class TxHistoryRow:
    """One funding or spending event in the history of a script."""

    key: TxHistoryKey

    @staticmethod
    def filter(code: int, hash_prefix: bytes) -> bytes:
        return bytes([code]) + bytes(hash_prefix)

    @staticmethod
    def prefix_height(code: int, hash: bytes, height: int) -> bytes:
        return bytes([code]) + _full_hash(hash) + struct.pack(">I", height)

    @staticmethod
    def prefix_end(code: int, hash: bytes) -> bytes:
        return TxHistoryRow.prefix_height(code, hash, U32_MAX)

    def to_row(self) -> DBRow:
        key = self.key
        encoded = (
            TxHistoryRow.prefix_height(key.code, key.hash, key.confirmed_height)
            + key.txinfo._encode()
        )
        return DBRow(encoded, b"")

    @classmethod
    def from_row(cls, row: DBRow) -> TxHistoryRow:
        reader = _Reader(row.key, ">")
        code = reader.uint("B")
        script_hash = reader.hash()
        height = reader.uint("I")
        txinfo = _read_txinfo(reader)
        reader.finish()
        return cls(TxHistoryKey(code, script_hash, height, txinfo))

    def txid(self) -> bytes:
        return self.key.txinfo.txid

    def funded_outpoint(self) -> OutPoint:
        """The funded output, or for spending rows the output that was spent."""
        info = self.key.txinfo
        if isinstance(info, FundingInfo):
            return OutPoint(info.txid, info.vout)
        return OutPoint(info.prev_txid, info.prev_vout)


@dataclass(frozen=True)
class TxRow:
    """A raw transaction, keyed by its txid."""

    tx: Transaction

    @staticmethod
    def key(txid: bytes) -> bytes:
        return bytes([CODE_TX]) + bytes(txid)

    def to_row(self) -> DBRow:
        return DBRow(TxRow.key(self.tx.txid()), self.tx.serialize())


@dataclass(frozen=True)
class TxConfRow:
    """Marks that a transaction was confirmed in a block."""

    txid: bytes
    blockhash: bytes

    @staticmethod
    def filter(txid: bytes) -> bytes:
        return bytes([CODE_CONF]) + bytes(txid)

    def to_row(self) -> DBRow:
        return DBRow(
            bytes([CODE_CONF]) + _full_hash(self.txid) + _full_hash(self.blockhash), b""
        )

    @classmethod
    def from_row(cls, row: DBRow) -> TxConfRow:
        reader = _Reader(row.key, "<")
        code = reader.uint("B")
        if code != CODE_CONF:
            raise ValueError(f"not a confirmation row: code {code}")
        txid = reader.hash()
        blockhash = reader.hash()
        reader.finish()
        return cls(txid, blockhash)


@dataclass(frozen=True)
class TxOutRow:
    """A spendable transaction output, keyed by its outpoint."""

    txid: bytes
    vout: int
    txout: TxOut

    @staticmethod
    def key(outpoint: OutPoint) -> bytes:
        return (
            bytes([CODE_TXOUT])
            + _full_hash(outpoint.txid)
            + struct.pack("<H", outpoint.vout & 0xFFFF)
        )

    def to_row(self) -> DBRow:
        return DBRow(TxOutRow.key(OutPoint(self.txid, self.vout)), self.txout.serialize())


@dataclass(frozen=True)
class BlockRow:
    """A per-block row: header, txid list, metadata or the done marker."""

    code: int
    hash: bytes
    value: bytes = b""

    @staticmethod
    def txids_key(blockhash: bytes) -> bytes:
        return bytes([CODE_BLOCK_TXIDS]) + bytes(blockhash)

    @staticmethod
    def meta_key(blockhash: bytes) -> bytes:
        return bytes([CODE_BLOCK_META]) + bytes(blockhash)

    def to_row(self) -> DBRow:
        return DBRow(bytes([self.code]) + _full_hash(self.hash), bytes(self.value))

    @classmethod
    def from_row(cls, row: DBRow) -> BlockRow:
        reader = _Reader(row.key, "<")
        code = reader.uint("B")
        blockhash = reader.hash()
        reader.finish()
        return cls(code, blockhash, row.value)


def encode_txids(txids: Iterable[bytes]) -> bytes:
    """Encode the txid list stored as the value of a block's txids row."""
    txids = list(txids)
    return struct.pack("<Q", len(txids)) + b"".join(_sized_hash(txid) for txid in txids)


def decode_txids(data: bytes) -> list[bytes]:
    """Decode a value written by :func:`encode_txids`."""
    reader = _Reader(data, "<")
    txids = [reader.sized_hash() for _ in range(reader.uint("Q"))]
    reader.finish()
    return txids


@dataclass(frozen=True)
class TxEdgeRow:
    """Links a funding output to the input that spends it."""

    funding_txid: bytes
    funding_vout: int
    spending_txid: bytes
    spending_vin: int

    @staticmethod
    def filter(outpoint: OutPoint) -> bytes:
        return (
            bytes([CODE_EDGE])
            + _full_hash(outpoint.txid)
            + struct.pack("<H", outpoint.vout & 0xFFFF)
        )

    def to_row(self) -> DBRow:
        key = (
            TxEdgeRow.filter(OutPoint(self.funding_txid, self.funding_vout))
            + _full_hash(self.spending_txid)
            + struct.pack("<H", self.spending_vin)
        )
        return DBRow(key, b"")

    @classmethod
    def from_row(cls, row: DBRow) -> TxEdgeRow:
        reader = _Reader(row.key, "<")
        code = reader.uint("B")
        if code != CODE_EDGE:
            raise ValueError(f"not an edge row: code {code}")
        funding_txid = reader.hash()
        funding_vout = reader.uint("H")
        spending_txid = reader.hash()
        spending_vin = reader.uint("H")
        reader.finish()
        return cls(funding_txid, funding_vout, spending_txid, spending_vin)


_STATS_FORMAT = "<5Q"


@dataclass
class ScriptStats:
    """Counts and sums of the outputs funding and spending one script."""

    tx_count: int = 0
    funded_txo_count: int = 0
    spent_txo_count: int = 0
    funded_txo_sum: int = 0
    spent_txo_sum: int = 0

    def to_bytes(self) -> bytes:
        return struct.pack(
            _STATS_FORMAT,
            self.tx_count,
            self.funded_txo_count,
            self.spent_txo_count,
            self.funded_txo_sum,
            self.spent_txo_sum,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> ScriptStats:
        data = bytes(data)
        if len(data) != struct.calcsize(_STATS_FORMAT):
            raise ValueError("invalid script stats encoding")
        return cls(*struct.unpack(_STATS_FORMAT, data))


@dataclass(frozen=True)
class StatsCacheRow:
    """Cached stats of a script, valid up to ``blockhash``."""

    scripthash: bytes
    stats: ScriptStats
    blockhash: bytes

    @staticmethod
    def key(scripthash: bytes) -> bytes:
        return bytes([CODE_STATS_CACHE]) + bytes(scripthash)

    def to_row(self) -> DBRow:
        return DBRow(
            StatsCacheRow.key(_full_hash(self.scripthash)),
            self.stats.to_bytes() + _sized_hash(self.blockhash),
        )

    @staticmethod
    def decode_value(data: bytes) -> tuple[ScriptStats, bytes]:
        reader = _Reader(data, "<")
        stats = ScriptStats.from_bytes(reader.take(struct.calcsize(_STATS_FORMAT)))
        blockhash = reader.sized_hash()
        reader.finish()
        return stats, blockhash


@dataclass(frozen=True)
class UtxoCacheRow:
    """Cached unspent outputs of a script, valid up to ``blockhash``.

    ``utxos`` maps each outpoint to its confirmation height and value.
    """

    scripthash: bytes
    utxos: Mapping[OutPoint, tuple[int, int]] = field(default_factory=dict)
    blockhash: bytes = bytes(HASH_LEN)

    @staticmethod
    def key(scripthash: bytes) -> bytes:
        return bytes([CODE_UTXO_CACHE]) + bytes(scripthash)

    def to_row(self) -> DBRow:
        entries = sorted(self.utxos.items())
        parts = [struct.pack("<Q", len(entries))]
        for outpoint, (height, value) in entries:
            parts.append(_sized_hash(outpoint.txid))
            parts.append(struct.pack("<IIQ", outpoint.vout, height, value))
        parts.append(_sized_hash(self.blockhash))
        return DBRow(UtxoCacheRow.key(_full_hash(self.scripthash)), b"".join(parts))

    @staticmethod
    def decode_value(data: bytes) -> tuple[dict[OutPoint, tuple[int, int]], bytes]:
        reader = _Reader(data, "<")
        utxos: dict[OutPoint, tuple[int, int]] = {}
        for _ in range(reader.uint("Q")):
            txid = reader.sized_hash()
            vout = reader.uint("I")
            height = reader.uint("I")
            utxos[OutPoint(txid, vout)] = (height, reader.uint("Q"))
        blockhash = reader.sized_hash()
        reader.finish()
        return utxos, blockhash