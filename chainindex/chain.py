"""Wire format of transactions, block headers and blocks."""

from __future__ import annotations

import hashlib
import io
import struct
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, TypeVar

NULL_HASH = bytes(32)
NULL_VOUT = 0xFFFFFFFF
HEADER_SIZE = 80

_MAX_U64 = (1 << 64) - 1
_OP_RETURN = 0x6A

# Opcodes that make a script provably unspendable when they come first.
_UNSPENDABLE_FIRST_OPCODES = frozenset(
    {
        0x50,  # OP_RESERVED
        0x62,  # OP_VER
        0x65,  # OP_VERIF
        0x66,  # OP_VERNOTIF
        _OP_RETURN,
        0x7E, 0x7F, 0x80, 0x81,  # OP_CAT, OP_SUBSTR, OP_LEFT, OP_RIGHT
        0x83, 0x84, 0x85, 0x86,  # OP_INVERT, OP_AND, OP_OR, OP_XOR
        0x89, 0x8A,  # OP_RESERVED1, OP_RESERVED2
        0x8D, 0x8E,  # OP_2MUL, OP_2DIV
        0x95, 0x96, 0x97, 0x98, 0x99,  # OP_MUL, OP_DIV, OP_MOD, OP_LSHIFT, OP_RSHIFT
    }
    | set(range(0xBA, 0x100))
)

T = TypeVar("T")


def sha256d(data: bytes) -> bytes:
    """Return SHA-256 applied twice to ``data``."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def encode_varint(n: int) -> bytes:
    """Encode ``n`` as a compact-size integer."""
    if n < 0 or n > _MAX_U64:
        raise ValueError(f"varint out of range: {n}")
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise ValueError("unexpected end of data")
    return data


def _read_struct(stream: BinaryIO, fmt: str) -> int:
    (value,) = struct.unpack(fmt, _read_exact(stream, struct.calcsize(fmt)))
    return value


_VARINT_FORMATS = {0xFD: ("<H", 0xFD), 0xFE: ("<I", 0x10000), 0xFF: ("<Q", 0x100000000)}


def decode_varint(stream: BinaryIO) -> int:
    """Read a compact-size integer from a binary stream."""
    first = _read_exact(stream, 1)[0]
    if first < 0xFD:
        return first
    fmt, minimum = _VARINT_FORMATS[first]
    value = _read_struct(stream, fmt)
    if value < minimum:
        raise ValueError("non-minimal varint")
    return value


def _encode_bytes(data: bytes) -> bytes:
    return encode_varint(len(data)) + bytes(data)


def _read_bytes(stream: BinaryIO) -> bytes:
    return _read_exact(stream, decode_varint(stream))


def _decode_all(reader: Callable[[BinaryIO], T], data: bytes) -> T:
    stream = io.BytesIO(bytes(data))
    value = reader(stream)
    if stream.read(1):
        raise ValueError("data not consumed entirely")
    return value


@dataclass(frozen=True, order=True)
class OutPoint:
    """A reference to one output of a transaction."""

    txid: bytes
    vout: int

    def is_null(self) -> bool:
        return self.txid == NULL_HASH and self.vout == NULL_VOUT

    def __str__(self) -> str:
        return f"{self.txid[::-1].hex()}:{self.vout}"

    def _encode(self) -> bytes:
        return bytes(self.txid) + struct.pack("<I", self.vout)

    @classmethod
    def _read(cls, stream: BinaryIO) -> OutPoint:
        txid = _read_exact(stream, 32)
        return cls(txid, _read_struct(stream, "<I"))


@dataclass
class TxIn:
    """A transaction input."""

    previous_output: OutPoint
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF
    witness: list[bytes] = field(default_factory=list)

    def has_prevout(self) -> bool:
        """Whether the input spends an earlier output (false for coinbase inputs)."""
        return not self.previous_output.is_null()

    def _encode(self) -> bytes:
        return (
            self.previous_output._encode()
            + _encode_bytes(self.script_sig)
            + struct.pack("<I", self.sequence)
        )

    @classmethod
    def _read(cls, stream: BinaryIO) -> TxIn:
        previous_output = OutPoint._read(stream)
        script_sig = _read_bytes(stream)
        return cls(previous_output, script_sig, _read_struct(stream, "<I"))


@dataclass(frozen=True)
class TxOut:
    """A transaction output."""

    value: int
    script_pubkey: bytes

    def is_spendable(self) -> bool:
        """Whether the output script is not provably unspendable."""
        return not self.script_pubkey or self.script_pubkey[0] not in _UNSPENDABLE_FIRST_OPCODES

    def serialize(self) -> bytes:
        return struct.pack("<Q", self.value) + _encode_bytes(self.script_pubkey)

    @classmethod
    def _read(cls, stream: BinaryIO) -> TxOut:
        value = _read_struct(stream, "<Q")
        return cls(value, _read_bytes(stream))

    @classmethod
    def deserialize(cls, data: bytes) -> TxOut:
        return _decode_all(cls._read, data)


@dataclass
class Transaction:
    """A transaction, with optional segregated witness data."""

    version: int
    inputs: list[TxIn]
    outputs: list[TxOut]
    lock_time: int = 0

    def _encode(self, include_witness: bool) -> bytes:
        segwit = include_witness and any(txin.witness for txin in self.inputs)
        parts = [struct.pack("<i", self.version)]
        if segwit:
            parts.append(b"\x00\x01")
        parts.append(encode_varint(len(self.inputs)))
        parts.extend(txin._encode() for txin in self.inputs)
        parts.append(encode_varint(len(self.outputs)))
        parts.extend(txout.serialize() for txout in self.outputs)
        if segwit:
            for txin in self.inputs:
                parts.append(encode_varint(len(txin.witness)))
                parts.extend(_encode_bytes(item) for item in txin.witness)
        parts.append(struct.pack("<I", self.lock_time))
        return b"".join(parts)

    def txid(self) -> bytes:
        """The transaction id: the double SHA-256 of the encoding without witnesses."""
        return sha256d(self._encode(include_witness=False))

    def serialize(self) -> bytes:
        return self._encode(include_witness=True)

    @classmethod
    def read(cls, stream: BinaryIO) -> Transaction:
        """Read one transaction from a binary stream."""
        version = _read_struct(stream, "<i")
        count = decode_varint(stream)
        segwit = False
        if count == 0:
            flag = _read_exact(stream, 1)[0]
            if flag != 1:
                raise ValueError(f"unsupported segwit flag {flag}")
            segwit = True
            count = decode_varint(stream)
        inputs = [TxIn._read(stream) for _ in range(count)]
        outputs = [TxOut._read(stream) for _ in range(decode_varint(stream))]
        if segwit:
            for txin in inputs:
                txin.witness = [_read_bytes(stream) for _ in range(decode_varint(stream))]
            if not any(txin.witness for txin in inputs):
                raise ValueError("superfluous witness record")
        lock_time = _read_struct(stream, "<I")
        return cls(version, inputs, outputs, lock_time)

    @classmethod
    def deserialize(cls, data: bytes) -> Transaction:
        return _decode_all(cls.read, data)


@dataclass(frozen=True)
class BlockHeader:
    """An 80-byte block header."""

    version: int
    prev_blockhash: bytes
    merkle_root: bytes
    time: int
    bits: int
    nonce: int

    def block_hash(self) -> bytes:
        return sha256d(self.serialize())

    def serialize(self) -> bytes:
        return (
            struct.pack("<i", self.version)
            + bytes(self.prev_blockhash)
            + bytes(self.merkle_root)
            + struct.pack("<III", self.time, self.bits, self.nonce)
        )

    @classmethod
    def _read(cls, stream: BinaryIO) -> BlockHeader:
        version = _read_struct(stream, "<i")
        prev_blockhash = _read_exact(stream, 32)
        merkle_root = _read_exact(stream, 32)
        time, bits, nonce = struct.unpack("<III", _read_exact(stream, 12))
        return cls(version, prev_blockhash, merkle_root, time, bits, nonce)

    @classmethod
    def deserialize(cls, data: bytes) -> BlockHeader:
        return _decode_all(cls._read, data)


@dataclass
class Block:
    """A block header together with its transactions."""

    header: BlockHeader
    txdata: list[Transaction]

    def block_hash(self) -> bytes:
        return self.header.block_hash()

    def serialize(self) -> bytes:
        return b"".join(
            [self.header.serialize(), encode_varint(len(self.txdata))]
            + [tx.serialize() for tx in self.txdata]
        )

    @classmethod
    def _read(cls, stream: BinaryIO) -> Block:
        header = BlockHeader._read(stream)
        txdata = [Transaction.read(stream) for _ in range(decode_varint(stream))]
        return cls(header, txdata)

    @classmethod
    def deserialize(cls, data: bytes) -> Block:
        return _decode_all(cls._read, data)