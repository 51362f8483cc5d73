"""Warming the stats cache for a list of scripts."""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Sequence

from chainindex.chain import sha256d
from chainindex.errors import IndexerError
from chainindex.rows import compute_script_hash

logger = logging.getLogger(__name__)

PRECACHE_THREADS = 16

_HEX_RE = re.compile(r"(?:[0-9a-fA-F]{2})*")
_BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_BECH32_GENERATORS = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
_BECH32_CONST = 1
_BECH32M_CONST = 0x2BC830A3

SEGWIT_HRPS = ("bc", "tb", "bcrt")
P2PKH_VERSIONS = frozenset({0x00, 0x6F})
P2SH_VERSIONS = frozenset({0x05, 0xC4})


def _from_hex(text: str) -> bytes:
    if not _HEX_RE.fullmatch(text):
        raise IndexerError("invalid hex")
    return bytes.fromhex(text)


def _base58check_decode(text: str) -> bytes:
    number = 0
    for char in text:
        digit = _BASE58_ALPHABET.find(char)
        if digit < 0:
            raise IndexerError("invalid address")
        number = number * 58 + digit
    body = number.to_bytes((number.bit_length() + 7) // 8, "big")
    leading = len(text) - len(text.lstrip("1"))
    data = bytes(leading) + body
    if len(data) < 4 or sha256d(data[:-4])[:4] != data[-4:]:
        raise IndexerError("invalid address")
    return data[:-4]


def _bech32_polymod(values) -> int:
    checksum = 1
    for value in values:
        top = checksum >> 25
        checksum = ((checksum & 0x1FFFFFF) << 5) ^ value
        for bit, generator in enumerate(_BECH32_GENERATORS):
            if (top >> bit) & 1:
                checksum ^= generator
    return checksum


def _hrp_expand(hrp: str) -> list[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _convert_bits(data, from_bits: int, to_bits: int) -> bytes:
    acc = bits = 0
    out = []
    maxv = (1 << to_bits) - 1
    for value in data:
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            out.append((acc >> bits) & maxv)
    if bits >= from_bits or (acc << (to_bits - bits)) & maxv:
        raise IndexerError("invalid address")
    return bytes(out)


def _segwit_script(text: str) -> bytes:
    if text.lower() != text and text.upper() != text:
        raise IndexerError("invalid address")
    text = text.lower()
    sep = text.rfind("1")
    hrp, payload = text[:sep], text[sep + 1:]
    if hrp not in SEGWIT_HRPS or len(payload) < 7:
        raise IndexerError("invalid address")
    try:
        data = [_BECH32_CHARSET.index(c) for c in payload]
    except ValueError:
        raise IndexerError("invalid address") from None
    const = _bech32_polymod(_hrp_expand(hrp) + data)
    version = data[0]
    expected = _BECH32_CONST if version == 0 else _BECH32M_CONST
    if const != expected or version > 16:
        raise IndexerError("invalid address")
    program = _convert_bits(data[1:-6], 5, 8)
    if not 2 <= len(program) <= 40 or (version == 0 and len(program) not in (20, 32)):
        raise IndexerError("invalid address")
    opcode = 0 if version == 0 else 0x50 + version
    return bytes([opcode, len(program)]) + program


def _address_script(address: str) -> bytes:
    lowered = address.lower()
    if any(lowered.startswith(hrp + "1") for hrp in SEGWIT_HRPS):
        return _segwit_script(address)
    payload = _base58check_decode(address)
    if len(payload) != 21:
        raise IndexerError("invalid address")
    version, digest = payload[0], payload[1:]
    if version in P2PKH_VERSIONS:
        return b"\x76\xa9\x14" + digest + b"\x88\xac"
    if version in P2SH_VERSIONS:
        return b"\xa9\x14" + digest + b"\x87"
    raise IndexerError("invalid address")


def to_scripthash(script_type: str, script_str: str) -> bytes:
    """The script hash named by an address, a scripthash or a scriptpubkey."""
    if script_type == "address":
        return compute_script_hash(_address_script(script_str))
    if script_type == "scripthash":
        scripthash = _from_hex(script_str)
        if len(scripthash) != 32:
            raise IndexerError("invalid hex")
        return scripthash
    if script_type == "scriptpubkey":
        return compute_script_hash(_from_hex(script_str))
    raise IndexerError("Invalid script type")


def scripthashes_from_file(path) -> list[bytes]:
    """Read ``type,value`` lines and return the script hash of each."""
    try:
        with Path(path).open(encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    except (OSError, UnicodeDecodeError) as err:
        raise IndexerError("cannot open precache scripthash file") from err
    scripthashes = []
    for line in lines:
        cols = line.split(",")
        if len(cols) < 2:
            raise IndexerError(f"invalid precache line: {line!r}")
        scripthashes.append(to_scripthash(cols[0], cols[1]))
    return scripthashes


def precache(chain, scripthashes: Sequence[bytes]) -> None:
    """Compute and cache the stats of every script hash concurrently."""
    scripthashes = list(scripthashes)
    total = len(scripthashes)
    logger.info("Pre-caching stats and utxo set for %d scripthashes", total)

    def run(item: tuple[int, bytes]) -> None:
        index, scripthash = item
        if index % 5 == 0:
            logger.info("running pre-cache for scripthash %d/%d", index + 1, total)
        chain.stats(scripthash)

    with ThreadPoolExecutor(max_workers=PRECACHE_THREADS, thread_name_prefix="precache") as pool:
        list(pool.map(run, enumerate(scripthashes)))