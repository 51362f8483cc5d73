import hashlib
import threading

import pytest

from chainindex.errors import IndexerError
from chainindex.precache import precache, scripthashes_from_file, to_scripthash

# BIP 173 example: P2WPKH address and its output script.
BECH32_ADDRESS = "BC1QW508D6QEJXTDG4Y5R3ZARVARY0C5XW7KV8F3T4"
BECH32_SCRIPT = bytes.fromhex("0014751e76e8199196d454941c45d1b3a323f1433bd6")
# The genesis coinbase address and its output script.
P2PKH_ADDRESS = "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa"
P2PKH_SCRIPT = bytes.fromhex("76a91462e907b15cbf27d5425399ebf6f0fb50ebb88f1888ac")


class RecordingChain:
    def __init__(self):
        self.calls = []
        self.lock = threading.Lock()

    def stats(self, scripthash):
        with self.lock:
            self.calls.append(scripthash)


def test_scripthash_passes_through():
    value = bytes(range(32))
    assert to_scripthash("scripthash", value.hex()) == value


def test_scriptpubkey_is_hashed():
    script = bytes.fromhex("6a0401020304")
    assert to_scripthash("scriptpubkey", script.hex()) == hashlib.sha256(script).digest()


def test_bech32_address():
    assert to_scripthash("address", BECH32_ADDRESS) == hashlib.sha256(BECH32_SCRIPT).digest()
    assert to_scripthash("address", BECH32_ADDRESS.lower()) == hashlib.sha256(BECH32_SCRIPT).digest()


def test_base58_address():
    assert to_scripthash("address", P2PKH_ADDRESS) == hashlib.sha256(P2PKH_SCRIPT).digest()


@pytest.mark.parametrize(
    "address",
    [
        "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNb",
        "BC1QW508D6QEJXTDG4Y5R3ZARVARY0C5XW7KV8F3T5",
        "bc1QW508D6QEJXTDG4Y5R3ZARVARY0C5XW7KV8F3T4",
        "not-an-address",
    ],
)
def test_invalid_addresses(address):
    with pytest.raises(IndexerError):
        to_scripthash("address", address)


@pytest.mark.parametrize(
    "script_type,value",
    [("scripthash", "zz"), ("scripthash", "00" * 31), ("scriptpubkey", "abc"), ("unknown", "00")],
)
def test_invalid_inputs(script_type, value):
    with pytest.raises(IndexerError):
        to_scripthash(script_type, value)


def test_scripthashes_from_file(tmp_path):
    scripthash = bytes(range(32))
    script = bytes.fromhex("51")
    path = tmp_path / "scripts.csv"
    path.write_text(
        f"scripthash,{scripthash.hex()}\nscriptpubkey,{script.hex()}\naddress,{P2PKH_ADDRESS}\n"
    )
    assert scripthashes_from_file(path) == [
        scripthash,
        hashlib.sha256(script).digest(),
        hashlib.sha256(P2PKH_SCRIPT).digest(),
    ]


def test_scripthashes_from_missing_file(tmp_path):
    with pytest.raises(IndexerError):
        scripthashes_from_file(tmp_path / "missing.csv")


def test_scripthashes_line_without_comma(tmp_path):
    path = tmp_path / "bad.csv"
    path.write_text("scripthash\n")
    with pytest.raises(IndexerError):
        scripthashes_from_file(path)


def test_precache_computes_stats_for_every_scripthash():
    chain = RecordingChain()
    scripthashes = [bytes([i]) * 32 for i in range(12)]
    precache(chain, scripthashes)
    assert sorted(chain.calls) == sorted(scripthashes)


def test_precache_propagates_failures():
    class FailingChain:
        def stats(self, scripthash):
            raise IndexerError("boom")

    with pytest.raises(IndexerError):
        precache(FailingChain(), [bytes(32)])