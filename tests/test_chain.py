import io

import pytest

from chainindex.chain import (
    Block,
    BlockHeader,
    NULL_HASH,
    OutPoint,
    Transaction,
    TxIn,
    TxOut,
    decode_varint,
    encode_varint,
    sha256d,
)

GENESIS_HEADER = bytes.fromhex(
    "01000000"
    + "00" * 32
    + "3ba3edfd7a7b12b27ac72c3e67768f617fc81bc3888a51323a9fb8aa4b1e5e4a"
    + "29ab5f49ffff001d1dac2b7c"
)

GENESIS_PUBKEY = bytes.fromhex(
    "04678afdb0fe5548271967f1a67130b7105cd6a828e03909a67962e0ea1f61deb649f6bc3f"
    "4cef38c4f35504e51ec112de5c384df7ba0b8d578a4c702b6bf11d5f"
)


def genesis_coinbase() -> Transaction:
    text = b"The Times 03/Jan/2009 Chancellor on brink of second bailout for banks"
    script_sig = bytes.fromhex("04ffff001d0104") + bytes([len(text)]) + text
    return Transaction(
        version=1,
        inputs=[TxIn(OutPoint(NULL_HASH, 0xFFFFFFFF), script_sig)],
        outputs=[TxOut(5_000_000_000, bytes([0x41]) + GENESIS_PUBKEY + b"\xac")],
        lock_time=0,
    )


def sample_tx(witness=None) -> Transaction:
    txin = TxIn(OutPoint(bytes(range(32)), 3), b"\x51", 0xFFFFFFFE, list(witness or []))
    return Transaction(
        version=2,
        inputs=[txin],
        outputs=[TxOut(1234, b"\x76\xa9"), TxOut(0, b"\x6a\x01\x02")],
        lock_time=7,
    )


@pytest.mark.parametrize(
    "n", [0, 0xFC, 0xFD, 0xFFFF, 0x10000, 0xFFFFFFFF, 0x100000000, (1 << 64) - 1]
)
def test_varint_round_trip(n):
    stream = io.BytesIO(encode_varint(n))
    assert decode_varint(stream) == n
    assert stream.read() == b""


def test_varint_wire_bytes():
    assert encode_varint(0xFD) == b"\xfd\xfd\x00"


def test_varint_rejects_non_minimal():
    with pytest.raises(ValueError):
        decode_varint(io.BytesIO(b"\xfd\x01\x00"))


def test_varint_rejects_truncated():
    with pytest.raises(ValueError):
        decode_varint(io.BytesIO(b"\xfe\x01"))


def test_varint_rejects_negative():
    with pytest.raises(ValueError):
        encode_varint(-1)


def test_sha256d_is_double_sha256():
    import hashlib

    data = b"abc"
    assert sha256d(data) == hashlib.sha256(hashlib.sha256(data).digest()).digest()


def test_null_outpoint_and_coinbase():
    coinbase = genesis_coinbase()
    assert coinbase.inputs[0].previous_output.is_null()
    assert coinbase.inputs[0].has_prevout() is False
    assert sample_tx().inputs[0].has_prevout() is True


def test_outpoint_ordering_follows_txid_then_vout():
    a = OutPoint(b"\x01" * 32, 5)
    b = OutPoint(b"\x01" * 32, 6)
    c = OutPoint(b"\x02" * 32, 0)
    assert sorted([c, b, a]) == [a, b, c]


@pytest.mark.parametrize(
    "script,spendable",
    [
        (b"\x6a\x04data", False),
        (b"\x76\xa9\x14" + bytes(20) + b"\x88\xac", True),
        (b"", True),
    ],
)
def test_txout_spendability(script, spendable):
    assert TxOut(1, script).is_spendable() is spendable


def test_txout_round_trip():
    txo = TxOut(987654321, b"\x00\x14" + bytes(20))
    assert TxOut.deserialize(txo.serialize()) == txo


def test_txout_rejects_trailing_bytes():
    with pytest.raises(ValueError):
        TxOut.deserialize(TxOut(1, b"\x51").serialize() + b"\x00")


def test_legacy_transaction_round_trip():
    tx = sample_tx()
    decoded = Transaction.deserialize(tx.serialize())
    assert decoded == tx
    assert decoded.txid() == sha256d(tx.serialize())


def test_segwit_transaction_round_trip_and_txid():
    tx = sample_tx(witness=[b"\x30" * 71, b"\x02" * 33])
    raw = tx.serialize()
    assert raw[4:6] == b"\x00\x01"
    decoded = Transaction.deserialize(raw)
    assert decoded == tx
    assert tx.txid() == sample_tx().txid()
    assert tx.txid() != sha256d(raw)


def test_bad_segwit_flag_rejected():
    raw = sample_tx(witness=[b"\x01"]).serialize()
    with pytest.raises(ValueError):
        Transaction.deserialize(raw[:5] + b"\x02" + raw[6:])


def test_superfluous_witness_rejected():
    legacy = sample_tx().serialize()
    raw = legacy[:4] + b"\x00\x01" + legacy[4:-4] + b"\x00" + legacy[-4:]
    with pytest.raises(ValueError):
        Transaction.deserialize(raw)


def test_transaction_read_consumes_one_transaction():
    first, second = sample_tx(), genesis_coinbase()
    stream = io.BytesIO(first.serialize() + second.serialize())
    assert Transaction.read(stream) == first
    assert Transaction.read(stream) == second
    assert stream.read() == b""


def test_genesis_header_hash():
    header = BlockHeader.deserialize(GENESIS_HEADER)
    assert header.serialize() == GENESIS_HEADER
    assert header.block_hash()[::-1].hex() == (
        "000000000019d6689c085ae165831e934ff763ae46a2a6c172b3f1b60a8ce26f"
    )


def test_header_rejects_wrong_length():
    with pytest.raises(ValueError):
        BlockHeader.deserialize(GENESIS_HEADER[:79])


def test_genesis_block_round_trip():
    header = BlockHeader.deserialize(GENESIS_HEADER)
    coinbase = genesis_coinbase()
    assert coinbase.txid() == header.merkle_root
    block = Block(header, [coinbase])
    decoded = Block.deserialize(block.serialize())
    assert decoded == block
    assert decoded.block_hash() == header.block_hash()


def test_block_rejects_truncated_data():
    block = Block(BlockHeader.deserialize(GENESIS_HEADER), [genesis_coinbase()])
    with pytest.raises(ValueError):
        Block.deserialize(block.serialize()[:-1])