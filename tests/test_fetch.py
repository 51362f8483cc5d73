import struct
from dataclasses import dataclass

import pytest

from chainindex.chain import Block, BlockHeader, OutPoint, Transaction, TxIn, TxOut
from chainindex.errors import IndexerError
from chainindex.fetch import (
    BlockEntry,
    FetchFrom,
    Fetcher,
    blkfiles_parser,
    blkfiles_reader,
    parse_blocks,
    start_fetcher,
)

MAGIC = 0xD9B4BEF9
MAGIC_BYTES = struct.pack("<I", MAGIC)


def make_block(nonce: int) -> Block:
    coinbase = Transaction(
        version=1,
        inputs=[TxIn(OutPoint(bytes(32), 0xFFFFFFFF), struct.pack("<I", nonce))],
        outputs=[TxOut(50, b"\x51")],
    )
    header = BlockHeader(1, bytes(32), coinbase.txid(), 1000 + nonce, 0x1D00FFFF, nonce)
    return Block(header, [coinbase])


def record(block: Block) -> bytes:
    raw = block.serialize()
    return MAGIC_BYTES + struct.pack("<I", len(raw)) + raw


@dataclass
class Entry:
    hash: bytes
    height: int


def entry_for(block: Block, height: int) -> Entry:
    return Entry(block.block_hash(), height)


class FakeDaemon:
    def __init__(self, blocks=(), blk_files=(), drop_one=False):
        self.blocks = {block.block_hash(): block for block in blocks}
        self.blk_files = list(blk_files)
        self.drop_one = drop_one
        self.batches = []

    def reconnect(self):
        return self

    def getblocks(self, hashes):
        self.batches.append(len(hashes))
        found = [self.blocks[h] for h in hashes]
        return found[1:] if self.drop_one else found

    def magic(self):
        return MAGIC

    def list_blk_files(self):
        return self.blk_files


def test_parse_blocks_skips_junk_and_empty_records():
    first, second = make_block(1), make_block(2)
    raw_second = second.serialize()
    blob = (
        b"\x00\x01\x02"
        + record(first)
        + MAGIC_BYTES
        + struct.pack("<I", len(raw_second))
        + record(second)
    )
    parsed = parse_blocks(blob, MAGIC)
    assert [block.block_hash() for block, _ in parsed] == [
        first.block_hash(),
        second.block_hash(),
    ]
    assert [size for _, size in parsed] == [len(first.serialize()), len(raw_second)]


def test_parse_blocks_stops_at_truncated_tail():
    block = make_block(3)
    blob = record(block) + MAGIC_BYTES + struct.pack("<I", 100) + b"\x01\x00"
    parsed = parse_blocks(blob, MAGIC)
    assert [b for b, _ in parsed] == [block]


def test_parse_blocks_requires_block_size():
    with pytest.raises(IndexerError, match="no block size"):
        parse_blocks(record(make_block(4)) + MAGIC_BYTES, MAGIC)


def test_parse_blocks_rejects_corrupt_block():
    raw = make_block(5).serialize()
    blob = MAGIC_BYTES + struct.pack("<I", len(raw) - 1) + raw[:-1]
    with pytest.raises(IndexerError, match="failed to parse Block"):
        parse_blocks(blob, MAGIC)


def test_parse_blocks_of_empty_blob():
    assert parse_blocks(b"", MAGIC) == []


def test_fetcher_yields_items_in_order():
    def produce(send):
        for item in range(5):
            send(item)

    assert list(Fetcher(produce)) == [0, 1, 2, 3, 4]


def test_fetcher_map_calls_function():
    seen = []
    Fetcher(lambda send: [send(x) for x in "abc"]).map(seen.append)
    assert seen == ["a", "b", "c"]


def test_fetcher_reraises_indexer_error():
    def produce(send):
        send(1)
        raise IndexerError("boom")

    fetcher = Fetcher(produce)
    items = []
    with pytest.raises(IndexerError, match="boom"):
        for item in fetcher:
            items.append(item)
    assert items == [1]


def test_fetcher_wraps_other_errors():
    def produce(send):
        raise RuntimeError("broken")

    with pytest.raises(IndexerError) as info:
        list(Fetcher(produce))
    assert isinstance(info.value.__cause__, RuntimeError)


def test_fetcher_cannot_be_consumed_twice():
    fetcher = Fetcher(lambda send: send(1))
    assert list(fetcher) == [1]
    with pytest.raises(RuntimeError):
        list(fetcher)


def test_blkfiles_reader_reads_files_in_order(tmp_path):
    paths = []
    for name, content in [("blk00000.dat", b"first"), ("blk00001.dat", b"second")]:
        path = tmp_path / name
        path.write_bytes(content)
        paths.append(path)
    assert list(blkfiles_reader(paths)) == [b"first", b"second"]


def test_blkfiles_reader_reports_missing_file(tmp_path):
    with pytest.raises(IndexerError):
        list(blkfiles_reader([tmp_path / "missing.dat"]))


def test_blkfiles_parser_parses_each_blob():
    blocks = [make_block(n) for n in range(3)]
    blobs = Fetcher(lambda send: [send(record(blocks[0]) + record(blocks[1])), send(record(blocks[2]))])
    parsed = [[block for block, _ in chunk] for chunk in blkfiles_parser(blobs, MAGIC)]
    assert parsed == [blocks[:2], blocks[2:]]


def test_bitcoind_fetcher_batches_headers():
    blocks = [make_block(n) for n in range(150)]
    entries = [entry_for(block, height) for height, block in enumerate(blocks)]
    daemon = FakeDaemon(blocks)
    batches = list(start_fetcher(FetchFrom.BITCOIND, daemon, entries))
    assert daemon.batches == [100, 50]
    fetched = [item for batch in batches for item in batch]
    assert [item.entry for item in fetched] == entries
    assert [item.block for item in fetched] == blocks
    assert all(item.size == len(item.block.serialize()) for item in fetched)


def test_bitcoind_fetcher_detects_missing_blocks():
    blocks = [make_block(n) for n in range(3)]
    daemon = FakeDaemon(blocks, drop_one=True)
    with pytest.raises(IndexerError):
        list(start_fetcher(FetchFrom.BITCOIND, daemon, [entry_for(b, 0) for b in blocks]))


def test_blkfiles_fetcher_matches_known_headers(tmp_path):
    known = [make_block(n) for n in range(3)]
    unknown = make_block(99)
    first = tmp_path / "blk00000.dat"
    second = tmp_path / "blk00001.dat"
    first.write_bytes(record(known[2]) + record(unknown))
    second.write_bytes(record(known[0]) + record(known[1]))
    entries = [entry_for(block, height) for height, block in enumerate(known)]
    daemon = FakeDaemon(blk_files=[first, second])
    fetched = [item for batch in start_fetcher(FetchFrom.BLKFILES, daemon, entries) for item in batch]
    assert sorted(item.entry.height for item in fetched) == [0, 1, 2]
    assert all(isinstance(item, BlockEntry) for item in fetched)
    assert all(item.entry.hash == item.block.block_hash() for item in fetched)
    assert all(item.size == len(item.block.serialize()) for item in fetched)


def test_blkfiles_fetcher_reports_unindexed_blocks(tmp_path):
    present, absent = make_block(1), make_block(2)
    path = tmp_path / "blk00000.dat"
    path.write_bytes(record(present))
    daemon = FakeDaemon(blk_files=[path])
    fetcher = start_fetcher(FetchFrom.BLKFILES, daemon, [entry_for(present, 0), entry_for(absent, 1)])
    fetched = []
    with pytest.raises(IndexerError, match="failed to index 1 blocks"):
        for batch in fetcher:
            fetched.extend(batch)
    assert [item.block for item in fetched] == [present]
    assert [item.entry.height for item in fetched] == [0]