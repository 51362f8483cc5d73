"""Writing fetched blocks into the index databases and tracking the indexed chain."""

from __future__ import annotations

import logging
import struct
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Mapping, Sequence

from chainindex.chain import (
    NULL_HASH,
    BlockHeader,
    OutPoint,
    Transaction,
    TxIn,
    TxOut,
    encode_varint,
)
from chainindex.db import DB, DBFlush, DBRow
from chainindex.errors import IndexerError
from chainindex.fetch import BlockEntry, FetchFrom, start_fetcher
from chainindex.metrics import Metrics
from chainindex.rows import (
    CODE_BLOCK_DONE,
    CODE_BLOCK_HEADER,
    CODE_BLOCK_META,
    CODE_BLOCK_TXIDS,
    CODE_HISTORY,
    BlockRow,
    FundingInfo,
    SpendingInfo,
    TxConfRow,
    TxEdgeRow,
    TxHistoryKey,
    TxHistoryRow,
    TxOutRow,
    TxRow,
    compute_script_hash,
    encode_txids,
)

logger = logging.getLogger(__name__)

# Number of headers whose median timestamp gives the median time past.
MTP_SPAN = 11
LOOKUP_THREADS = 16
WITNESS_SCALE_FACTOR = 4

_TIP_KEY = b"t"
_COMPACTED_KEY = b"F"
_META_FORMAT = "<III"


@dataclass(frozen=True)
class HeaderEntry:
    """A block header placed at its height in the chain."""

    height: int
    hash: bytes
    header: BlockHeader

    def __repr__(self) -> str:
        return f"HeaderEntry(height={self.height}, hash={self.hash[::-1].hex()})"


@dataclass(frozen=True)
class BlockId:
    """Identifies a block of the best chain."""

    height: int
    hash: bytes
    time: int

    @classmethod
    def from_entry(cls, entry: HeaderEntry) -> BlockId:
        return cls(entry.height, entry.hash, entry.header.time)


def _stripped_size(tx: Transaction) -> int:
    stripped = Transaction(
        tx.version,
        [TxIn(txin.previous_output, txin.script_sig, txin.sequence) for txin in tx.inputs],
        tx.outputs,
        tx.lock_time,
    )
    return len(stripped.serialize())


@dataclass(frozen=True)
class BlockMeta:
    """Transaction count, serialized size and weight of a block."""

    tx_count: int
    size: int
    weight: int

    @classmethod
    def from_block_entry(cls, block_entry: BlockEntry) -> BlockMeta:
        block = block_entry.block
        total_size = len(block.serialize())
        base_size = (
            len(block.header.serialize())
            + len(encode_varint(len(block.txdata)))
            + sum(_stripped_size(tx) for tx in block.txdata)
        )
        weight = base_size * (WITNESS_SCALE_FACTOR - 1) + total_size
        return cls(len(block.txdata), block_entry.size, weight)

    def to_bytes(self) -> bytes:
        return struct.pack(_META_FORMAT, self.tx_count, self.size, self.weight)

    @classmethod
    def from_bytes(cls, data: bytes) -> BlockMeta:
        data = bytes(data)
        if len(data) != struct.calcsize(_META_FORMAT):
            raise ValueError("invalid block meta encoding")
        return cls(*struct.unpack(_META_FORMAT, data))


class HeaderList:
    """The headers of the best chain, indexed by height and by hash."""

    def __init__(
        self,
        headers: Mapping[bytes, BlockHeader] | None = None,
        tip_hash: bytes | None = None,
    ) -> None:
        self._entries: list[HeaderEntry] = []
        self._heights: dict[bytes, int] = {}
        if tip_hash is None:
            return
        headers = headers or {}
        chain: list[tuple[bytes, BlockHeader]] = []
        blockhash = bytes(tip_hash)
        while blockhash != NULL_HASH:
            header = headers.get(blockhash)
            if header is None:
                raise IndexerError(f"missing header {blockhash[::-1].hex()}")
            chain.append((blockhash, header))
            blockhash = header.prev_blockhash
        chain.reverse()
        for height, (blockhash, header) in enumerate(chain):
            self._entries.append(HeaderEntry(height, blockhash, header))
            self._heights[blockhash] = height

    def order(self, new_headers: Sequence[BlockHeader]) -> list[HeaderEntry]:
        """Place new headers, which must form a chain, on top of a known block."""
        new_headers = list(new_headers)
        if not new_headers:
            return []
        prev = new_headers[0].prev_blockhash
        if prev == NULL_HASH:
            height = 0
        else:
            parent = self.header_by_blockhash(prev)
            if parent is None:
                raise IndexerError(f"missing previous header {prev[::-1].hex()}")
            height = parent.height + 1
        result: list[HeaderEntry] = []
        for offset, header in enumerate(new_headers):
            if result and header.prev_blockhash != result[-1].hash:
                raise IndexerError("new headers do not form a chain")
            result.append(HeaderEntry(height + offset, header.block_hash(), header))
        return result

    def apply(self, new_headers: Sequence[HeaderEntry]) -> None:
        """Replace the chain from the first new header's height onwards."""
        new_headers = list(new_headers)
        if not new_headers:
            return
        first = new_headers[0].height
        if first > len(self._entries):
            raise IndexerError(f"cannot apply headers from height {first}")
        if first > 0 and self._entries[first - 1].hash != new_headers[0].header.prev_blockhash:
            raise IndexerError("new headers do not connect to the chain")
        for removed in self._entries[first:]:
            self._heights.pop(removed.hash, None)
        del self._entries[first:]
        for entry in new_headers:
            if entry.height != len(self._entries):
                raise IndexerError(f"unexpected header height {entry.height}")
            self._entries.append(entry)
            self._heights[entry.hash] = entry.height

    def header_by_blockhash(self, blockhash: bytes) -> HeaderEntry | None:
        """The entry of a block of the best chain; ``None`` for other blocks."""
        height = self._heights.get(bytes(blockhash))
        return None if height is None else self._entries[height]

    def header_by_height(self, height: int) -> HeaderEntry | None:
        if 0 <= height < len(self._entries):
            return self._entries[height]
        return None

    def tip(self) -> bytes:
        return self._entries[-1].hash if self._entries else NULL_HASH

    def get_mtp(self, height: int) -> int:
        """The median timestamp of the headers ending at ``height``."""
        if not 0 <= height < len(self._entries):
            raise IndexError(f"no header at height {height}")
        start = max(0, height - (MTP_SPAN - 1))
        timestamps = sorted(entry.header.time for entry in self._entries[start:height + 1])
        return timestamps[len(timestamps) // 2]

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class IndexerConfig:
    """Options controlling which rows are written.

    ``address_of`` turns an output script into its address string; it is
    needed for the address search rows.
    """

    light_mode: bool = False
    address_search: bool = False
    index_unspendables: bool = False
    address_of: Callable[[bytes], str | None] | None = None


def _load_blockhashes(db: DB) -> set[bytes]:
    return {BlockRow.from_row(row).hash for row in db.iter_scan(bytes([CODE_BLOCK_DONE]))}


def _load_blockheaders(db: DB) -> dict[bytes, BlockHeader]:
    headers = {}
    for row in db.iter_scan(bytes([CODE_BLOCK_HEADER])):
        block_row = BlockRow.from_row(row)
        try:
            headers[block_row.hash] = BlockHeader.deserialize(block_row.value)
        except ValueError as err:
            raise IndexerError("failed to parse BlockHeader") from err
    return headers


class Store:
    """The three index databases and the state loaded from them."""

    def __init__(
        self,
        txstore_db: DB,
        history_db: DB,
        cache_db: DB,
        added_blockhashes: set[bytes],
        indexed_blockhashes: set[bytes],
        indexed_headers: HeaderList,
    ) -> None:
        self.txstore_db = txstore_db
        self.history_db = history_db
        self.cache_db = cache_db
        self.added_blockhashes = added_blockhashes
        self.indexed_blockhashes = indexed_blockhashes
        self.indexed_headers = indexed_headers
        self.lock = threading.RLock()

    @classmethod
    def open(cls, path, light_mode: bool = False) -> Store:
        path = Path(path)
        txstore_db = DB.open(path / "txstore", light_mode)
        added = _load_blockhashes(txstore_db)
        logger.debug("%d blocks were added", len(added))

        history_db = DB.open(path / "history", light_mode)
        indexed = _load_blockhashes(history_db)
        logger.debug("%d blocks were indexed", len(indexed))

        cache_db = DB.open(path / "cache", light_mode)

        tip_hash = txstore_db.get(_TIP_KEY)
        if tip_hash is not None:
            if len(tip_hash) != 32:
                raise IndexerError("invalid chain tip in `t`")
            headers_map = _load_blockheaders(txstore_db)
            logger.debug(
                "%d headers were loaded, tip at %s", len(headers_map), tip_hash[::-1].hex()
            )
            headers = HeaderList(headers_map, tip_hash)
        else:
            headers = HeaderList()
        return cls(txstore_db, history_db, cache_db, added, indexed, headers)

    def done_initial_sync(self) -> bool:
        return self.txstore_db.get(_TIP_KEY) is not None

    def close(self) -> None:
        for db in (self.txstore_db, self.history_db, self.cache_db):
            db.close()

    def __enter__(self) -> Store:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class Indexer:
    """Brings the store up to date with the daemon's best chain."""

    def __init__(self, store: Store, source: FetchFrom, config: IndexerConfig, metrics: Metrics) -> None:
        self.store = store
        self.source = source
        self.config = config
        self.flush = DBFlush.DISABLE
        self._duration = metrics.histogram_vec(
            "index_duration", "Index update duration (in seconds)", ["step"]
        )
        self._tip_metric = metrics.gauge("tip_height", "Current chain tip height")

    def _timer(self, name: str):
        return self._duration.with_label_values(name).timer()

    def _headers_to_add(self, new_headers: Iterable[HeaderEntry]) -> list[HeaderEntry]:
        with self.store.lock:
            return [e for e in new_headers if e.hash not in self.store.added_blockhashes]

    def _headers_to_index(self, new_headers: Iterable[HeaderEntry]) -> list[HeaderEntry]:
        with self.store.lock:
            return [e for e in new_headers if e.hash not in self.store.indexed_blockhashes]

    @staticmethod
    def _start_auto_compactions(db: DB) -> None:
        if db.get(_COMPACTED_KEY) is None:
            db.full_compaction()
            db.put_sync(_COMPACTED_KEY, b"")
        db.enable_auto_compaction()

    def _get_new_headers(self, daemon, tip: bytes) -> list[HeaderEntry]:
        with self.store.lock:
            headers = self.store.indexed_headers
            result = headers.order(daemon.get_new_headers(headers, tip))
        if result:
            logger.info("%r (%d left to index)", result[-1], len(result))
        return result

    def update(self, daemon) -> bytes:
        """Index every block up to the daemon's best block; return its hash."""
        daemon = daemon.reconnect()
        tip = daemon.getbestblockhash()
        new_headers = self._get_new_headers(daemon, tip)

        to_add = self._headers_to_add(new_headers)
        logger.debug("adding transactions from %d blocks using %s", len(to_add), self.source)
        start_fetcher(self.source, daemon, to_add).map(self.add)
        self._start_auto_compactions(self.store.txstore_db)

        to_index = self._headers_to_index(new_headers)
        logger.debug("indexing history from %d blocks using %s", len(to_index), self.source)
        start_fetcher(self.source, daemon, to_index).map(self.index)
        self._start_auto_compactions(self.store.history_db)

        if self.flush is DBFlush.DISABLE:
            logger.debug("flushing to disk")
            self.store.txstore_db.flush()
            self.store.history_db.flush()
            self.flush = DBFlush.ENABLE

        # The synced tip is written only after the new data reached the disk.
        logger.debug("updating synced tip to %s", tip[::-1].hex())
        self.store.txstore_db.put_sync(_TIP_KEY, tip)

        with self.store.lock:
            headers = self.store.indexed_headers
            headers.apply(new_headers)
            if headers.tip() != tip:
                raise IndexerError("indexed tip does not match the daemon's best block")
            height = len(headers) - 1

        if self.source is FetchFrom.BLKFILES:
            self.source = FetchFrom.BITCOIND

        self._tip_metric.set(height)
        return tip

    def add(self, blocks: Sequence[BlockEntry]) -> None:
        """Store the transactions, outputs and block rows of ``blocks``."""
        with self._timer("add_process"):
            rows = add_blocks(blocks, self.config)
        with self._timer("add_write"):
            self.store.txstore_db.write(rows, self.flush)
        with self.store.lock:
            self.store.added_blockhashes.update(b.entry.hash for b in blocks)

    def index(self, blocks: Sequence[BlockEntry]) -> None:
        """Write the history and spend rows of blocks that were already added."""
        with self._timer("index_lookup"):
            previous_txos = lookup_txos(self.store.txstore_db, get_previous_txos(blocks), False)
        with self._timer("index_process"):
            with self.store.lock:
                for b in blocks:
                    if b.entry.hash not in self.store.added_blockhashes:
                        raise IndexerError(
                            f"cannot index block {b.entry.hash[::-1].hex()} (missing from store)"
                        )
            rows = index_blocks(blocks, previous_txos, self.config)
        self.store.history_db.write(rows, self.flush)
        with self.store.lock:
            self.store.indexed_blockhashes.update(b.entry.hash for b in blocks)

    def fetch_from(self, source: FetchFrom) -> None:
        self.source = source


def _add_transaction(tx: Transaction, blockhash: bytes, config: IndexerConfig) -> Iterable[DBRow]:
    txid = tx.txid()
    yield TxConfRow(txid, blockhash).to_row()
    if not config.light_mode:
        yield TxRow(tx).to_row()
    for index, txo in enumerate(tx.outputs):
        if txo.is_spendable():
            yield TxOutRow(txid, index, txo).to_row()


def add_blocks(block_entries: Iterable[BlockEntry], iconfig: IndexerConfig) -> list[DBRow]:
    """Rows persisting the transactions and per-block data of ``block_entries``."""
    rows: list[DBRow] = []
    for b in block_entries:
        blockhash = b.entry.hash
        for tx in b.block.txdata:
            rows.extend(_add_transaction(tx, blockhash, iconfig))
        if not iconfig.light_mode:
            txids = [tx.txid() for tx in b.block.txdata]
            rows.append(BlockRow(CODE_BLOCK_TXIDS, blockhash, encode_txids(txids)).to_row())
            meta = BlockMeta.from_block_entry(b)
            rows.append(BlockRow(CODE_BLOCK_META, blockhash, meta.to_bytes()).to_row())
        rows.append(BlockRow(CODE_BLOCK_HEADER, blockhash, b.block.header.serialize()).to_row())
        rows.append(BlockRow(CODE_BLOCK_DONE, blockhash).to_row())
    return rows


def _history_row(script: bytes, height: int, txinfo) -> DBRow:
    key = TxHistoryKey(CODE_HISTORY, compute_script_hash(script), height, txinfo)
    return TxHistoryRow(key).to_row()


def _index_transaction(
    tx: Transaction,
    height: int,
    previous_txos: Mapping[OutPoint, TxOut],
    config: IndexerConfig,
) -> Iterable[DBRow]:
    txid = tx.txid()
    for index, txo in enumerate(tx.outputs):
        if not (txo.is_spendable() or config.index_unspendables):
            continue
        yield _history_row(
            txo.script_pubkey, height, FundingInfo(txid, index & 0xFFFF, txo.value)
        )
        if config.address_search and config.address_of is not None:
            address = config.address_of(txo.script_pubkey)
            if address is not None:
                yield DBRow(b"a" + address.encode(), b"")
    for index, txin in enumerate(tx.inputs):
        if not txin.has_prevout():
            continue
        prevout = txin.previous_output
        prev_txo = previous_txos.get(prevout)
        if prev_txo is None:
            raise IndexerError(f"missing previous txo {prevout}")
        yield _history_row(
            prev_txo.script_pubkey,
            height,
            SpendingInfo(txid, index & 0xFFFF, prevout.txid, prevout.vout & 0xFFFF, prev_txo.value),
        )
        yield TxEdgeRow(prevout.txid, prevout.vout & 0xFFFF, txid, index & 0xFFFF).to_row()


def index_blocks(
    block_entries: Iterable[BlockEntry],
    previous_txos: Mapping[OutPoint, TxOut],
    iconfig: IndexerConfig,
) -> list[DBRow]:
    """History, spend-edge and address rows for ``block_entries``."""
    rows: list[DBRow] = []
    for b in block_entries:
        for tx in b.block.txdata:
            rows.extend(_index_transaction(tx, b.entry.height, previous_txos, iconfig))
        rows.append(BlockRow(CODE_BLOCK_DONE, b.entry.hash).to_row())
    return rows


def get_previous_txos(block_entries: Iterable[BlockEntry]) -> set[OutPoint]:
    """The outputs spent by the transactions of ``block_entries``."""
    return {
        txin.previous_output
        for b in block_entries
        for tx in b.block.txdata
        for txin in tx.inputs
        if txin.has_prevout()
    }


def lookup_txo(db: DB, outpoint: OutPoint) -> TxOut | None:
    value = db.get(TxOutRow.key(outpoint))
    if value is None:
        return None
    try:
        return TxOut.deserialize(value)
    except ValueError as err:
        raise IndexerError("failed to parse TxOut") from err


def lookup_txos(db: DB, outpoints: Iterable[OutPoint], allow_missing: bool = False) -> dict[OutPoint, TxOut]:
    """Look up many outputs concurrently.

    A missing output is skipped when ``allow_missing`` is set and is an
    error otherwise.
    """
    ordered = sorted(set(outpoints))
    if not ordered:
        return {}
    with ThreadPoolExecutor(max_workers=LOOKUP_THREADS, thread_name_prefix="lookup-txo") as pool:
        found = list(pool.map(lambda outpoint: lookup_txo(db, outpoint), ordered))
    result: dict[OutPoint, TxOut] = {}
    for outpoint, txo in zip(ordered, found):
        if txo is None:
            if not allow_missing:
                raise IndexerError(f"missing txo {outpoint} in {db.path}")
            continue
        result[outpoint] = txo
    return result