"""Fetching blocks from the daemon or from its blk*.dat files."""

from __future__ import annotations

import logging
import queue
import struct
import threading
from dataclasses import dataclass
from enum import Enum
from itertools import islice
from pathlib import Path
from typing import Any, Callable, Generic, Iterable, Iterator, TypeVar

from chainindex.chain import Block
from chainindex.errors import IndexerError

logger = logging.getLogger(__name__)

BITCOIND_BATCH_SIZE = 100

T = TypeVar("T")
_DONE = object()


class FetchFrom(Enum):
    BITCOIND = "bitcoind"
    BLKFILES = "blkfiles"


@dataclass
class BlockEntry:
    """A fetched block with its header entry and serialized size."""

    block: Block
    entry: Any
    size: int


class Fetcher(Generic[T]):
    """Items produced on a background thread, handed over one at a time.

    ``produce`` is called on the thread with a ``send`` function; an
    exception it raises is re-raised to the consumer once the items run out.
    """

    def __init__(self, produce: Callable[[Callable[[T], None]], None], name: str = "fetcher") -> None:
        self._queue: queue.Queue = queue.Queue(maxsize=1)
        self._error: BaseException | None = None
        self._consumed = False
        self._thread = threading.Thread(target=self._run, args=(produce,), name=name, daemon=True)
        self._thread.start()

    def _run(self, produce: Callable[[Callable[[T], None]], None]) -> None:
        try:
            produce(self._queue.put)
        except BaseException as err:
            self._error = err
        finally:
            self._queue.put(_DONE)

    def __iter__(self) -> Iterator[T]:
        if self._consumed:
            raise RuntimeError("fetcher was already consumed")
        self._consumed = True
        while (item := self._queue.get()) is not _DONE:
            yield item
        self._thread.join()
        if isinstance(self._error, IndexerError):
            raise self._error
        if self._error is not None:
            raise IndexerError(f"{self._thread.name} thread failed") from self._error

    def map(self, func: Callable[[T], Any]) -> None:
        """Call ``func`` on every item, then wait for the producer to finish."""
        for item in self:
            func(item)


def _chunks(items: Iterable[T], size: int) -> Iterator[list[T]]:
    iterator = iter(items)
    while chunk := list(islice(iterator, size)):
        yield chunk


def _u32_at(blob: bytes, offset: int) -> int | None:
    if offset + 4 > len(blob):
        return None
    return struct.unpack_from("<I", blob, offset)[0]


def parse_blocks(blob: bytes, magic: int) -> list[tuple[Block, int]]:
    """Parse the blocks stored in the contents of one blk*.dat file."""
    blob = bytes(blob)
    magic_bytes = struct.pack("<I", magic)
    slices: list[tuple[bytes, int]] = []
    pos = 0
    while pos < len(blob):
        pos = blob.find(magic_bytes, pos)
        if pos < 0:
            break
        block_size = _u32_at(blob, pos + 4)
        if block_size is None:
            raise IndexerError("no block size")
        start = pos + 8
        # A record may hold only the magic and size when the writer failed;
        # its body then begins with the next record's magic.
        following = _u32_at(blob, start)
        if following is None:
            break
        if following == magic:
            pos = start
            continue
        end = start + block_size
        if end > len(blob):
            raise IndexerError(f"truncated block at offset {start}")
        slices.append((blob[start:end], block_size))
        pos = end

    blocks = []
    for raw, size in slices:
        try:
            blocks.append((Block.deserialize(raw), size))
        except ValueError as err:
            raise IndexerError("failed to parse Block") from err
    return blocks


def blkfiles_reader(paths: Iterable[Path | str]) -> Fetcher[bytes]:
    """Read the given files one after another on a background thread."""
    paths = list(paths)

    def produce(send: Callable[[bytes], None]) -> None:
        for path in paths:
            logger.debug("reading %s", path)
            try:
                blob = Path(path).read_bytes()
            except OSError as err:
                raise IndexerError(f"failed to read {path}") from err
            send(blob)

    return Fetcher(produce, "blkfiles_reader")


def blkfiles_parser(blobs: Fetcher[bytes], magic: int) -> Fetcher[list[tuple[Block, int]]]:
    """Parse each file's contents from ``blobs`` into sized blocks."""

    def produce(send: Callable[[list[tuple[Block, int]]], None]) -> None:
        for blob in blobs:
            logger.debug("parsing %d bytes", len(blob))
            send(parse_blocks(blob, magic))

    return Fetcher(produce, "blkfiles_parser")


def _bitcoind_fetcher(daemon, new_headers: list) -> Fetcher[list[BlockEntry]]:
    if new_headers:
        logger.debug("%r (%d left to index)", new_headers[-1], len(new_headers))
    daemon = daemon.reconnect()

    def produce(send: Callable[[list[BlockEntry]], None]) -> None:
        for entries in _chunks(new_headers, BITCOIND_BATCH_SIZE):
            blocks = list(daemon.getblocks([entry.hash for entry in entries]))
            if len(blocks) != len(entries):
                raise IndexerError(
                    f"daemon returned {len(blocks)} blocks for {len(entries)} hashes"
                )
            send(
                [
                    BlockEntry(block=block, entry=entry, size=len(block.serialize()))
                    for block, entry in zip(blocks, entries)
                ]
            )

    return Fetcher(produce, "bitcoind_fetcher")


def _blkfiles_fetcher(daemon, new_headers: list) -> Fetcher[list[BlockEntry]]:
    magic = daemon.magic()
    blk_files = daemon.list_blk_files()
    entry_map = {entry.hash: entry for entry in new_headers}
    parser = blkfiles_parser(blkfiles_reader(blk_files), magic)

    def produce(send: Callable[[list[BlockEntry]], None]) -> None:
        for sized_blocks in parser:
            block_entries = []
            for block, size in sized_blocks:
                blockhash = block.block_hash()
                entry = entry_map.pop(blockhash, None)
                if entry is None:
                    logger.debug("skipping block %s", blockhash[::-1].hex())
                    continue
                block_entries.append(BlockEntry(block=block, entry=entry, size=size))
            logger.debug("fetched %d blocks", len(block_entries))
            send(block_entries)
        if entry_map:
            raise IndexerError(
                f"failed to index {len(entry_map)} blocks from blk*.dat files"
            )

    return Fetcher(produce, "blkfiles_fetcher")


def start_fetcher(source: FetchFrom, daemon, new_headers: Iterable) -> Fetcher[list[BlockEntry]]:
    """Start fetching the blocks of ``new_headers`` from ``source``."""
    new_headers = list(new_headers)
    if source is FetchFrom.BITCOIND:
        return _bitcoind_fetcher(daemon, new_headers)
    return _blkfiles_fetcher(daemon, new_headers)