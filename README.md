# chainindex

`chainindex` builds an index of a blockchain: the transactions it holds, the
outputs they create and spend, and the funding and spending history of every
output script. Everything is kept in ordered key-value stores (SQLite files
with bytewise-ordered keys), laid out so that prefix scans walk a script's
history in block order.

## Installing

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

The package has no dependencies outside the standard library.

## Modules

- `chainindex.chain`: the wire formats of `Transaction`, `TxIn`, `TxOut`,
  `OutPoint`, `BlockHeader` and `Block`, each with `serialize()` and
  `deserialize()`; `Transaction.txid()`, `Block.block_hash()`,
  `TxOut.is_spendable()`, `TxIn.has_prevout()`, plus `sha256d`,
  `encode_varint` and `decode_varint`.
- `chainindex.db`: `DB`, an ordered store opened with
  `DB.open(path, light_mode)`. It offers `get`, `put`, `put_sync`, batched
  `write` of `DBRow` items (with `DBFlush.ENABLE` or `DBFlush.DISABLE`),
  `flush`, and the prefix scans `iter_scan`, `iter_scan_from` and
  `iter_scan_reverse`. Opening a store written with a different format
  version or light-mode setting raises `IndexerError`.
- `chainindex.rows`: the key and value layouts of the stored rows:
  `TxRow`, `TxConfRow`, `TxOutRow`, `BlockRow`, `TxHistoryRow` (with
  `FundingInfo` and `SpendingInfo` entries), `TxEdgeRow`, `StatsCacheRow`,
  `UtxoCacheRow`, `ScriptStats`, and `compute_script_hash` (the SHA-256 of an
  output script, the key of its history).
- `chainindex.fetch`: fetches blocks to index. `parse_blocks(blob, magic)`
  splits the contents of a `blk*.dat` file into `(Block, size)` pairs;
  `start_fetcher(source, daemon, new_headers)` returns a `Fetcher` yielding
  batches of `BlockEntry`, fetched from the node (`FetchFrom.BITCOIND`) or
  read from its block files (`FetchFrom.BLKFILES`).
- `chainindex.indexer`: `Store` (the `txstore`, `history` and `cache`
  databases under one directory), `HeaderList` (the best chain by height and
  hash, with `get_mtp`), and `Indexer`, which first adds transactions,
  outputs and block rows, then indexes history and spend edges.
  `add_blocks`, `index_blocks`, `get_previous_txos`, `lookup_txo` and
  `lookup_txos` are usable on their own.
- `chainindex.precache`: `to_scripthash` turns an `address`, `scripthash` or
  `scriptpubkey` into a script hash; `scripthashes_from_file` reads
  `type,value` lines; `precache(chain, scripthashes)` calls
  `chain.stats(scripthash)` for each of them on 16 threads.
- `chainindex.registry`: `AssetRegistry`, a cache of `AssetMeta` read from
  `<directory>/<2 hex chars>/<asset id>.json` files. `fs_sync()` reloads
  new and changed files, `spawn_sync(interval)` does so on a background
  thread (stop it with its `stop()` method), and `list(start_index, limit,
  sorting)` pages through the assets ordered by an `AssetSorting` (by name,
  domain or ticker, ascending or descending; see
  `AssetSorting.from_query_params`).
- `chainindex.metrics`: `Metrics`, a registry of `Counter`, `Gauge`,
  `Histogram` and labelled `MetricVec` families. `render()` returns them in
  the Prometheus text format; `start()` serves them over HTTP and exports the
  process's CPU time, resident memory and open file count every 5 seconds.
- `chainindex.errors`: `IndexerError` and its subclasses `ConnectionFailed`,
  `Interrupted` and `TooPopular`.

## The daemon object

The indexer and fetchers talk to the node through an object you supply. It
needs these methods:

- `reconnect()`: return a daemon object to use for this update;
- `getbestblockhash()`: the hash of the best block, as 32 bytes;
- `get_new_headers(header_list, tip)`: the `BlockHeader`s from the indexed
  chain up to `tip`, in chain order;
- `getblocks(hashes)`: the `Block`s with these hashes, in order;
- `magic()` and `list_blk_files()`: the network magic and the paths of the
  `blk*.dat` files, used only with `FetchFrom.BLKFILES`.

## Example

```python
from chainindex.fetch import FetchFrom
from chainindex.indexer import Indexer, IndexerConfig, Store
from chainindex.metrics import Metrics
from chainindex.rows import CODE_HISTORY, TxHistoryRow, compute_script_hash

metrics = Metrics(("127.0.0.1", 4224))
config = IndexerConfig()

with Store.open("/var/lib/chainindex", light_mode=False) as store:
    indexer = Indexer(store, FetchFrom.BITCOIND, config, metrics)
    indexer.update(daemon)  # an object with the methods listed above

    scripthash = compute_script_hash(bytes.fromhex("76a914" + "00" * 20 + "88ac"))
    prefix = TxHistoryRow.filter(CODE_HISTORY, scripthash)
    for row in store.history_db.iter_scan(prefix):
        entry = TxHistoryRow.from_row(row)
        print(entry.key.confirmed_height, entry.txid()[::-1].hex(), entry.key.txinfo)
```

## What the package does not do

- It has no query layer over the index: there is no ready-made call for a
  script's balance, UTXO set, paginated history or block status. Read the
  rows directly with `DB` scans and the classes in `chainindex.rows`, as in
  the example above. `precache` expects such an object with a `stats`
  method to be passed in.
- It does not talk to a node itself: there is no RPC client, only the daemon
  interface described above.
- It has no command-line program and no Electrum or REST server; it is a
  library. The only server it runs is the metrics endpoint of
  `Metrics.start()`.
- It does not turn output scripts into addresses for the address search
  rows; pass an `address_of` function in `IndexerConfig` for that.