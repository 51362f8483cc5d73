"""Asset metadata registry backed by a directory of JSON files."""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from chainindex.errors import IndexerError

logger = logging.getLogger(__name__)

# Length of the asset id prefix used for sub-directory partitioning, in hex characters.
DIR_PARTITION_LEN = 2

_ASSET_ID_RE = re.compile(r"[0-9a-fA-F]{64}")


@dataclass
class AssetMeta:
    """Registry metadata describing one asset."""

    precision: int
    name: str
    ticker: str | None = None
    contract: Any = None
    entity: Any = None

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> AssetMeta:
        if not isinstance(data, Mapping):
            raise ValueError("asset metadata must be a JSON object")
        precision = data.get("precision")
        if isinstance(precision, bool) or not isinstance(precision, int) or not 0 <= precision <= 255:
            raise ValueError("invalid precision")
        name = data.get("name")
        if not isinstance(name, str):
            raise ValueError("invalid name")
        ticker = data.get("ticker")
        if ticker is not None and not isinstance(ticker, str):
            raise ValueError("invalid ticker")
        return cls(
            precision=precision,
            name=name,
            ticker=ticker,
            contract=data.get("contract"),
            entity=data.get("entity"),
        )

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.contract is not None:
            out["contract"] = self.contract
        if self.entity is not None:
            out["entity"] = self.entity
        out["precision"] = self.precision
        out["name"] = self.name
        if self.ticker is not None:
            out["ticker"] = self.ticker
        return out

    def domain(self) -> str | None:
        if isinstance(self.entity, Mapping):
            value = self.entity.get("domain")
            if isinstance(value, str):
                return value
        return None


class AssetSortField(Enum):
    NAME = "name"
    DOMAIN = "domain"
    TICKER = "ticker"


class AssetSortDir(Enum):
    ASCENDING = "asc"
    DESCENDING = "desc"


AssetEntry = tuple[str, AssetMeta]


@dataclass(frozen=True)
class AssetSorting:
    """How a listing of registry assets is ordered."""

    field: AssetSortField = AssetSortField.TICKER
    direction: AssetSortDir = AssetSortDir.ASCENDING

    @classmethod
    def from_query_params(cls, query: Mapping[str, str]) -> AssetSorting:
        try:
            field = AssetSortField(query.get("sort_field", "ticker"))
        except ValueError:
            raise IndexerError("invalid sort field") from None
        try:
            direction = AssetSortDir(query.get("sort_dir", "asc"))
        except ValueError:
            raise IndexerError("invalid sort direction") from None
        return cls(field, direction)

    def sort(self, entries) -> list[AssetEntry]:
        if self.field is AssetSortField.NAME:
            # Names are not unique, so the asset id breaks ties.
            def key(entry):
                return entry[1].name.lower(), entry[0]
        elif self.field is AssetSortField.DOMAIN:
            def key(entry):
                domain = entry[1].domain()
                return domain is not None, domain or ""
        else:
            def key(entry):
                ticker = entry[1].ticker
                return ticker is not None, ticker.lower() if ticker is not None else ""
        return sorted(entries, key=key, reverse=self.direction is AssetSortDir.DESCENDING)


def _parse_asset_id(text: str) -> str:
    if not _ASSET_ID_RE.fullmatch(text):
        raise IndexerError("invalid filename")
    return text.lower()


class _RegistrySync(threading.Thread):
    def __init__(self, registry: AssetRegistry, interval: float) -> None:
        super().__init__(name="registry-sync", daemon=True)
        self._registry = registry
        self._interval = interval
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.is_set():
            try:
                self._registry.fs_sync()
            except IndexerError as err:
                logger.error("registry fs_sync failed: %r", err)
            self._stopped.wait(self._interval)

    def stop(self) -> None:
        self._stopped.set()


class AssetRegistry:
    """In-memory cache of asset metadata kept in step with a directory."""

    def __init__(self, directory) -> None:
        self.directory = Path(directory)
        self._cache: dict[str, tuple[int, AssetMeta]] = {}
        self._lock = threading.RLock()

    def get(self, asset_id: str) -> AssetMeta | None:
        with self._lock:
            cached = self._cache.get(asset_id.lower())
        return cached[1] if cached else None

    def list(self, start_index: int, limit: int, sorting: AssetSorting) -> tuple[int, list[AssetEntry]]:
        with self._lock:
            entries = [(asset_id, meta) for asset_id, (_, meta) in self._cache.items()]
        ordered = sorting.sort(entries)
        return len(ordered), ordered[start_index:start_index + limit]

    def fs_sync(self) -> None:
        """Load new and changed metadata files from the registry directory."""
        try:
            subdirs = list(os.scandir(self.directory))
        except OSError as err:
            raise IndexerError("failed reading asset dir") from err
        with self._lock:
            for subdir in subdirs:
                if not subdir.is_dir(follow_symlinks=False):
                    continue
                if len(os.fsencode(subdir.name)) != DIR_PARTITION_LEN:
                    continue
                try:
                    files = list(os.scandir(subdir.path))
                except OSError as err:
                    raise IndexerError("failed reading asset subdir") from err
                for file_entry in files:
                    self._sync_file(file_entry)

    def _sync_file(self, file_entry: os.DirEntry) -> None:
        path = Path(file_entry.path)
        if path.suffix != ".json":
            return
        asset_id = _parse_asset_id(path.stem)
        try:
            modified = file_entry.stat(follow_symlinks=False).st_mtime_ns
        except OSError as err:
            raise IndexerError("failed reading metadata") from err
        cached = self._cache.get(asset_id)
        if cached is not None and cached[0] == modified:
            return
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as err:
            raise IndexerError("failed reading file") from err
        try:
            meta = AssetMeta.from_json(json.loads(text))
        except ValueError as err:
            raise IndexerError("failed parsing file") from err
        self._cache[asset_id] = (modified, meta)

    def spawn_sync(self, interval: float = 15.0) -> _RegistrySync:
        """Start a background thread that re-syncs every ``interval`` seconds.

        The returned thread has a ``stop()`` method.
        """
        thread = _RegistrySync(self, interval)
        thread.start()
        return thread