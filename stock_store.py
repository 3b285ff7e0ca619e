from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

import json
import logging
import os
import queue
import tempfile
import threading
import time
from dataclasses import dataclass, field

try:
    import orjson  # type: ignore
except Exception:  # pragma: no cover - fallback when orjson missing
    orjson = None

from stock_errors import StorageReadError, StorageWriteError


LOGGER = logging.getLogger(__name__)

Record = Dict[str, Any]


class JsonFileStorage:
    """Collection persisted as one pretty-printed JSON array on disk."""

    def __init__(self, path: str, use_orjson: bool = True):
        self.path = path
        self.use_orjson = bool(orjson) and use_orjson

    @property
    def folder(self) -> str:
        return os.path.dirname(os.path.abspath(self.path))

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def stat_token(self) -> str:
        stat = os.stat(self.path)
        return f"{stat.st_mtime_ns}:{stat.st_size}"

    def _loads(self, data: bytes) -> Any:
        if not data:
            return []
        if self.use_orjson:
            return orjson.loads(data)
        return json.loads(data.decode("utf-8"))

    def _dumps(self, data: Any) -> bytes:
        if self.use_orjson:
            # orjson only supports two-space indentation
            return orjson.dumps(data, option=orjson.OPT_INDENT_2)
        return json.dumps(data, indent=4, ensure_ascii=False).encode("utf-8")

    def read(self) -> List[Record]:
        try:
            with open(self.path, "rb") as fh:
                data = self._loads(fh.read())
        except (OSError, ValueError) as exc:
            raise StorageReadError(f"could not read {self.path}: {exc}") from exc
        if not isinstance(data, list):
            raise StorageReadError(f"{self.path} does not hold a JSON array")
        return data

    def write(self, records: List[Record]) -> None:
        directory = self.folder
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".stocks-", suffix=".tmp", dir=directory)
        except OSError as exc:
            raise StorageWriteError(f"could not write {self.path}: {exc}") from exc
        try:
            with os.fdopen(fd, "wb") as tmp_file:
                tmp_file.write(self._dumps(records))
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            os.replace(tmp_path, self.path)
        except (OSError, TypeError) as exc:
            raise StorageWriteError(f"could not write {self.path}: {exc}") from exc
        finally:
            try:
                os.remove(tmp_path)
            except FileNotFoundError:
                pass


class MemoryStorage:
    """In-process stand-in for :class:`JsonFileStorage`."""

    def __init__(self, records: Optional[List[Record]] = None, folder: str = "."):
        self.records = None if records is None else [dict(record) for record in records]
        self.folder = folder
        self.writes = 0

    def exists(self) -> bool:
        return self.records is not None

    def stat_token(self) -> str:
        return str(self.writes)

    def read(self) -> List[Record]:
        if self.records is None:
            raise StorageReadError("no collection stored")
        return [dict(record) if isinstance(record, dict) else record for record in self.records]

    def write(self, records: List[Record]) -> None:
        self.records = [dict(record) for record in records]
        self.writes += 1


class NullProgress:
    def notify(self, message: str) -> None:
        pass


class ProgressBroker:
    """Fans progress messages out to whoever is subscribed right now.

    Delivery is best effort: with no subscribers a message is dropped, and a
    subscriber whose queue is full misses it.
    """

    def __init__(self, maxsize: int = 100):
        self.maxsize = maxsize
        self._lock = threading.Lock()
        self._subscribers: List[queue.Queue] = []

    def subscribe(self) -> queue.Queue:
        subscriber: queue.Queue = queue.Queue(maxsize=self.maxsize)
        with self._lock:
            self._subscribers.append(subscriber)
        return subscriber

    def unsubscribe(self, subscriber: queue.Queue) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def notify(self, message: str) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber.put_nowait(message)
            except queue.Full:
                LOGGER.debug("Dropping progress message for a slow subscriber")


@dataclass
class RefreshReport:
    updated: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"updated": list(self.updated), "failed": [dict(item) for item in self.failed]}


def _symbol_key(symbol: Any) -> str:
    return str(symbol or "").strip().upper()


class CollectionStore:
    """Owns reads and writes of the persisted stock collection.

    ``enrich`` is the enrichment pipeline, called as ``enrich(symbol)`` or
    ``enrich(symbol, market=...)``.
    """

    def __init__(self, storage: Any, enrich: Callable[..., Record], refresh_pause: float = 0.0):
        self.storage = storage
        self.enrich = enrich
        self.refresh_pause = max(0.0, refresh_pause)

    def load(self) -> List[Record]:
        if not self.storage.exists():
            return []
        try:
            records = self.storage.read()
        except StorageReadError as exc:
            LOGGER.error("Could not read stored stocks, starting from an empty collection: %s", exc)
            return []
        return [record for record in records if isinstance(record, dict)]

    def upsert(self, collection: List[Record], record: Record) -> List[Record]:
        key = _symbol_key(record.get("Symbol"))
        for idx, existing in enumerate(collection):
            if _symbol_key(existing.get("Symbol")) == key:
                collection[idx] = record
                return collection
        collection.append(record)
        return collection

    def save(self, collection: List[Record]) -> None:
        self.storage.write(collection)

    def add_symbol(self, symbol: str, market: Optional[str] = None) -> Record:
        if market:
            record = self.enrich(symbol, market=market)
        else:
            record = self.enrich(symbol)
        collection = self.load()
        self.upsert(collection, record)
        self.save(collection)
        return record

    def refresh_all(self, progress: Any = None) -> RefreshReport:
        """Re-enrich every stored symbol in document order.

        A failing symbol is reported and skipped; a storage write failure
        aborts the run.
        """
        progress = progress or NullProgress()
        collection = self.load()
        symbols = [record.get("Symbol") for record in collection if _symbol_key(record.get("Symbol"))]
        total = len(symbols)
        report = RefreshReport()
        LOGGER.info("Refreshing %d stored stocks", total)
        for position, symbol in enumerate(symbols, start=1):
            if position > 1 and self.refresh_pause:
                time.sleep(self.refresh_pause)
            try:
                record = self.enrich(symbol)
            except Exception as exc:
                LOGGER.warning("Refresh failed for %s: %s", symbol, exc)
                report.failed.append({"symbol": symbol, "error": str(exc)})
                progress.notify(f"Failed to update {symbol} ({position}/{total}): {exc}")
                continue
            self.upsert(collection, record)
            self.save(collection)
            report.updated.append(record.get("Symbol") or symbol)
            progress.notify(f"Updated {symbol} ({position}/{total})")
        progress.notify(f"Update finished: {len(report.updated)} updated, {len(report.failed)} failed")
        return report
