from __future__ import annotations

import contextlib
import datetime as dt
import itertools
import logging
import sqlite3
import threading
import weakref
from collections import OrderedDict
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from .. import db
from ..errors import MigrationError, NotFoundError, StorageError
from ..metrics import MetricsCollector
from ..migrations import MigrationRunner
from . import maintenance as store_maintenance
from . import search as store_search
from . import tags as store_tags
from .types import (
    ClipboardItem,
    ContentType,
    StoreMetrics,
    StoreStats,
    format_timestamp,
    utc_now,
)
from .utils import ITEM_COLUMNS, row_to_item

logger = logging.getLogger(__name__)

MONITOR_HISTORY_LIMIT = 50
DEFAULT_LIST_LIMIT = 100
DEFAULT_CACHE_SIZE = 256
_METRIC_PREFIX = "store."


class ClipboardStore:
    """Clipboard history persisted in a single SQLite file.

    Writes go through one connection guarded by a re-entrant lock. Reads use a
    connection per thread so they see the last committed state without waiting
    for the writer.
    """

    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        migrations_dir: Path | str | None = None,
        metrics: MetricsCollector | None = None,
        cache_size: int = DEFAULT_CACHE_SIZE,
    ):
        self.db_path = Path(db_path).expanduser()
        self.metrics_collector = metrics or MetricsCollector()
        self._write_lock = threading.RLock()
        self._local = threading.local()
        self._readers: dict[int, sqlite3.Connection] = {}
        self._reader_ids = itertools.count()
        self._readers_lock = threading.Lock()
        self._closed = False

        self._cache_size = max(0, int(cache_size))
        self._cache: OrderedDict[str, ClipboardItem] = OrderedDict()
        self._cache_lock = threading.Lock()
        self._cache_hits = 0
        self._cache_misses = 0
        self._storage_errors = 0

        try:
            self.conn = db.connect(self.db_path, check_same_thread=False)
        except sqlite3.Error as exc:
            raise StorageError(f"cannot open database {self.db_path}: {exc}") from exc
        self.migration_runner = MigrationRunner(self.conn, migrations_dir)
        try:
            with self._write_lock:
                self.migration_runner.apply_pending()
                store_maintenance.backfill_derived(self)
        except (MigrationError, sqlite3.Error) as exc:
            self.conn.close()
            self._closed = True
            if isinstance(exc, MigrationError):
                raise
            raise StorageError(f"cannot initialize database {self.db_path}: {exc}") from exc

    def __enter__(self) -> ClipboardStore:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @staticmethod
    def now_iso() -> str:
        return format_timestamp(utc_now())

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def write_lock(self) -> threading.RLock:
        return self._write_lock

    def _check_open(self) -> None:
        if self._closed:
            raise StorageError("store is closed")

    def reader(self) -> sqlite3.Connection:
        self._check_open()
        holder = getattr(self._local, "holder", None)
        if holder is None:
            conn = db.connect(self.db_path, check_same_thread=False)
            holder = _ReaderHolder(conn)
            key = next(self._reader_ids)
            with self._readers_lock:
                self._readers[key] = conn
            # Thread-local storage is dropped when its thread exits.
            weakref.finalize(holder, _release_reader, self._readers, self._readers_lock, key)
            self._local.holder = holder
        return holder.conn

    def reader_count(self) -> int:
        with self._readers_lock:
            return len(self._readers)

    @contextlib.contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        self._check_open()
        with self.metrics_collector.track(_METRIC_PREFIX + name):
            try:
                yield
            except sqlite3.Error as exc:
                with self._cache_lock:
                    self._storage_errors += 1
                logger.error("store operation %s failed: %s", name, exc)
                raise StorageError(f"{name} failed: {exc}") from exc

    @contextlib.contextmanager
    def _writing(self, name: str) -> Iterator[sqlite3.Connection]:
        with self._operation(name), self._write_lock:
            self._check_open()
            yield self.conn

    # Item cache

    def _cache_get(self, item_id: str) -> ClipboardItem | None:
        with self._cache_lock:
            item = self._cache.get(item_id)
            if item is None:
                self._cache_misses += 1
                return None
            self._cache.move_to_end(item_id)
            self._cache_hits += 1
            return _copy_item(item)

    def _cache_put(self, item: ClipboardItem) -> None:
        if self._cache_size == 0:
            return
        with self._cache_lock:
            self._cache[item.id] = _copy_item(item)
            self._cache.move_to_end(item.id)
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)

    def _cache_drop(self, item_id: str) -> None:
        with self._cache_lock:
            self._cache.pop(item_id, None)

    def invalidate_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def trim_cache(self) -> int:
        """Drop the older half of the cache, returning how many entries went."""

        with self._cache_lock:
            drop = len(self._cache) // 2
            for _ in range(drop):
                self._cache.popitem(last=False)
        return drop

    # Items

    def save(self, item: ClipboardItem) -> bool:
        """Persist ``item``. Returns False when identical content is already stored."""

        item.validate()
        now = self.now_iso()
        with self._writing("save") as conn, db.transaction(conn):
            existing = conn.execute(
                "SELECT 1 FROM clipboard_items WHERE id = ?", (item.id,)
            ).fetchone()
            if existing is not None:
                conn.execute(
                    """
                    UPDATE clipboard_items
                    SET is_favorite = ?, tags = ?, app_source = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        int(item.favorite),
                        store_tags.serialize_tags(item.tags),
                        item.source_app,
                        now,
                        item.id,
                    ),
                )
                self._cache_drop(item.id)
                return True
            hash_value = item.hash_value
            duplicate = conn.execute(
                "SELECT id FROM clipboard_items WHERE hash_value = ? AND content = ? LIMIT 1",
                (hash_value, item.content),
            ).fetchone()
            if duplicate is None:
                duplicate = conn.execute(
                    "SELECT id FROM clipboard_items WHERE hash_value IS NULL AND content = ? LIMIT 1",
                    (item.content,),
                ).fetchone()
            if duplicate is not None:
                logger.debug("skipping duplicate of item %s", duplicate["id"])
                return False
            conn.execute(
                """
                INSERT INTO clipboard_items(
                    id, content, content_type, timestamp, app_source, is_favorite, tags,
                    created_at, updated_at, preview, size_bytes, hash_value
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    item.id,
                    item.content,
                    item.content_type.value,
                    format_timestamp(item.timestamp),
                    item.source_app,
                    int(item.favorite),
                    store_tags.serialize_tags(item.tags),
                    now,
                    now,
                    item.preview,
                    item.size_bytes,
                    hash_value,
                ),
            )
        return True

    def get(self, item_id: str) -> ClipboardItem:
        with self._operation("get"):
            cached = self._cache_get(item_id)
            if cached is not None:
                return cached
            row = self.reader().execute(
                f"SELECT {ITEM_COLUMNS} FROM clipboard_items WHERE id = ?", (item_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"item {item_id}")
            item = row_to_item(row)
            self._cache_put(item)
            return item

    def recent(self, limit: int = DEFAULT_LIST_LIMIT) -> list[ClipboardItem]:
        with self._operation("recent"):
            return store_search.recent(self, limit)

    def search(self, query: str, limit: int = DEFAULT_LIST_LIMIT) -> list[ClipboardItem]:
        with self._operation("search"):
            return store_search.search(self, query, limit)

    def list_favorites(self) -> list[ClipboardItem]:
        with self._operation("list_favorites"):
            return store_search.list_favorites(self)

    def list_by_content_type(
        self, content_type: ContentType | str, limit: int = DEFAULT_LIST_LIMIT
    ) -> list[ClipboardItem]:
        with self._operation("list_by_content_type"):
            return store_search.list_by_content_type(self, ContentType.parse(content_type), limit)

    def toggle_favorite(self, item_id: str) -> bool:
        with self._writing("toggle_favorite") as conn, db.transaction(conn):
            row = conn.execute(
                "SELECT is_favorite FROM clipboard_items WHERE id = ?", (item_id,)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"item {item_id}")
            favorite = not bool(row["is_favorite"])
            conn.execute(
                "UPDATE clipboard_items SET is_favorite = ?, updated_at = ? WHERE id = ?",
                (int(favorite), self.now_iso(), item_id),
            )
            self._cache_drop(item_id)
        return favorite

    def delete(self, item_id: str) -> None:
        with self._writing("delete") as conn:
            cur = conn.execute("DELETE FROM clipboard_items WHERE id = ?", (item_id,))
            self._cache_drop(item_id)
            if cur.rowcount == 0:
                raise NotFoundError(f"item {item_id}")

    def clear(self) -> int:
        with self._writing("clear") as conn:
            cur = conn.execute("DELETE FROM clipboard_items")
            self.invalidate_cache()
        logger.info("cleared %s items", cur.rowcount)
        return int(cur.rowcount or 0)

    def add_tag(self, item_id: str, tag: str) -> list[str]:
        with self._writing("add_tag"):
            tags = store_tags.add_tag(self, item_id, tag)
            self._cache_drop(item_id)
        return tags

    def remove_tag(self, item_id: str, tag: str) -> list[str]:
        with self._writing("remove_tag"):
            tags = store_tags.remove_tag(self, item_id, tag)
            self._cache_drop(item_id)
        return tags

    def cleanup_older_than(self, max_age: dt.timedelta) -> int:
        with self._writing("cleanup_older_than"):
            removed = store_maintenance.cleanup_older_than(self, max_age)
            if removed:
                self.invalidate_cache()
        if removed:
            logger.info("removed %s items older than %s", removed, max_age)
        return removed

    def trim_history(self, max_items: int) -> int:
        with self._writing("trim_history"):
            removed = store_maintenance.trim_history(self, max_items)
            if removed:
                self.invalidate_cache()
        return removed

    def count(self) -> int:
        with self._operation("count"):
            row = self.reader().execute("SELECT COUNT(*) AS total FROM clipboard_items").fetchone()
            return int(row["total"])

    def stats(self) -> StoreStats:
        with self._operation("stats"):
            return store_maintenance.stats(self)

    def health_check(self) -> dict[str, Any]:
        self._check_open()
        return store_maintenance.health_check(self)

    def optimize(self) -> dict[str, Any]:
        with self._writing("optimize"):
            return store_maintenance.optimize(self)

    def schema_version(self) -> int:
        with self._operation("schema_version"), self._write_lock:
            return self.migration_runner.current_version()

    def run_migrations(self) -> int:
        """Apply pending migrations and refresh derived columns; returns the new version."""

        with self._writing("run_migrations"):
            self.migration_runner.apply_pending()
            store_maintenance.backfill_derived(self)
            return self.migration_runner.current_version()

    def metrics(self) -> StoreMetrics:
        snapshot = self.metrics_collector.snapshot()
        store_stats = [stats for name, stats in snapshot.items() if name.startswith(_METRIC_PREFIX)]
        operations = sum(stats.count for stats in store_stats)
        total_ms = sum(stats.total_ms for stats in store_stats)
        with self._cache_lock:
            hits, misses = self._cache_hits, self._cache_misses
            errors = self._storage_errors
        return StoreMetrics(
            operations=operations,
            average_latency_ms=(total_ms / operations) if operations else 0.0,
            cache_hits=hits,
            cache_misses=misses,
            errors=errors,
        )

    def close(self) -> None:
        with self._write_lock:
            if self._closed:
                return
            self._closed = True
            with self._readers_lock:
                readers = list(self._readers.values())
                self._readers.clear()
            for conn in readers:
                conn.close()
            self.conn.close()
        self.invalidate_cache()


class _ReaderHolder:
    __slots__ = ("conn", "__weakref__")

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn


def _release_reader(
    readers: dict[int, sqlite3.Connection], lock: threading.Lock, key: int
) -> None:
    with lock:
        conn = readers.pop(key, None)
    if conn is not None:
        conn.close()


def _copy_item(item: ClipboardItem) -> ClipboardItem:
    return ClipboardItem(
        id=item.id,
        content=item.content,
        content_type=item.content_type,
        timestamp=item.timestamp,
        source_app=item.source_app,
        favorite=item.favorite,
        tags=list(item.tags),
    )
