from __future__ import annotations

import datetime as dt
import logging
import sqlite3
import time
from typing import TYPE_CHECKING, Any

from .. import db
from .types import (
    ContentType,
    StoreStats,
    content_hash,
    format_timestamp,
    make_preview,
    utc_now,
)

if TYPE_CHECKING:
    from ._store import ClipboardStore

logger = logging.getLogger(__name__)

VACUUM_FREELIST_RATIO = 0.2


def backfill_derived(store: ClipboardStore) -> int:
    """Fill hash_value, preview and size_bytes for rows that lack a hash.

    Rows written before the columns existed, or restored from an older backup,
    arrive without them.
    """

    conn = store.conn
    with db.transaction(conn):
        rows = conn.execute(
            "SELECT id, content FROM clipboard_items WHERE hash_value IS NULL"
        ).fetchall()
        for row in rows:
            content = str(row["content"])
            conn.execute(
                """
                UPDATE clipboard_items
                SET hash_value = ?, preview = ?, size_bytes = ?
                WHERE id = ?
                """,
                (
                    content_hash(content),
                    make_preview(content),
                    len(content.encode("utf-8")),
                    row["id"],
                ),
            )
    if rows:
        logger.info("backfilled derived columns for %s items", len(rows))
    return len(rows)


def cleanup_older_than(store: ClipboardStore, max_age: dt.timedelta) -> int:
    cutoff = format_timestamp(utc_now() - max_age)
    with db.transaction(store.conn):
        cur = store.conn.execute("DELETE FROM clipboard_items WHERE timestamp < ?", (cutoff,))
    return int(cur.rowcount or 0)


def trim_history(store: ClipboardStore, max_items: int) -> int:
    """Delete the oldest non-favorite items beyond ``max_items``."""

    max_items = max(0, int(max_items))
    with db.transaction(store.conn):
        cur = store.conn.execute(
            """
            DELETE FROM clipboard_items
            WHERE is_favorite = 0
              AND id NOT IN (
                SELECT id FROM clipboard_items
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ?
              )
            """,
            (max_items,),
        )
    return int(cur.rowcount or 0)


def stats(store: ClipboardStore) -> StoreStats:
    conn = store.reader()
    totals = conn.execute(
        """
        SELECT
            COUNT(*) AS total_items,
            COALESCE(SUM(CASE WHEN is_favorite = 1 THEN 1 ELSE 0 END), 0) AS favorite_items,
            COALESCE(SUM(size_bytes), 0) AS total_size_bytes,
            MIN(timestamp) AS oldest_item,
            MAX(timestamp) AS newest_item
        FROM clipboard_items
        """
    ).fetchone()
    by_type = {content_type.value: 0 for content_type in ContentType}
    for row in conn.execute(
        "SELECT content_type, COUNT(*) AS total FROM clipboard_items GROUP BY content_type"
    ).fetchall():
        by_type[str(row["content_type"])] = int(row["total"])
    page_count = int(conn.execute("PRAGMA page_count").fetchone()[0])
    page_size = int(conn.execute("PRAGMA page_size").fetchone()[0])
    version = conn.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations").fetchone()
    return {
        "total_items": int(totals["total_items"]),
        "favorite_items": int(totals["favorite_items"]),
        "items_by_type": by_type,
        "total_size_bytes": int(totals["total_size_bytes"]),
        "oldest_item": totals["oldest_item"],
        "newest_item": totals["newest_item"],
        "database_size_bytes": page_count * page_size,
        "schema_version": int(version[0]),
    }


def health_check(store: ClipboardStore) -> dict[str, Any]:
    started = time.perf_counter()
    try:
        store.reader().execute("SELECT 1").fetchone()
        integrity = store.reader().execute("PRAGMA quick_check").fetchone()[0]
    except sqlite3.Error as exc:
        return {
            "healthy": False,
            "response_time_ms": (time.perf_counter() - started) * 1000.0,
            "checked_at": utc_now().isoformat(),
            "error": f"health check failed: {exc}",
        }
    healthy = str(integrity).lower() == "ok"
    return {
        "healthy": healthy,
        "response_time_ms": (time.perf_counter() - started) * 1000.0,
        "checked_at": utc_now().isoformat(),
        "error": None if healthy else str(integrity),
    }


def optimize(store: ClipboardStore) -> dict[str, Any]:
    conn = store.conn
    logger.info("optimizing database %s", store.db_path)
    conn.execute("ANALYZE")
    page_count = int(conn.execute("PRAGMA page_count").fetchone()[0])
    freelist_count = int(conn.execute("PRAGMA freelist_count").fetchone()[0])
    ratio = (freelist_count / page_count) if page_count else 0.0
    vacuumed = False
    if ratio > VACUUM_FREELIST_RATIO:
        logger.info(
            "database fragmented (%s of %s pages free), running VACUUM", freelist_count, page_count
        )
        conn.execute("VACUUM")
        vacuumed = True
    conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
    conn.execute("PRAGMA optimize")
    conn.execute("PRAGMA shrink_memory")
    trimmed = store.trim_cache()
    logger.info("database optimization completed")
    return {
        "page_count": page_count,
        "freelist_count": freelist_count,
        "freelist_ratio": ratio,
        "vacuumed": vacuumed,
        "cache_entries_dropped": trimmed,
    }
