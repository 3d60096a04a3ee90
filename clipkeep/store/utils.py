from __future__ import annotations

import sqlite3

from .. import db
from .types import ClipboardItem, ContentType, parse_timestamp

ITEM_COLUMNS = (
    "id, content, content_type, timestamp, app_source, is_favorite, tags, "
    "preview, size_bytes, hash_value"
)


def row_to_item(row: sqlite3.Row) -> ClipboardItem:
    return ClipboardItem(
        id=str(row["id"]),
        content=str(row["content"]),
        content_type=ContentType.parse(row["content_type"]),
        timestamp=parse_timestamp(str(row["timestamp"])),
        source_app=row["app_source"],
        favorite=bool(row["is_favorite"]),
        tags=db.from_json_list(row["tags"]),
    )


def rows_to_items(rows: list[sqlite3.Row]) -> list[ClipboardItem]:
    return [row_to_item(row) for row in rows]
