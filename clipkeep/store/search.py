from __future__ import annotations

from typing import TYPE_CHECKING

from ..errors import ValidationError
from .types import ClipboardItem, ContentType, utf8_length
from .utils import ITEM_COLUMNS, rows_to_items

if TYPE_CHECKING:
    from ._store import ClipboardStore

SEARCH_RESULT_LIMIT = 100


def recent(store: ClipboardStore, limit: int) -> list[ClipboardItem]:
    if limit <= 0:
        return []
    rows = store.reader().execute(
        f"""
        SELECT {ITEM_COLUMNS}
        FROM clipboard_items
        ORDER BY timestamp DESC, rowid DESC
        LIMIT ?
        """,
        (limit,),
    ).fetchall()
    return rows_to_items(rows)


def search(store: ClipboardStore, query: str, limit: int = SEARCH_RESULT_LIMIT) -> list[ClipboardItem]:
    """Case-insensitive substring search over content, source app and tags.

    The needle is matched with instr() rather than LIKE so "%" and "_" in the
    query are literal characters. Tags are matched one by one, never against
    the stored JSON text.
    """

    if not isinstance(query, str):
        raise ValidationError(f"search query must be text, got {type(query).__name__}")
    utf8_length(query, field="search query")
    limit = min(limit, SEARCH_RESULT_LIMIT)
    needle = query.casefold()
    if not needle.strip():
        return recent(store, limit)
    if limit <= 0:
        return []
    rows = store.reader().execute(
        f"""
        SELECT {ITEM_COLUMNS}
        FROM clipboard_items
        WHERE instr(clip_casefold(content), :needle) > 0
           OR instr(clip_casefold(COALESCE(app_source, '')), :needle) > 0
           OR CASE
                WHEN json_valid(tags) THEN EXISTS (
                    SELECT 1 FROM json_each(clipboard_items.tags) AS tag
                    WHERE instr(clip_casefold(tag.value), :needle) > 0
                )
                ELSE 0
              END
        ORDER BY timestamp DESC, rowid DESC
        LIMIT :limit
        """,
        {"needle": needle, "limit": limit},
    ).fetchall()
    return rows_to_items(rows)


def list_favorites(store: ClipboardStore) -> list[ClipboardItem]:
    rows = store.reader().execute(
        f"""
        SELECT {ITEM_COLUMNS}
        FROM clipboard_items
        WHERE is_favorite = 1
        ORDER BY timestamp DESC, rowid DESC
        """
    ).fetchall()
    return rows_to_items(rows)


def list_by_content_type(
    store: ClipboardStore, content_type: ContentType, limit: int = SEARCH_RESULT_LIMIT
) -> list[ClipboardItem]:
    if limit <= 0:
        return []
    rows = store.reader().execute(
        f"""
        SELECT {ITEM_COLUMNS}
        FROM clipboard_items
        WHERE content_type = ?
        ORDER BY timestamp DESC, rowid DESC
        LIMIT ?
        """,
        (content_type.value, limit),
    ).fetchall()
    return rows_to_items(rows)
