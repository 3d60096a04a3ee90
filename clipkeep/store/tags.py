from __future__ import annotations

import json
import re
from collections.abc import Iterable
from typing import TYPE_CHECKING

from .. import db
from ..errors import NotFoundError, ValidationError

if TYPE_CHECKING:
    from ._store import ClipboardStore

MAX_TAGS = 50
MAX_TAG_LENGTH = 50
_TAG_RE = re.compile(r"[\w-]+")


def validate_tag(tag: str) -> str:
    if not isinstance(tag, str):
        raise ValidationError(f"tag must be a string, got {type(tag).__name__}")
    if not tag or len(tag) > MAX_TAG_LENGTH:
        raise ValidationError(f"tag must be 1-{MAX_TAG_LENGTH} characters: {tag!r}")
    if not _TAG_RE.fullmatch(tag):
        raise ValidationError(f"tag may only contain letters, digits, '-' and '_': {tag!r}")
    return tag


def validate_tags(tags: Iterable[str]) -> list[str]:
    tags = list(tags)
    for tag in tags:
        validate_tag(tag)
    if len(tags) != len(set(tags)):
        raise ValidationError("tags must be unique")
    if len(tags) > MAX_TAGS:
        raise ValidationError(f"an item can carry at most {MAX_TAGS} tags")
    return tags


def serialize_tags(tags: Iterable[str]) -> str:
    return json.dumps(list(tags), ensure_ascii=False)


def _load_tags(store: ClipboardStore, item_id: str) -> list[str]:
    row = store.conn.execute(
        "SELECT tags FROM clipboard_items WHERE id = ?", (item_id,)
    ).fetchone()
    if row is None:
        raise NotFoundError(f"item {item_id}")
    return db.from_json_list(row["tags"])


def _write_tags(store: ClipboardStore, item_id: str, tags: list[str]) -> None:
    store.conn.execute(
        "UPDATE clipboard_items SET tags = ?, updated_at = ? WHERE id = ?",
        (serialize_tags(tags), store.now_iso(), item_id),
    )


def add_tag(store: ClipboardStore, item_id: str, tag: str) -> list[str]:
    validate_tag(tag)
    with db.transaction(store.conn):
        tags = _load_tags(store, item_id)
        if tag in tags:
            return tags
        if len(tags) >= MAX_TAGS:
            raise ValidationError(f"an item can carry at most {MAX_TAGS} tags")
        tags.append(tag)
        _write_tags(store, item_id, tags)
    return tags


def remove_tag(store: ClipboardStore, item_id: str, tag: str) -> list[str]:
    with db.transaction(store.conn):
        tags = _load_tags(store, item_id)
        if tag not in tags:
            return tags
        tags = [existing for existing in tags if existing != tag]
        _write_tags(store, item_id, tags)
    return tags
