from __future__ import annotations

import datetime as dt
import json

import typer
from rich import print
from rich.markup import escape

from clipkeep.clipboard import ClipboardContent
from clipkeep.errors import ClipboardAccessError, NotFoundError, ValidationError

from .common import fail, format_bytes, item_line


def init_db_cmd(*, store_from_path, db_path: str | None) -> None:
    """Create the SQLite database and apply pending migrations."""

    store = store_from_path(db_path)
    try:
        version = store.schema_version()
        print(f"Initialized database at {escape(str(store.db_path))} (schema v{version})")
    finally:
        store.close()


def list_cmd(
    *,
    store_from_path,
    db_path: str | None,
    limit: int,
    favorites: bool,
    content_type: str | None,
) -> None:
    """Show recent clipboard items, newest first."""

    store = store_from_path(db_path)
    try:
        if favorites:
            items = store.list_favorites()[:limit]
        elif content_type:
            items = store.list_by_content_type(content_type, limit=limit)
        else:
            items = store.recent(limit)
        if not items:
            print("No clipboard items")
            return
        for item in items:
            print(item_line(item))
    finally:
        store.close()


def search_cmd(*, store_from_path, db_path: str | None, query: str, limit: int) -> None:
    """Search clipboard history (case-insensitive substring)."""

    store = store_from_path(db_path)
    try:
        try:
            items = store.search(query, limit=limit)
        except ValidationError as exc:
            raise fail(str(exc), cause=exc) from exc
        if not items:
            print(f"No items match {escape(query)!r}")
            return
        for item in items:
            print(item_line(item))
    finally:
        store.close()


def show_cmd(*, store_from_path, db_path: str | None, item_id: str) -> None:
    """Print a clipboard item as JSON."""

    store = store_from_path(db_path)
    try:
        try:
            item = store.get(item_id)
        except NotFoundError as exc:
            raise fail(f"Item {item_id} not found", cause=exc) from exc
        typer.echo(json.dumps(item.to_dict(), indent=2, ensure_ascii=False))
    finally:
        store.close()


def favorite_cmd(*, store_from_path, db_path: str | None, item_id: str) -> None:
    """Toggle the favorite flag of an item."""

    store = store_from_path(db_path)
    try:
        try:
            favorite = store.toggle_favorite(item_id)
        except NotFoundError as exc:
            raise fail(f"Item {item_id} not found", cause=exc) from exc
        state = "favorited" if favorite else "unfavorited"
        print(f"{escape(item_id)} {state}")
    finally:
        store.close()


def delete_cmd(*, store_from_path, db_path: str | None, item_id: str) -> None:
    """Delete a single item."""

    store = store_from_path(db_path)
    try:
        try:
            store.delete(item_id)
        except NotFoundError as exc:
            raise fail(f"Item {item_id} not found", cause=exc) from exc
        print(f"Deleted {escape(item_id)}")
    finally:
        store.close()


def clear_cmd(*, store_from_path, db_path: str | None, yes: bool) -> None:
    """Delete every clipboard item."""

    if not yes:
        typer.confirm("Delete the entire clipboard history?", abort=True)
    store = store_from_path(db_path)
    try:
        removed = store.clear()
        print(f"Removed {removed} items")
    finally:
        store.close()


def tag_add_cmd(*, store_from_path, db_path: str | None, item_id: str, tag: str) -> None:
    store = store_from_path(db_path)
    try:
        try:
            tags = store.add_tag(item_id, tag)
        except NotFoundError as exc:
            raise fail(f"Item {item_id} not found", cause=exc) from exc
        except ValidationError as exc:
            raise fail(str(exc), cause=exc) from exc
        print(f"Tags: {escape(', '.join(tags)) or '-'}")
    finally:
        store.close()


def tag_remove_cmd(*, store_from_path, db_path: str | None, item_id: str, tag: str) -> None:
    store = store_from_path(db_path)
    try:
        try:
            tags = store.remove_tag(item_id, tag)
        except NotFoundError as exc:
            raise fail(f"Item {item_id} not found", cause=exc) from exc
        print(f"Tags: {escape(', '.join(tags)) or '-'}")
    finally:
        store.close()


def cleanup_cmd(*, store_from_path, db_path: str | None, days: int) -> None:
    """Delete items older than the given number of days."""

    if days < 0:
        raise fail("--days must be zero or more")
    store = store_from_path(db_path)
    try:
        removed = store.cleanup_older_than(dt.timedelta(days=days))
        print(f"Removed {removed} items older than {days} days")
    finally:
        store.close()


def stats_cmd(*, store_from_path, db_path: str | None) -> None:
    store = store_from_path(db_path)
    try:
        stats = store.stats()
        health = store.health_check()
        metrics = store.metrics()
    finally:
        store.close()

    print("[bold]Database[/bold]")
    print(f"- Path: {escape(str(store.db_path))}")
    print(f"- Size: {format_bytes(stats['database_size_bytes'])}")
    print(f"- Schema version: {stats['schema_version']}")
    print(f"- Healthy: {'yes' if health['healthy'] else 'no'}")

    print("\n[bold]Items[/bold]")
    print(f"- Total: {stats['total_items']} (favorites {stats['favorite_items']})")
    for content_type, total in stats["items_by_type"].items():
        print(f"- {content_type}: {total}")
    print(f"- Content size: {format_bytes(stats['total_size_bytes'])}")
    if stats["oldest_item"]:
        print(f"- Oldest: {stats['oldest_item']}")
        print(f"- Newest: {stats['newest_item']}")

    print("\n[bold]Session[/bold]")
    print(
        f"- Operations: {metrics.operations} "
        f"(avg {metrics.average_latency_ms:.2f}ms, errors {metrics.errors})"
    )


def optimize_cmd(*, store_from_path, db_path: str | None) -> None:
    store = store_from_path(db_path)
    try:
        report = store.optimize()
    finally:
        store.close()
    vacuum = "vacuumed" if report["vacuumed"] else "no vacuum needed"
    print(
        f"Optimized: {report['freelist_count']}/{report['page_count']} free pages, {vacuum}"
    )


def copy_cmd(*, store_from_path, clipboard_factory, db_path: str | None, item_id: str) -> None:
    """Write a stored item back to the system clipboard."""

    store = store_from_path(db_path)
    try:
        try:
            item = store.get(item_id)
        except NotFoundError as exc:
            raise fail(f"Item {item_id} not found", cause=exc) from exc
    finally:
        store.close()
    clipboard = clipboard_factory()
    try:
        clipboard.write(ClipboardContent(content=item.content, content_type=item.content_type))
    except ClipboardAccessError as exc:
        raise fail(str(exc), cause=exc) from exc
    print(f"Copied {escape(item.id)} to the clipboard")
