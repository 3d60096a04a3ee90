from __future__ import annotations

import typer
from rich import print

from . import __version__
from .clipboard import ClipboardBackend
from .commands.backup_cmds import (
    backup_auto_cmd,
    backup_create_cmd,
    backup_history_cmd,
    backup_prune_cmd,
    backup_restore_cmd,
)
from .commands.common import clipboard_from_config, configure_logging, store_from_path
from .commands.history_cmds import (
    cleanup_cmd,
    clear_cmd,
    copy_cmd,
    delete_cmd,
    favorite_cmd,
    init_db_cmd,
    list_cmd,
    optimize_cmd,
    search_cmd,
    show_cmd,
    stats_cmd,
    tag_add_cmd,
    tag_remove_cmd,
)
from .commands.monitor_cmds import watch_cmd
from .store import ClipboardStore

app = typer.Typer(help="clipkeep: persistent clipboard history")
tag_app = typer.Typer(help="Manage item tags")
backup_app = typer.Typer(help="Backup and restore the clipboard database")
app.add_typer(tag_app, name="tag")
app.add_typer(backup_app, name="backup")


def _store(db_path: str | None) -> ClipboardStore:
    return store_from_path(db_path)


def _clipboard() -> ClipboardBackend:
    return clipboard_from_config()


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log progress to stderr"),
) -> None:
    configure_logging(verbose)


@app.command()
def init_db(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Create the SQLite database and apply pending migrations."""
    init_db_cmd(store_from_path=_store, db_path=db_path)


@app.command("list")
def list_items(
    limit: int = typer.Option(20, help="Max results"),
    favorites: bool = typer.Option(False, help="Only favorites"),
    content_type: str = typer.Option(None, "--type", help="Filter by content type"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Show recent clipboard items."""
    list_cmd(
        store_from_path=_store,
        db_path=db_path,
        limit=limit,
        favorites=favorites,
        content_type=content_type,
    )


@app.command()
def search(
    query: str,
    limit: int = typer.Option(20, help="Max results"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Search clipboard history."""
    search_cmd(store_from_path=_store, db_path=db_path, query=query, limit=limit)


@app.command()
def show(item_id: str, db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Print a clipboard item as JSON."""
    show_cmd(store_from_path=_store, db_path=db_path, item_id=item_id)


@app.command()
def favorite(
    item_id: str, db_path: str = typer.Option(None, help="Path to SQLite database")
) -> None:
    """Toggle an item's favorite flag."""
    favorite_cmd(store_from_path=_store, db_path=db_path, item_id=item_id)


@app.command()
def delete(item_id: str, db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Delete a clipboard item."""
    delete_cmd(store_from_path=_store, db_path=db_path, item_id=item_id)


@app.command()
def clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Delete the whole clipboard history."""
    clear_cmd(store_from_path=_store, db_path=db_path, yes=yes)


@tag_app.command("add")
def tag_add(
    item_id: str,
    tag: str,
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Attach a tag to an item."""
    tag_add_cmd(store_from_path=_store, db_path=db_path, item_id=item_id, tag=tag)


@tag_app.command("remove")
def tag_remove(
    item_id: str,
    tag: str,
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Detach a tag from an item."""
    tag_remove_cmd(store_from_path=_store, db_path=db_path, item_id=item_id, tag=tag)


@app.command()
def cleanup(
    days: int = typer.Option(30, help="Delete items older than this many days"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Delete old clipboard items."""
    cleanup_cmd(store_from_path=_store, db_path=db_path, days=days)


@app.command()
def stats(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Show database statistics."""
    stats_cmd(store_from_path=_store, db_path=db_path)


@app.command()
def optimize(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Analyze, checkpoint and (when fragmented) vacuum the database."""
    optimize_cmd(store_from_path=_store, db_path=db_path)


@app.command()
def copy(item_id: str, db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Put a stored item back on the clipboard."""
    copy_cmd(
        store_from_path=_store,
        clipboard_factory=_clipboard,
        db_path=db_path,
        item_id=item_id,
    )


@app.command()
def watch(
    duration: float = typer.Option(None, help="Stop after this many seconds"),
    backups: bool = typer.Option(
        None, "--backups/--no-backups", help="Run scheduled backups (defaults to config)"
    ),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Record clipboard changes until interrupted."""
    watch_cmd(
        store_from_path=_store,
        clipboard_factory=_clipboard,
        db_path=db_path,
        duration=duration,
        backups=backups,
    )


@backup_app.command("create")
def backup_create(
    path: str,
    description: str = typer.Option(None, help="Free-form note stored with the job"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Write a backup file."""
    backup_create_cmd(
        store_from_path=_store, db_path=db_path, path=path, description=description
    )


@backup_app.command("restore")
def backup_restore(
    path: str,
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Restore the database from a backup file."""
    backup_restore_cmd(store_from_path=_store, db_path=db_path, path=path)


@backup_app.command("auto")
def backup_auto(
    directory: str = typer.Option(None, help="Backup directory (defaults to config)"),
    keep: int = typer.Option(None, help="Backups to keep (defaults to config)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Write a timestamped backup and prune old ones."""
    backup_auto_cmd(store_from_path=_store, db_path=db_path, directory=directory, keep=keep)


@backup_app.command("prune")
def backup_prune(
    keep: int = typer.Option(10, help="Backups to keep"),
    directory: str = typer.Option(None, help="Backup directory (defaults to config)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Delete the oldest backup files."""
    backup_prune_cmd(store_from_path=_store, db_path=db_path, directory=directory, keep=keep)


@backup_app.command("history")
def backup_history(
    limit: int = typer.Option(50, help="Max jobs"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Show recorded backup and restore jobs."""
    backup_history_cmd(store_from_path=_store, db_path=db_path, limit=limit)


@app.command("version")
def version() -> None:
    """Print version."""

    print(__version__)
