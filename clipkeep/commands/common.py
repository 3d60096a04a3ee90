from __future__ import annotations

import logging

import typer
from rich import print
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from clipkeep.clipboard import ClipboardBackend, get_clipboard
from clipkeep.config import ClipkeepConfig, load_config
from clipkeep.errors import ValidationError
from clipkeep.metrics import MetricsCollector
from clipkeep.store import ClipboardItem, ClipboardStore


def configure_logging(verbose: bool) -> None:
    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=verbose,
    )
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )


def load_config_or_exit() -> ClipkeepConfig:
    try:
        return load_config(strict=True)
    except ValidationError as exc:
        print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=1) from exc


def store_from_path(db_path: str | None) -> ClipboardStore:
    cfg = load_config_or_exit()
    metrics = MetricsCollector(
        slow_operation_ms=cfg.slow_operation_ms,
        memory_threshold_mb=cfg.memory_threshold_mb,
    )
    return ClipboardStore(db_path or cfg.resolved_db_path, metrics=metrics)


def clipboard_from_config() -> ClipboardBackend:
    return get_clipboard()


def fail(message: str, *, cause: BaseException | None = None) -> typer.Exit:
    print(f"[red]{escape(message)}[/red]")
    exit_exc = typer.Exit(code=1)
    if cause is not None:
        exit_exc.__cause__ = cause
    return exit_exc


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / 1024 / 1024:.1f} MB"
    return f"{size / 1024 / 1024 / 1024:.1f} GB"


def item_line(item: ClipboardItem) -> str:
    star = "*" if item.favorite else " "
    preview = item.preview.replace("\n", " ")
    tags = f" #{' #'.join(item.tags)}" if item.tags else ""
    return (
        f"{star} {escape(item.id)} ({item.content_type.value}) "
        f"{escape(preview)}{escape(tags)}"
    )
