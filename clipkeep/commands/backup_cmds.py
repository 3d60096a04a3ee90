from __future__ import annotations

from pathlib import Path

from rich import print
from rich.markup import escape

from clipkeep.backup import BackupCoordinator
from clipkeep.errors import NotFoundError, ValidationError
from clipkeep.store import BackupJob

from .common import fail, format_bytes, load_config_or_exit


def _report(job: BackupJob) -> None:
    if job.succeeded:
        size = format_bytes(job.file_size_bytes or 0)
        print(
            f"[green]{job.operation_type.value} completed[/green]: {escape(job.file_path)} "
            f"({job.items_count} items, {size})"
        )
        if job.metadata.skipped_tables:
            print(f"[yellow]Skipped tables: {escape(', '.join(job.metadata.skipped_tables))}[/yellow]")
        return
    raise fail(f"{job.operation_type.value} failed: {job.error_message}")


def backup_create_cmd(
    *, store_from_path, db_path: str | None, path: str, description: str | None
) -> None:
    """Write a full copy of the database to ``path``."""

    store = store_from_path(db_path)
    try:
        job = BackupCoordinator(store).backup(Path(path), description=description)
    finally:
        store.close()
    _report(job)


def backup_restore_cmd(*, store_from_path, db_path: str | None, path: str) -> None:
    """Replace the clipboard history with the contents of a backup."""

    store = store_from_path(db_path)
    try:
        try:
            job = BackupCoordinator(store).restore(Path(path))
        except NotFoundError as exc:
            raise fail(f"Backup file {path} not found", cause=exc) from exc
    finally:
        store.close()
    _report(job)


def backup_auto_cmd(
    *, store_from_path, db_path: str | None, directory: str | None, keep: int | None
) -> None:
    """Write a timestamped backup and prune old ones."""

    cfg = load_config_or_exit()
    target_dir = Path(directory).expanduser() if directory else cfg.resolved_backup_dir
    keep_count = cfg.backup_keep if keep is None else keep
    store = store_from_path(db_path)
    try:
        coordinator = BackupCoordinator(store)
        job = coordinator.schedule_automatic(target_dir)
        removed = coordinator.prune(target_dir, keep_count) if job.succeeded else 0
    except ValidationError as exc:
        raise fail(str(exc), cause=exc) from exc
    finally:
        store.close()
    _report(job)
    if removed:
        print(f"Removed {removed} old backups")


def backup_prune_cmd(
    *, store_from_path, db_path: str | None, directory: str | None, keep: int
) -> None:
    cfg = load_config_or_exit()
    target_dir = Path(directory).expanduser() if directory else cfg.resolved_backup_dir
    store = store_from_path(db_path)
    try:
        removed = BackupCoordinator(store).prune(target_dir, keep)
    except ValidationError as exc:
        raise fail(str(exc), cause=exc) from exc
    finally:
        store.close()
    print(f"Removed {removed} old backups from {escape(str(target_dir))}")


def backup_history_cmd(*, store_from_path, db_path: str | None, limit: int) -> None:
    store = store_from_path(db_path)
    try:
        jobs = BackupCoordinator(store).history(limit)
    finally:
        store.close()
    if not jobs:
        print("No backup or restore jobs recorded")
        return
    for job in jobs:
        line = (
            f"{job.start_time} {job.operation_type.value:<7} {job.status.value:<9} "
            f"{escape(job.file_path)}"
        )
        if job.items_count is not None:
            line += f" ({job.items_count} items)"
        if job.error_message:
            line += f" [red]{escape(job.error_message)}[/red]"
        print(line)
