from __future__ import annotations

import time

from rich import print
from rich.markup import escape

from clipkeep.backup import BackupCoordinator, BackupScheduler
from clipkeep.capture import StoreSubscriber
from clipkeep.monitor import ChangeMonitor

from .common import load_config_or_exit


def watch_cmd(
    *,
    store_from_path,
    clipboard_factory,
    db_path: str | None,
    duration: float | None,
    backups: bool | None,
) -> None:
    """Capture clipboard changes into the store until interrupted."""

    cfg = load_config_or_exit()
    store = store_from_path(db_path)
    monitor = ChangeMonitor(
        clipboard_factory(),
        poll_interval_ms=cfg.poll_interval_ms,
        debounce_ms=cfg.debounce_ms,
        ignore_applications=cfg.ignore_applications,
        metrics=store.metrics_collector,
    )
    subscriber = StoreSubscriber(store, max_history_items=cfg.max_history_items)
    monitor.add_callback(subscriber)

    scheduler: BackupScheduler | None = None
    if cfg.backup_enabled if backups is None else backups:
        scheduler = BackupScheduler(
            BackupCoordinator(store),
            cfg.resolved_backup_dir,
            interval_s=cfg.backup_interval_hours * 3600,
            keep_count=cfg.backup_keep,
        )

    print(f"Watching the clipboard, saving to {escape(str(store.db_path))} (Ctrl+C to stop)")
    monitor.start()
    if scheduler is not None:
        scheduler.start()
    deadline = time.monotonic() + duration if duration else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.2)
    except KeyboardInterrupt:
        pass
    finally:
        if scheduler is not None:
            scheduler.stop()
        monitor.stop()
        store.close()
    stats = monitor.statistics()
    print(
        f"Captured {subscriber.saved} new items "
        f"({stats.total_changes_detected} changes, {subscriber.duplicates} duplicates)"
    )
