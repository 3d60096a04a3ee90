from __future__ import annotations

import logging
from pathlib import Path

import pytest

from clipkeep.capture import StoreSubscriber
from clipkeep.clipboard import MemoryClipboard
from clipkeep.metrics import MetricsCollector
from clipkeep.monitor import ChangeMonitor, ClipboardEvent
from clipkeep.store import ClipboardItem, ClipboardStore, ContentType
from clipkeep.store.types import utc_now


def _store(tmp_path: Path) -> ClipboardStore:
    return ClipboardStore(
        tmp_path / "clips.sqlite", metrics=MetricsCollector(check_memory=False)
    )


def _event(content: str) -> ClipboardEvent:
    item = ClipboardItem.new(content)
    return ClipboardEvent(
        item=item, timestamp=utc_now(), source="Terminal", change_type=ContentType.TEXT
    )


def test_monitor_changes_are_persisted(tmp_path: Path) -> None:
    store = _store(tmp_path)
    clipboard = MemoryClipboard()
    monitor = ChangeMonitor(clipboard, debounce_ms=0)
    subscriber = StoreSubscriber(store)
    monitor.add_callback(subscriber)

    for text in ["alpha", "beta", "alpha"]:
        clipboard.set(text, application="Editor")
        monitor.tick()

    assert subscriber.saved == 2
    assert subscriber.duplicates == 1
    assert [item.content for item in subscriber.recent()] == ["beta", "alpha"]
    assert store.recent(10)[0].source_app == "Editor"
    store.close()


def test_history_is_trimmed_to_limit(tmp_path: Path) -> None:
    store = _store(tmp_path)
    subscriber = StoreSubscriber(store, max_history_items=3)

    for i in range(5):
        subscriber.on_change(_event(f"entry {i}"))

    assert subscriber.saved == 5
    assert store.count() == 3
    store.close()


def test_rejected_items_are_counted(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    store = _store(tmp_path)
    subscriber = StoreSubscriber(store)
    event = _event("tagged")
    event.item.tags = ["bad tag"]

    with caplog.at_level(logging.WARNING, logger="clipkeep.capture"):
        subscriber.on_change(event)

    assert subscriber.failures == 1
    assert "rejected clipboard item from Terminal" in caplog.text
    store.close()


def test_storage_failures_do_not_escape(tmp_path: Path) -> None:
    store = _store(tmp_path)
    subscriber = StoreSubscriber(store)
    store.close()

    subscriber.on_change(_event("too late"))

    assert subscriber.failures == 1
    assert subscriber.saved == 0
