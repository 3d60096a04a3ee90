from __future__ import annotations

import datetime as dt
import gc
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from clipkeep.errors import NotFoundError, StorageError, ValidationError
from clipkeep.metrics import MetricsCollector
from clipkeep.store import MAX_TAGS, ClipboardItem, ClipboardStore, ContentType
from clipkeep.store.types import MAX_CONTENT_BYTES, utc_now


def _store(tmp_path: Path) -> ClipboardStore:
    return ClipboardStore(
        tmp_path / "clips.sqlite", metrics=MetricsCollector(check_memory=False)
    )


def _item(content: str, *, age: dt.timedelta = dt.timedelta(0), **kwargs) -> ClipboardItem:
    return ClipboardItem.new(content, timestamp=utc_now() - age, **kwargs)


def test_distinct_saves_come_back_newest_first(tmp_path: Path) -> None:
    store = _store(tmp_path)
    base = utc_now() - dt.timedelta(hours=1)
    items = [
        ClipboardItem.new(f"clip {i}", timestamp=base + dt.timedelta(seconds=i)) for i in range(12)
    ]
    for item in items:
        assert store.save(item) is True

    recent = store.recent(1000)

    assert [item.id for item in recent] == [item.id for item in reversed(items)]
    assert [item.content for item in recent] == [item.content for item in reversed(items)]
    assert store.count() == 12
    assert [item.id for item in store.recent(3)] == [item.id for item in reversed(items[-3:])]
    assert store.recent(0) == []
    store.close()


def test_saved_item_round_trips_all_fields(tmp_path: Path) -> None:
    store = _store(tmp_path)
    item = ClipboardItem.new(
        "<b>bold</b>",
        ContentType.HTML,
        source_app="Safari",
        favorite=True,
        tags=["web", "snippet"],
    )
    store.save(item)

    loaded = store.get(item.id)

    assert loaded.to_dict() == item.to_dict()
    store.close()


def test_duplicate_content_is_not_stored_twice(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = _item("same text")
    assert store.save(first) is True

    assert store.save(_item("same text")) is False
    assert store.save(_item("same text", source_app="Terminal")) is False

    assert store.count() == 1
    assert store.recent(10)[0].id == first.id
    store.close()


def test_saving_existing_id_updates_mutable_fields(tmp_path: Path) -> None:
    store = _store(tmp_path)
    item = _item("keep me")
    store.save(item)
    item.favorite = True
    item.tags = ["work"]

    assert store.save(item) is True

    loaded = store.get(item.id)
    assert loaded.favorite is True
    assert loaded.tags == ["work"]
    assert store.count() == 1
    store.close()


def test_toggle_favorite_twice_restores_value(tmp_path: Path) -> None:
    store = _store(tmp_path)
    item = _item("star me")
    store.save(item)

    assert store.toggle_favorite(item.id) is True
    assert store.get(item.id).favorite is True
    assert [fav.id for fav in store.list_favorites()] == [item.id]
    assert store.toggle_favorite(item.id) is False
    assert store.get(item.id).favorite is False
    assert store.list_favorites() == []
    store.close()


def test_unknown_ids_raise_not_found(tmp_path: Path) -> None:
    store = _store(tmp_path)
    missing = "00000000-0000-4000-8000-000000000000"

    with pytest.raises(NotFoundError):
        store.toggle_favorite(missing)
    with pytest.raises(NotFoundError):
        store.get(missing)
    with pytest.raises(NotFoundError):
        store.delete(missing)
    with pytest.raises(NotFoundError):
        store.add_tag(missing, "work")
    store.close()


def test_search_is_case_insensitive_substring(tmp_path: Path) -> None:
    store = _store(tmp_path)
    hello = _item("Hello world")
    store.save(hello)
    store.save(_item("Rust programming"))

    assert [item.id for item in store.search("Hello")] == [hello.id]
    assert [item.id for item in store.search("hello")] == [hello.id]
    assert [item.id for item in store.search("WORLD")] == [hello.id]
    assert store.search("xyz") == []
    store.close()


def test_search_treats_wildcards_literally(tmp_path: Path) -> None:
    store = _store(tmp_path)
    percent = _item("100% sure")
    store.save(percent)
    store.save(_item("plain text"))
    store.save(_item("snake_case"))

    assert [item.id for item in store.search("%")] == [percent.id]
    assert [item.content for item in store.search("_")] == ["snake_case"]
    store.close()


def test_search_matches_tags_and_source_app(tmp_path: Path) -> None:
    store = _store(tmp_path)
    tagged = _item("alpha", tags=["project-x"])
    sourced = _item("beta", source_app="Terminal", age=dt.timedelta(seconds=5))
    store.save(tagged)
    store.save(sourced)

    assert [item.id for item in store.search("project-x")] == [tagged.id]
    assert [item.id for item in store.search("terminal")] == [sourced.id]
    store.close()


def test_search_matches_tag_values_not_their_encoding(tmp_path: Path) -> None:
    store = _store(tmp_path)
    item = _item("plain words", tags=["alpha", "beta"])
    store.save(item)

    assert store.search('"') == []
    assert store.search(",") == []
    assert store.search("[") == []
    assert [found.id for found in store.search("alp")] == [item.id]
    assert [found.id for found in store.search("BETA")] == [item.id]
    store.close()


def test_search_rejects_queries_that_are_not_text(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(_item("anything"))

    with pytest.raises(ValidationError, match="not valid UTF-8"):
        store.search("\udc80")
    with pytest.raises(ValidationError):
        store.search(42)  # type: ignore[arg-type]

    assert store.count() == 1
    store.close()


def test_blank_search_returns_recent_and_limit_is_capped(tmp_path: Path) -> None:
    store = _store(tmp_path)
    for i in range(120):
        store.save(_item(f"needle {i}", age=dt.timedelta(seconds=i)))

    assert len(store.search("needle", limit=500)) == 100
    assert len(store.search("needle", limit=5)) == 5
    assert [item.id for item in store.search("   ", limit=3)] == [
        item.id for item in store.recent(3)
    ]
    store.close()


def test_cleanup_older_than_removes_only_old_items(tmp_path: Path) -> None:
    store = _store(tmp_path)
    old = _item("ancient", age=dt.timedelta(days=40))
    store.save(old)
    store.save(_item("last week", age=dt.timedelta(days=10)))
    store.save(_item("just now"))

    assert store.cleanup_older_than(dt.timedelta(days=30)) == 1

    contents = {item.content for item in store.recent(10)}
    assert contents == {"last week", "just now"}
    with pytest.raises(NotFoundError):
        store.get(old.id)
    store.close()


def test_trim_history_keeps_favorites(tmp_path: Path) -> None:
    store = _store(tmp_path)
    favorite = _item("pinned", age=dt.timedelta(minutes=30), favorite=True)
    store.save(favorite)
    for i in range(5):
        store.save(_item(f"entry {i}", age=dt.timedelta(minutes=i)))

    removed = store.trim_history(2)

    assert removed == 3
    remaining = store.recent(10)
    assert {item.content for item in remaining} == {"entry 0", "entry 1", "pinned"}
    store.close()


def test_tags_are_idempotent_and_bounded(tmp_path: Path) -> None:
    store = _store(tmp_path)
    item = _item("tag me")
    store.save(item)

    assert store.add_tag(item.id, "work") == ["work"]
    assert store.add_tag(item.id, "work") == ["work"]
    assert store.add_tag(item.id, "urgent") == ["work", "urgent"]
    assert store.remove_tag(item.id, "missing") == ["work", "urgent"]
    assert store.remove_tag(item.id, "work") == ["urgent"]
    assert store.get(item.id).tags == ["urgent"]

    with pytest.raises(ValidationError):
        store.add_tag(item.id, "has space")

    for i in range(MAX_TAGS - 1):
        store.add_tag(item.id, f"t{i}")
    assert len(store.get(item.id).tags) == MAX_TAGS
    with pytest.raises(ValidationError):
        store.add_tag(item.id, "one-too-many")
    store.close()


def test_invalid_items_are_rejected(tmp_path: Path) -> None:
    store = _store(tmp_path)

    with pytest.raises(ValidationError):
        store.save(_item("x" * (MAX_CONTENT_BYTES + 1)))
    with pytest.raises(ValidationError):
        store.save(_item("bad tags", tags=["ok", "ok"]))
    with pytest.raises(ValidationError):
        store.save(_item("bad tag", tags=["not valid!"]))
    with pytest.raises(ValidationError):
        store.save(_item("long app", source_app="a" * 256))
    with pytest.raises(ValidationError, match="not valid UTF-8"):
        store.save(_item("broken \ud800 text"))
    with pytest.raises(ValidationError, match="source application must be text"):
        store.save(_item("numeric app", source_app=123))
    with pytest.raises(ValidationError, match="not valid UTF-8"):
        store.save(_item("broken app", source_app="Term\udc80inal"))
    bad_id = _item("bad id")
    bad_id.id = "not-a-uuid"
    with pytest.raises(ValidationError):
        store.save(bad_id)

    assert store.count() == 0
    store.close()


def test_delete_and_clear(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = _item("first")
    store.save(first)
    store.save(_item("second"))
    store.save(_item("third"))

    store.delete(first.id)
    assert store.count() == 2
    assert store.clear() == 2
    assert store.count() == 0
    store.close()


def test_list_by_content_type(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(_item("plain"))
    html = ClipboardItem.new("<html><body>hi</body></html>", ContentType.HTML)
    store.save(html)

    assert [item.id for item in store.list_by_content_type("html")] == [html.id]
    assert store.list_by_content_type(ContentType.IMAGE) == []
    store.close()


def test_stats_and_health(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(_item("abc", favorite=True))
    store.save(ClipboardItem.new("/tmp/file.txt", ContentType.FILE))

    stats = store.stats()
    health = store.health_check()

    assert stats["total_items"] == 2
    assert stats["favorite_items"] == 1
    assert stats["items_by_type"]["text"] == 1
    assert stats["items_by_type"]["file"] == 1
    assert stats["items_by_type"]["image"] == 0
    assert stats["total_size_bytes"] == 3 + len("/tmp/file.txt")
    assert stats["schema_version"] == 2
    assert stats["database_size_bytes"] > 0
    assert health["healthy"] is True
    assert health["error"] is None
    store.close()


def test_optimize_reports_and_trims_cache(tmp_path: Path) -> None:
    store = _store(tmp_path)
    ids = []
    for i in range(6):
        item = _item(f"cached {i}")
        store.save(item)
        ids.append(item.id)
    for item_id in ids:
        store.get(item_id)

    report = store.optimize()

    assert report["page_count"] > 0
    assert 0.0 <= report["freelist_ratio"] <= 1.0
    assert report["cache_entries_dropped"] == 3
    store.close()


def test_metrics_count_operations_and_cache_hits(tmp_path: Path) -> None:
    store = _store(tmp_path)
    item = _item("metrics")
    store.save(item)

    store.get(item.id)
    store.get(item.id)
    metrics = store.metrics()

    assert metrics.cache_misses == 1
    assert metrics.cache_hits == 1
    assert metrics.operations >= 3
    assert metrics.errors == 0
    assert metrics.average_latency_ms >= 0.0
    store.close()


def test_cached_items_are_copies(tmp_path: Path) -> None:
    store = _store(tmp_path)
    item = _item("copy me")
    store.save(item)

    first = store.get(item.id)
    first.tags.append("mutated")

    assert store.get(item.id).tags == []
    store.close()


def test_concurrent_saves_are_all_persisted(tmp_path: Path) -> None:
    store = _store(tmp_path)
    errors: list[BaseException] = []

    def worker(offset: int) -> None:
        try:
            for i in range(25):
                store.save(_item(f"worker {offset} item {i}"))
                store.recent(5)
        except BaseException as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert store.count() == 100
    store.close()


def test_closed_store_raises_storage_error(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.close()
    store.close()

    assert store.closed is True
    with pytest.raises(StorageError):
        store.recent(10)
    with pytest.raises(StorageError):
        store.save(_item("late"))


def test_reopening_keeps_data_and_schema(tmp_path: Path) -> None:
    item = _item("persistent")
    with _store(tmp_path) as store:
        store.save(item)

    with _store(tmp_path) as store:
        assert store.get(item.id).content == "persistent"
        assert store.schema_version() == 2
        assert store.run_migrations() == 2


def _read_during(
    store: ClipboardStore, action: Callable[[], Any]
) -> tuple[Any, list[frozenset[str]], list[int], list[BaseException]]:
    """Run ``action`` while another thread keeps listing and counting items."""

    seen: list[frozenset[str]] = []
    counts: list[int] = []
    errors: list[BaseException] = []
    first_read = threading.Event()
    done = threading.Event()

    def reader() -> None:
        try:
            while not done.is_set():
                seen.append(frozenset(item.id for item in store.recent(1000)))
                counts.append(store.count())
                first_read.set()
        except BaseException as exc:
            errors.append(exc)
        finally:
            first_read.set()

    thread = threading.Thread(target=reader)
    thread.start()
    first_read.wait(5)
    try:
        result = action()
    finally:
        done.set()
        thread.join(10)
    return result, seen, counts, errors


def test_reads_during_optimize_see_a_stable_history(tmp_path: Path) -> None:
    store = _store(tmp_path)
    for i in range(200):
        store.save(_item(f"{i:04d} " + "x" * 3000, age=dt.timedelta(seconds=i)))
    assert store.trim_history(50) == 150
    kept = frozenset(item.id for item in store.recent(1000))

    report, seen, counts, errors = _read_during(store, store.optimize)

    assert errors == []
    assert report["vacuumed"] is True
    assert seen
    assert all(ids == kept for ids in seen)
    assert set(counts) == {50}
    store.close()


def test_reader_connections_are_released_when_threads_exit(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(_item("shared"))
    assert store.count() == 1
    assert store.reader_count() == 1

    def worker() -> None:
        assert store.count() == 1

    for _ in range(20):
        thread = threading.Thread(target=worker)
        thread.start()
        thread.join()

    deadline = time.monotonic() + 2.0
    while store.reader_count() > 1 and time.monotonic() < deadline:
        gc.collect()
        time.sleep(0.01)

    assert store.reader_count() == 1
    store.close()
    assert store.reader_count() == 0


def test_stats_does_not_wait_for_the_writer(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save(_item("abc"))
    holding = threading.Event()
    release = threading.Event()
    results: list[dict[str, Any]] = []

    def hold_writer() -> None:
        with store.write_lock:
            holding.set()
            release.wait(10)

    holder = threading.Thread(target=hold_writer)
    holder.start()
    assert holding.wait(5)
    worker = threading.Thread(target=lambda: results.append(dict(store.stats())))
    worker.start()
    worker.join(5)
    try:
        assert not worker.is_alive()
        assert results[0]["total_items"] == 1
        assert results[0]["schema_version"] == 2
    finally:
        release.set()
        holder.join()
        worker.join()
    store.close()


def test_storage_errors_are_counted_across_threads(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.conn.execute("DROP VIEW IF EXISTS current_database_stats")
    store.conn.execute("DROP TABLE clipboard_items")
    failures: list[int] = []

    def worker() -> None:
        failed = 0
        for _ in range(50):
            try:
                store.count()
            except StorageError:
                failed += 1
        failures.append(failed)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert failures == [50, 50, 50, 50]
    assert store.metrics().errors == 200
    store.close()
