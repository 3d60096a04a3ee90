from __future__ import annotations

import datetime as dt
import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import Protocol, runtime_checkable

from .clipboard import ClipboardBackend, ClipboardContent, classify_content
from .metrics import MetricsCollector
from .store.types import ClipboardItem, ContentType, utc_now

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 250
DEFAULT_DEBOUNCE_MS = 100
DEFAULT_STOP_TIMEOUT_S = 5.0
DEFAULT_IGNORED_APPLICATIONS = ("clipkeep", "SystemUIServer", "WindowServer")
UNKNOWN_SOURCE = "Unknown"


@dataclass(frozen=True)
class ClipboardEvent:
    item: ClipboardItem
    timestamp: dt.datetime
    source: str
    change_type: ContentType


@dataclass
class ClipboardStatistics:
    total_changes_detected: int = 0
    text_changes: int = 0
    image_changes: int = 0
    file_changes: int = 0
    html_changes: int = 0
    unknown_changes: int = 0
    last_change: dt.datetime | None = None
    average_change_interval_seconds: float = 0.0
    _last_change_monotonic: float | None = field(default=None, repr=False)

    def record(self, change_type: ContentType, at: dt.datetime, monotonic_now: float) -> None:
        self.total_changes_detected += 1
        counter = f"{change_type.value}_changes"
        setattr(self, counter, getattr(self, counter) + 1)
        if self._last_change_monotonic is not None and self.total_changes_detected > 1:
            gap = max(0.0, monotonic_now - self._last_change_monotonic)
            intervals = self.total_changes_detected - 1
            self.average_change_interval_seconds += (
                gap - self.average_change_interval_seconds
            ) / intervals
        self._last_change_monotonic = monotonic_now
        self.last_change = at


@runtime_checkable
class ChangeSubscriber(Protocol):
    def on_change(self, event: ClipboardEvent) -> None: ...


class CallbackSubscriber:
    def __init__(self, callback: Callable[[ClipboardEvent], None]) -> None:
        self.callback = callback

    def on_change(self, event: ClipboardEvent) -> None:
        self.callback(event)

    def __repr__(self) -> str:
        return f"CallbackSubscriber({self.callback!r})"


class ChangeMonitor:
    """Polls a clipboard backend and fans accepted changes out to subscribers.

    The running state, the last-seen cache, the subscriber list and the
    statistics each have their own lock. Subscribers run on the poll thread, in
    registration order, one exception at a time isolated from the others.
    """

    def __init__(
        self,
        clipboard: ClipboardBackend,
        *,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        ignore_applications: Iterable[str] = DEFAULT_IGNORED_APPLICATIONS,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.clipboard = clipboard
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self.debounce_ms = max(0, int(debounce_ms))
        self.ignore_applications = frozenset(ignore_applications)
        self.metrics = metrics
        self._clock = clock

        self._state_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop: threading.Event | None = None

        self._seen_lock = threading.Lock()
        self._last_seen: str | None = None
        self._last_change_at: float | None = None
        self._write_seq = 0

        self._subscribers_lock = threading.Lock()
        self._subscribers: list[ChangeSubscriber] = []

        self._stats_lock = threading.Lock()
        self._stats = ClipboardStatistics()

        self.ticks = 0

    # Lifecycle

    def start(self) -> None:
        with self._state_lock:
            if self._thread is not None:
                return
            stop = threading.Event()
            thread = threading.Thread(
                target=self._run, args=(stop,), name="clipkeep-monitor", daemon=True
            )
            self._stop = stop
            self._thread = thread
            thread.start()
        logger.info("clipboard monitor started (poll every %sms)", self.poll_interval_ms)

    def stop(self, timeout: float | None = DEFAULT_STOP_TIMEOUT_S) -> None:
        with self._state_lock:
            thread, stop = self._thread, self._stop
            self._thread = None
            self._stop = None
        if thread is None or stop is None:
            return
        stop.set()
        if thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("clipboard monitor did not stop within %ss", timeout)
        logger.info("clipboard monitor stopped")

    def is_monitoring(self) -> bool:
        with self._state_lock:
            return self._thread is not None

    def _run(self, stop: threading.Event) -> None:
        interval_s = self.poll_interval_ms / 1000.0
        while not stop.wait(interval_s):
            self.tick()

    # Subscribers

    def add_callback(
        self, subscriber: ChangeSubscriber | Callable[[ClipboardEvent], None]
    ) -> ChangeSubscriber:
        if isinstance(subscriber, ChangeSubscriber):
            registered: ChangeSubscriber = subscriber
        elif callable(subscriber):
            registered = CallbackSubscriber(subscriber)
        else:
            raise TypeError("subscriber must define on_change() or be callable")
        with self._subscribers_lock:
            self._subscribers.append(registered)
            total = len(self._subscribers)
        logger.debug("added clipboard subscriber, total: %s", total)
        return registered

    def remove_callback(self, subscriber: ChangeSubscriber) -> bool:
        with self._subscribers_lock:
            for index, existing in enumerate(self._subscribers):
                if existing is subscriber:
                    del self._subscribers[index]
                    return True
        return False

    def subscriber_count(self) -> int:
        with self._subscribers_lock:
            return len(self._subscribers)

    # Polling

    def tick(self) -> ClipboardEvent | None:
        """Run one poll. Returns the dispatched event, if any."""

        with self._state_lock:
            self.ticks += 1
        try:
            current = self.clipboard.read()
        except Exception as exc:
            logger.warning("clipboard read failed: %s", exc)
            return None
        if current is None:
            return None
        content = current.content
        now = self._clock()
        with self._seen_lock:
            if content == self._last_seen:
                return None
            if not content.strip():
                return None
            if (
                self._last_change_at is not None
                and (now - self._last_change_at) * 1000.0 < self.debounce_ms
            ):
                return None
            write_seq = self._write_seq

        source_app = self._active_application()
        if source_app is not None and source_app in self.ignore_applications:
            with self._seen_lock:
                if self._write_seq == write_seq:
                    self._last_seen = content
            logger.debug("ignoring clipboard change from %s", source_app)
            return None

        change_type = classify_content(content, current.content_type)
        item = ClipboardItem.new(content, change_type, source_app=source_app)
        event = ClipboardEvent(
            item=item,
            timestamp=utc_now(),
            source=source_app or UNKNOWN_SOURCE,
            change_type=change_type,
        )
        with self._stats_lock:
            self._stats.record(change_type, event.timestamp, now)

        self._dispatch(event)

        with self._seen_lock:
            if self._write_seq == write_seq:
                self._last_seen = content
            self._last_change_at = now
        logger.debug("clipboard change: %s from %s", change_type.value, event.source)
        return event

    def _active_application(self) -> str | None:
        try:
            return self.clipboard.active_application()
        except Exception as exc:
            logger.debug("active application lookup failed", exc_info=exc)
            return None

    def _dispatch(self, event: ClipboardEvent) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                if self.metrics is not None:
                    with self.metrics.track("monitor.dispatch"):
                        subscriber.on_change(event)
                else:
                    subscriber.on_change(event)
            except Exception as exc:
                logger.exception("clipboard subscriber %r failed", subscriber, exc_info=exc)

    # Direct access

    def read_once(self) -> ClipboardItem | None:
        current = self.clipboard.read()
        if current is None or not current.content.strip():
            return None
        change_type = classify_content(current.content, current.content_type)
        return ClipboardItem.new(
            current.content, change_type, source_app=self._active_application()
        )

    def write(self, content: str | ClipboardContent) -> None:
        payload = content if isinstance(content, ClipboardContent) else ClipboardContent(content)
        self.clipboard.write(payload)
        with self._seen_lock:
            self._last_seen = payload.content
            self._write_seq += 1

    def statistics(self) -> ClipboardStatistics:
        with self._stats_lock:
            return replace(self._stats)
