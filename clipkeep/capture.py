from __future__ import annotations

import logging

from .errors import StorageError, ValidationError
from .monitor import ClipboardEvent
from .store import MONITOR_HISTORY_LIMIT, ClipboardItem, ClipboardStore

logger = logging.getLogger(__name__)


class StoreSubscriber:
    """Persists monitor events and keeps history within ``max_history_items``."""

    def __init__(self, store: ClipboardStore, *, max_history_items: int | None = None) -> None:
        self.store = store
        self.max_history_items = max_history_items
        self.saved = 0
        self.duplicates = 0
        self.failures = 0

    def on_change(self, event: ClipboardEvent) -> None:
        try:
            inserted = self.store.save(event.item)
        except ValidationError as exc:
            self.failures += 1
            logger.warning("rejected clipboard item from %s: %s", event.source, exc)
            return
        except StorageError as exc:
            self.failures += 1
            logger.exception("failed to persist clipboard item", exc_info=exc)
            return
        if not inserted:
            self.duplicates += 1
            return
        self.saved += 1
        if self.max_history_items:
            try:
                removed = self.store.trim_history(self.max_history_items)
            except StorageError as exc:
                logger.exception("failed to trim clipboard history", exc_info=exc)
                return
            if removed:
                logger.debug("trimmed %s items beyond history limit", removed)

    def recent(self, limit: int = MONITOR_HISTORY_LIMIT) -> list[ClipboardItem]:
        return self.store.recent(limit)
