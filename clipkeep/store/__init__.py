from __future__ import annotations

from ._store import DEFAULT_LIST_LIMIT, MONITOR_HISTORY_LIMIT, ClipboardStore
from .tags import MAX_TAGS, validate_tag
from .types import (
    BackupJob,
    BackupMetadata,
    ClipboardItem,
    ContentType,
    JobStatus,
    OperationType,
    StoreMetrics,
)

__all__ = [
    "BackupJob",
    "BackupMetadata",
    "ClipboardItem",
    "ClipboardStore",
    "ContentType",
    "DEFAULT_LIST_LIMIT",
    "JobStatus",
    "MAX_TAGS",
    "MONITOR_HISTORY_LIMIT",
    "OperationType",
    "StoreMetrics",
    "validate_tag",
]
