from __future__ import annotations

import datetime as dt
import hashlib
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypedDict

from ..errors import ValidationError
from .tags import validate_tags

MAX_CONTENT_BYTES = 1_000_000
MAX_SOURCE_APP_BYTES = 255
PREVIEW_LENGTH = 100


class ContentType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    HTML = "html"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | ContentType) -> ContentType:
        if isinstance(value, ContentType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


class OperationType(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def ensure_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.UTC)
    return value.astimezone(dt.UTC)


def format_timestamp(value: dt.datetime) -> str:
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: str) -> dt.datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # CURRENT_TIMESTAMP defaults use a space separator.
    return ensure_utc(dt.datetime.fromisoformat(text))


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def utf8_length(text: str, *, field: str) -> int:
    try:
        return len(text.encode("utf-8"))
    except UnicodeEncodeError as exc:
        raise ValidationError(f"{field} is not valid UTF-8 text: {exc.reason}") from exc


def make_preview(content: str) -> str:
    if len(content) > PREVIEW_LENGTH:
        return content[: PREVIEW_LENGTH - 3] + "..."
    return content


@dataclass
class ClipboardItem:
    id: str
    content: str
    content_type: ContentType
    timestamp: dt.datetime
    source_app: str | None = None
    favorite: bool = False
    tags: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if isinstance(self.content_type, str) and not isinstance(self.content_type, ContentType):
            self.content_type = ContentType.parse(self.content_type)
        if isinstance(self.timestamp, dt.datetime):
            self.timestamp = ensure_utc(self.timestamp)

    @classmethod
    def new(
        cls,
        content: str,
        content_type: ContentType | str = ContentType.TEXT,
        *,
        source_app: str | None = None,
        timestamp: dt.datetime | None = None,
        favorite: bool = False,
        tags: list[str] | None = None,
    ) -> ClipboardItem:
        return cls(
            id=str(uuid.uuid4()),
            content=content,
            content_type=ContentType.parse(content_type),
            timestamp=ensure_utc(timestamp) if timestamp else utc_now(),
            source_app=source_app,
            favorite=favorite,
            tags=list(tags or []),
        )

    @property
    def size_bytes(self) -> int:
        return len(self.content.encode("utf-8"))

    @property
    def hash_value(self) -> str:
        return content_hash(self.content)

    @property
    def preview(self) -> str:
        return make_preview(self.content)

    def validate(self) -> None:
        try:
            uuid.UUID(self.id)
        except (ValueError, TypeError, AttributeError) as exc:
            raise ValidationError(f"invalid item id: {self.id!r}") from exc
        if not isinstance(self.content, str):
            raise ValidationError("content must be text")
        size = utf8_length(self.content, field="content")
        if size > MAX_CONTENT_BYTES:
            raise ValidationError(f"content is {size} bytes, limit is {MAX_CONTENT_BYTES}")
        if not isinstance(self.content_type, ContentType):
            raise ValidationError(f"invalid content type: {self.content_type!r}")
        if not isinstance(self.timestamp, dt.datetime):
            raise ValidationError("timestamp must be a datetime")
        if self.source_app is not None:
            if not isinstance(self.source_app, str):
                raise ValidationError(
                    f"source application must be text, got {type(self.source_app).__name__}"
                )
            if utf8_length(self.source_app, field="source application") > MAX_SOURCE_APP_BYTES:
                raise ValidationError(
                    f"source application name exceeds {MAX_SOURCE_APP_BYTES} bytes"
                )
        validate_tags(self.tags)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "content_type": self.content_type.value,
            "timestamp": format_timestamp(self.timestamp),
            "source_app": self.source_app,
            "favorite": self.favorite,
            "tags": list(self.tags),
            "preview": self.preview,
            "size_bytes": self.size_bytes,
        }


@dataclass
class BackupMetadata:
    version: int = 1
    app_version: str = ""
    created_at: str = ""
    description: str | None = None
    compression: bool = False
    encryption: bool = False
    schema_version: int = 0
    skipped_tables: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "app_version": self.app_version,
            "created_at": self.created_at,
            "description": self.description,
            "compression": self.compression,
            "encryption": self.encryption,
            "schema_version": self.schema_version,
            "skipped_tables": list(self.skipped_tables),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupMetadata:
        skipped = data.get("skipped_tables") or []
        return cls(
            version=int(data.get("version") or 1),
            app_version=str(data.get("app_version") or ""),
            created_at=str(data.get("created_at") or ""),
            description=data.get("description"),
            compression=bool(data.get("compression", False)),
            encryption=bool(data.get("encryption", False)),
            schema_version=int(data.get("schema_version") or 0),
            skipped_tables=[str(name) for name in skipped],
        )


@dataclass
class BackupJob:
    job_id: str
    operation_type: OperationType
    status: JobStatus
    file_path: str
    start_time: str
    file_size_bytes: int | None = None
    items_count: int | None = None
    end_time: str | None = None
    error_message: str | None = None
    metadata: BackupMetadata = field(default_factory=BackupMetadata)

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.COMPLETED


@dataclass(frozen=True)
class StoreMetrics:
    operations: int
    average_latency_ms: float
    cache_hits: int
    cache_misses: int
    errors: int


class StoreStats(TypedDict):
    total_items: int
    favorite_items: int
    items_by_type: dict[str, int]
    total_size_bytes: int
    oldest_item: str | None
    newest_item: str | None
    database_size_bytes: int
    schema_version: int
