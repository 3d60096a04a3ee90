from __future__ import annotations


class ClipkeepError(Exception):
    """Base class for every error raised by clipkeep."""


class ValidationError(ClipkeepError, ValueError):
    """Input was rejected before it reached storage."""


class StorageError(ClipkeepError):
    """The SQLite layer failed or the store is no longer usable."""


class MigrationError(StorageError):
    def __init__(self, filename: str, cause: BaseException | str) -> None:
        self.filename = filename
        self.cause = cause
        super().__init__(f"migration {filename} failed: {cause}")


class NotFoundError(ClipkeepError, LookupError):
    """The targeted item (or backup file) does not exist."""

    def __init__(self, what: str) -> None:
        self.what = what
        super().__init__(f"{what} not found")


class BackupError(ClipkeepError):
    pass


class RestoreError(ClipkeepError):
    pass


class ClipboardAccessError(ClipkeepError):
    """Reading or writing the platform clipboard failed."""
