from __future__ import annotations

import datetime as dt
import logging
import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path

from . import db
from .errors import MigrationError

logger = logging.getLogger(__name__)

DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent / "sql"
_ORDERED_NAME = re.compile(r"^\d+[_-]")


@dataclass(frozen=True)
class MigrationRecord:
    version: int
    name: str
    applied_at: str


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    path: Path


def split_statements(script: str) -> list[str]:
    """Split a SQL script into complete statements.

    Uses sqlite3.complete_statement so semicolons inside trigger bodies, string
    literals and comments do not end a statement early.
    """

    statements: list[str] = []
    buffer = ""
    for line in script.splitlines(keepends=True):
        buffer += line
        if sqlite3.complete_statement(buffer):
            statement = buffer.strip()
            buffer = ""
            if _has_sql(statement):
                statements.append(statement)
    if _has_sql(buffer):
        statements.append(buffer.strip())
    return statements


def _has_sql(text: str) -> bool:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("--") and stripped != ";":
            return True
    return False


class MigrationRunner:
    def __init__(
        self,
        conn: sqlite3.Connection,
        migrations_dir: Path | str | None = None,
    ) -> None:
        self.conn = conn
        self.migrations_dir = Path(migrations_dir) if migrations_dir else DEFAULT_MIGRATIONS_DIR

    def discover(self) -> list[Migration]:
        if not self.migrations_dir.is_dir():
            logger.warning("migrations directory not found: %s", self.migrations_dir)
            return []
        files = sorted(
            (path for path in self.migrations_dir.iterdir() if path.suffix == ".sql"),
            key=lambda path: path.name,
        )
        migrations: list[Migration] = []
        for index, path in enumerate(files, start=1):
            if not _ORDERED_NAME.match(path.name):
                logger.warning("migration %s has no numeric prefix; ordering by name", path.name)
            migrations.append(Migration(version=index, name=path.name, path=path))
        return migrations

    def _ensure_tracking_table(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
            """
        )

    def current_version(self) -> int:
        self._ensure_tracking_table()
        row = self.conn.execute(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_migrations"
        ).fetchone()
        return int(row["version"]) if row else 0

    def applied(self) -> list[MigrationRecord]:
        self._ensure_tracking_table()
        rows = self.conn.execute(
            "SELECT version, name, applied_at FROM schema_migrations ORDER BY version"
        ).fetchall()
        return [
            MigrationRecord(
                version=int(row["version"]),
                name=str(row["name"]),
                applied_at=str(row["applied_at"]),
            )
            for row in rows
        ]

    def apply_pending(self) -> list[MigrationRecord]:
        migrations = self.discover()
        current = self.current_version()
        logger.info(
            "schema at version %s, %s migration files available", current, len(migrations)
        )
        applied: list[MigrationRecord] = []
        for migration in migrations:
            if migration.version <= current:
                continue
            record = self._apply(migration)
            if record is None:
                continue
            applied.append(record)
            current = record.version
        return applied

    def _apply(self, migration: Migration) -> MigrationRecord | None:
        try:
            script = migration.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise MigrationError(migration.name, exc) from exc
        statements = split_statements(script)

        logger.info("applying migration %s", migration.name)
        try:
            with db.transaction(self.conn):
                # Another connection may have applied it between discovery and
                # acquiring the write lock.
                row = self.conn.execute(
                    "SELECT COALESCE(MAX(version), 0) AS version FROM schema_migrations"
                ).fetchone()
                if int(row["version"]) >= migration.version:
                    return None
                for statement in statements:
                    self.conn.execute(statement)
                applied_at = dt.datetime.now(dt.UTC).isoformat()
                self.conn.execute(
                    "INSERT INTO schema_migrations(version, name, applied_at) VALUES (?, ?, ?)",
                    (migration.version, migration.name, applied_at),
                )
        except sqlite3.Error as exc:
            logger.error("migration %s failed: %s", migration.name, exc)
            raise MigrationError(migration.name, exc) from exc
        logger.info("applied migration %s", migration.name)
        return MigrationRecord(
            version=migration.version, name=migration.name, applied_at=applied_at
        )
