from __future__ import annotations

import datetime as dt
import logging
import os
import re
import sqlite3
import threading
import uuid
from pathlib import Path

from . import __version__, db
from .errors import BackupError, ClipkeepError, NotFoundError, RestoreError, StorageError, ValidationError
from .store import ClipboardStore
from .store.types import BackupJob, BackupMetadata, JobStatus, OperationType, utc_now

logger = logging.getLogger(__name__)

ITEMS_TABLE = "clipboard_items"
DEFAULT_HISTORY_LIMIT = 50
AUTO_BACKUP_PREFIX = "clipkeep_auto_backup_"

_SCHEMA_OBJECT_ORDER = {"table": 0, "index": 1, "view": 2, "trigger": 3}
_DDL_NAME = re.compile(
    r"""^(\s*CREATE\s+(?:UNIQUE\s+)?(?:TABLE|INDEX|VIEW|TRIGGER)\s+(?:IF\s+NOT\s+EXISTS\s+)?)
        (?:"(?:[^"]|"")+"|\[[^\]]+\]|`[^`]+`|[\w$]+)""",
    re.IGNORECASE | re.VERBOSE,
)


def _qualify_ddl(sql: str, name: str, schema: str) -> str:
    qualified, count = _DDL_NAME.subn(
        lambda match: f"{match.group(1)}{schema}.{db.quote_identifier(name)}", sql, count=1
    )
    if count != 1:
        raise BackupError(f"cannot rewrite schema statement for {name}")
    return qualified


class BackupCoordinator:
    """Whole-store backup and restore, recorded in the backup ledger.

    Every operation holds the store's write lock, so it never interleaves with
    a store write transaction.
    """

    def __init__(self, store: ClipboardStore, *, app_version: str = __version__) -> None:
        self.store = store
        self.app_version = app_version

    def _ensure_open(self) -> None:
        if self.store.closed:
            raise StorageError("store is closed")

    def _new_job(
        self, operation: OperationType, path: Path, description: str | None = None
    ) -> BackupJob:
        started = utc_now().isoformat(timespec="microseconds")
        return BackupJob(
            job_id=str(uuid.uuid4()),
            operation_type=operation,
            status=JobStatus.IN_PROGRESS,
            file_path=str(path),
            start_time=started,
            metadata=BackupMetadata(
                app_version=self.app_version,
                created_at=started,
                description=description,
            ),
        )

    @staticmethod
    def _finish(job: BackupJob, status: JobStatus, error: str | None = None) -> None:
        job.status = status
        job.error_message = error
        job.end_time = utc_now().isoformat(timespec="microseconds")

    # Backup

    def backup(self, path: Path | str, *, description: str | None = None) -> BackupJob:
        target = Path(path).expanduser()
        job = self._new_job(OperationType.BACKUP, target, description)
        logger.info("starting backup to %s", target)
        with self.store.write_lock:
            self._ensure_open()
            try:
                items = self._write_snapshot(target)
            except (sqlite3.Error, OSError, BackupError) as exc:
                logger.error("backup to %s failed: %s", target, exc)
                self._finish(job, JobStatus.FAILED, f"backup failed: {exc}")
            else:
                job.items_count = items
                job.file_size_bytes = target.stat().st_size
                self._finish(job, JobStatus.COMPLETED)
                logger.info("backup completed: %s items, %s bytes", items, job.file_size_bytes)
            job.metadata.schema_version = self.store.schema_version()
            self._record(job)
        return job

    def _write_snapshot(self, target: Path) -> int:
        """Copy the live database into ``target`` atomically; returns the item count."""

        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        if tmp.exists():
            tmp.unlink()
        conn = self.store.conn
        try:
            conn.execute("ATTACH DATABASE ? AS backup_db", (str(tmp),))
            try:
                # Backups are single self-contained files.
                conn.execute("PRAGMA backup_db.journal_mode = DELETE")
                with db.transaction(conn):
                    items = self._copy_schema_and_rows(conn)
            finally:
                conn.execute("DETACH DATABASE backup_db")
            os.replace(tmp, target)
        except BaseException:
            try:
                tmp.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("could not remove temporary backup %s: %s", tmp, exc)
            raise
        return items

    def _copy_schema_and_rows(self, conn: sqlite3.Connection) -> int:
        objects = conn.execute(
            """
            SELECT type, name, sql FROM main.sqlite_master
            WHERE sql IS NOT NULL AND name NOT LIKE 'sqlite_%'
            """
        ).fetchall()
        objects = sorted(
            objects, key=lambda row: (_SCHEMA_OBJECT_ORDER.get(row["type"], 9), row["name"])
        )
        tables = [row for row in objects if row["type"] == "table"]
        for row in tables:
            conn.execute(_qualify_ddl(row["sql"], row["name"], "backup_db"))
        for row in tables:
            name = db.quote_identifier(row["name"])
            conn.execute(f"INSERT INTO backup_db.{name} SELECT * FROM main.{name}")
        for row in objects:
            if row["type"] == "table":
                continue
            conn.execute(_qualify_ddl(row["sql"], row["name"], "backup_db"))
        count = conn.execute(f"SELECT COUNT(*) FROM backup_db.{ITEMS_TABLE}").fetchone()
        return int(count[0])

    # Restore

    def restore(self, path: Path | str) -> BackupJob:
        source = Path(path).expanduser()
        if not source.is_file():
            raise NotFoundError(f"backup file {source}")
        job = self._new_job(OperationType.RESTORE, source)
        job.file_size_bytes = source.stat().st_size
        logger.info("starting restore from %s", source)
        with self.store.write_lock:
            self._ensure_open()
            self._safety_snapshot()
            try:
                skipped = self._restore_from(source)
                self.store.run_migrations()
            except (sqlite3.Error, OSError, ClipkeepError) as exc:
                logger.error("restore from %s failed: %s", source, exc)
                self._finish(job, JobStatus.FAILED, f"restore failed: {exc}")
            else:
                job.metadata.skipped_tables = skipped
                job.items_count = self.store.count()
                self._finish(job, JobStatus.COMPLETED)
                logger.info("restore completed: %s items", job.items_count)
            finally:
                self.store.invalidate_cache()
            job.metadata.schema_version = self.store.schema_version()
            self._record(job)
        return job

    def _safety_snapshot(self) -> Path | None:
        stamp = utc_now().strftime("%Y%m%d_%H%M%S_%f")
        db_path = self.store.db_path
        target = db_path.with_name(f"{db_path.stem}.pre-restore-{stamp}.db")
        try:
            self._write_snapshot(target)
        except (sqlite3.Error, OSError, BackupError) as exc:
            logger.warning("could not write pre-restore snapshot %s: %s", target, exc)
            return None
        logger.info("wrote pre-restore snapshot %s", target)
        return target

    def _restore_from(self, source: Path) -> list[str]:
        conn = self.store.conn
        conn.execute("ATTACH DATABASE ? AS restore_db", (str(source),))
        try:
            backup_tables = set(db.table_names(conn, "restore_db"))
            if ITEMS_TABLE not in backup_tables:
                raise RestoreError(f"{source} has no {ITEMS_TABLE} table")
            live_tables = [
                name for name in db.table_names(conn, "main") if name not in db.LEDGER_TABLES
            ]
            skipped: list[str] = []
            with db.transaction(conn):
                for table in live_tables:
                    conn.execute(f"DELETE FROM main.{db.quote_identifier(table)}")
                for table in live_tables:
                    if table not in backup_tables:
                        continue
                    if not self._copy_table(conn, table):
                        skipped.append(table)
        finally:
            conn.execute("DETACH DATABASE restore_db")
        if skipped:
            logger.warning("restore skipped tables: %s", ", ".join(skipped))
        return skipped

    def _copy_table(self, conn: sqlite3.Connection, table: str) -> bool:
        """Copy one table under its own savepoint. Only the items table is fatal."""

        backup_columns = set(db.table_columns(conn, table, "restore_db"))
        columns = [col for col in db.table_columns(conn, table, "main") if col in backup_columns]
        if not columns:
            return False
        column_list = ", ".join(db.quote_identifier(col) for col in columns)
        name = db.quote_identifier(table)
        try:
            with db.savepoint(conn, "restore_table"):
                conn.execute(
                    f"INSERT INTO main.{name} ({column_list}) "
                    f"SELECT {column_list} FROM restore_db.{name}"
                )
        except sqlite3.Error as exc:
            if table == ITEMS_TABLE:
                raise RestoreError(f"cannot restore {table}: {exc}") from exc
            logger.warning("skipping table %s during restore: %s", table, exc)
            return False
        return True

    # Ledger

    def _record(self, job: BackupJob) -> None:
        try:
            with db.transaction(self.store.conn):
                self.store.conn.execute(
                    """
                    INSERT INTO backup_restore_logs(
                        job_id, operation_type, status, file_path, file_size_bytes,
                        items_count, start_time, end_time, error_message, metadata
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.job_id,
                        job.operation_type.value,
                        job.status.value,
                        job.file_path,
                        job.file_size_bytes,
                        job.items_count,
                        job.start_time,
                        job.end_time,
                        job.error_message,
                        db.to_json(job.metadata.to_dict()),
                    ),
                )
        except sqlite3.Error as exc:
            logger.exception("failed to record %s job %s", job.operation_type.value, job.job_id, exc_info=exc)

    def history(self, limit: int = DEFAULT_HISTORY_LIMIT) -> list[BackupJob]:
        self._ensure_open()
        if limit <= 0:
            return []
        try:
            rows = self.store.reader().execute(
                """
                SELECT job_id, operation_type, status, file_path, file_size_bytes,
                       items_count, start_time, end_time, error_message, metadata
                FROM backup_restore_logs
                ORDER BY start_time DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"backup history failed: {exc}") from exc
        jobs: list[BackupJob] = []
        for row in rows:
            try:
                operation = OperationType(row["operation_type"])
            except ValueError:
                operation = OperationType.BACKUP
            try:
                status = JobStatus(row["status"])
            except ValueError:
                status = JobStatus.FAILED
            jobs.append(
                BackupJob(
                    job_id=str(row["job_id"]),
                    operation_type=operation,
                    status=status,
                    file_path=str(row["file_path"]),
                    start_time=str(row["start_time"]),
                    file_size_bytes=row["file_size_bytes"],
                    items_count=row["items_count"],
                    end_time=row["end_time"],
                    error_message=row["error_message"],
                    metadata=BackupMetadata.from_dict(db.from_json(row["metadata"])),
                )
            )
        return jobs

    # Automatic backups

    def schedule_automatic(self, directory: Path | str) -> BackupJob:
        stamp = utc_now().strftime("%Y%m%d_%H%M%S_%f")
        target = Path(directory).expanduser() / f"{AUTO_BACKUP_PREFIX}{stamp}.db"
        logger.info("automatic backup to %s", target)
        return self.backup(target, description="automatic backup")

    def prune(self, directory: Path | str, keep_count: int) -> int:
        if keep_count < 0:
            raise ValidationError("keep_count must be zero or more")
        folder = Path(directory).expanduser()
        if not folder.is_dir():
            return 0
        backups = []
        for path in folder.glob("*.db"):
            try:
                backups.append((path.stat().st_mtime, path.name, path))
            except OSError:
                continue
        backups.sort()
        excess = len(backups) - keep_count
        removed = 0
        for _, _, path in backups[: max(0, excess)]:
            try:
                path.unlink()
            except OSError as exc:
                logger.warning("failed to remove old backup %s: %s", path, exc)
                continue
            removed += 1
            logger.info("removed old backup %s", path)
        return removed


class BackupScheduler:
    """Runs automatic backups and pruning on a background thread."""

    def __init__(
        self,
        coordinator: BackupCoordinator,
        directory: Path | str,
        *,
        interval_s: float,
        keep_count: int,
    ) -> None:
        self.coordinator = coordinator
        self.directory = Path(directory).expanduser()
        self.interval_s = max(1.0, float(interval_s))
        self.keep_count = keep_count
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._lock = threading.Lock()

    def tick(self) -> BackupJob | None:
        try:
            job = self.coordinator.schedule_automatic(self.directory)
            if job.succeeded:
                self.coordinator.prune(self.directory, self.keep_count)
            else:
                logger.warning("automatic backup failed: %s", job.error_message)
            return job
        except ClipkeepError as exc:
            logger.exception("automatic backup failed", exc_info=exc)
            return None

    def start(self) -> None:
        with self._lock:
            if self._thread is not None:
                return
            self._stop = threading.Event()
            self._thread = threading.Thread(
                target=self._run, args=(self._stop,), name="clipkeep-backup", daemon=True
            )
            self._thread.start()
        logger.info("backup scheduler started (every %ss)", self.interval_s)

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            thread, stop = self._thread, self._stop
            self._thread = None
        if thread is None:
            return
        stop.set()
        if thread is not threading.current_thread():
            thread.join(timeout)
        logger.info("backup scheduler stopped")

    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None

    def _run(self, stop: threading.Event) -> None:
        while not stop.wait(self.interval_s):
            self.tick()
