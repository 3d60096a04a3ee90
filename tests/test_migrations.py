from __future__ import annotations

import logging
import shutil
from pathlib import Path

import pytest

from clipkeep import db
from clipkeep.errors import MigrationError
from clipkeep.migrations import DEFAULT_MIGRATIONS_DIR, MigrationRunner, split_statements
from clipkeep.store import ClipboardStore


def _copy_migrations(tmp_path: Path, names: list[str]) -> Path:
    target = tmp_path / "migrations"
    target.mkdir()
    for name in names:
        shutil.copy(DEFAULT_MIGRATIONS_DIR / name, target / name)
    return target


def test_fresh_database_applies_all_migrations(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "clips.sqlite")
    runner = MigrationRunner(conn)
    assert runner.current_version() == 0

    applied = runner.apply_pending()

    assert [record.name for record in applied] == [
        "0001_initial_schema.sql",
        "0002_enhanced_schema.sql",
    ]
    assert [record.version for record in applied] == [1, 2]
    assert runner.current_version() == 2
    tables = set(db.table_names(conn))
    assert {"clipboard_items", "backup_restore_logs", "system_preferences"} <= tables
    assert "hash_value" in db.table_columns(conn, "clipboard_items")
    conn.close()


def test_second_pass_applies_nothing(tmp_path: Path) -> None:
    conn = db.connect(tmp_path / "clips.sqlite")
    MigrationRunner(conn).apply_pending()
    runner = MigrationRunner(conn)

    assert runner.apply_pending() == []
    assert runner.current_version() == 2
    assert [record.version for record in runner.applied()] == [1, 2]
    conn.close()


def test_failed_migration_rolls_back_that_file_only(tmp_path: Path) -> None:
    migrations_dir = _copy_migrations(tmp_path, ["0001_initial_schema.sql"])
    (migrations_dir / "0002_broken.sql").write_text(
        "CREATE TABLE partial (id INTEGER PRIMARY KEY);\n"
        "INSERT INTO missing_table VALUES (1);\n"
    )
    conn = db.connect(tmp_path / "clips.sqlite")
    runner = MigrationRunner(conn, migrations_dir)

    with pytest.raises(MigrationError) as excinfo:
        runner.apply_pending()

    assert excinfo.value.filename == "0002_broken.sql"
    assert excinfo.value.__cause__ is not None
    assert runner.current_version() == 1
    assert "partial" not in db.table_names(conn)

    (migrations_dir / "0002_broken.sql").write_text(
        "CREATE TABLE partial (id INTEGER PRIMARY KEY);\n"
    )
    applied = runner.apply_pending()
    assert [record.name for record in applied] == ["0002_broken.sql"]
    assert runner.current_version() == 2
    conn.close()


def test_store_surfaces_migration_error(tmp_path: Path) -> None:
    migrations_dir = tmp_path / "migrations"
    migrations_dir.mkdir()
    (migrations_dir / "0001_bad.sql").write_text("CREATE TABLE (;\n")

    with pytest.raises(MigrationError, match="0001_bad.sql"):
        ClipboardStore(tmp_path / "clips.sqlite", migrations_dir=migrations_dir)


def test_split_statements_keeps_trigger_bodies_together() -> None:
    script = """
    -- comment line
    CREATE TABLE t (id INTEGER PRIMARY KEY, note TEXT);
    CREATE TRIGGER t_note AFTER INSERT ON t BEGIN
        UPDATE t SET note = 'a;b' WHERE id = new.id;
    END;
    INSERT INTO t(id) VALUES (1);
    """

    statements = split_statements(script)

    assert len(statements) == 3
    assert statements[1].startswith("CREATE TRIGGER")
    assert statements[1].rstrip().endswith("END;")


def test_files_without_numeric_prefix_are_ordered_by_name_with_warning(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    migrations_dir = tmp_path / "migrations"
    migrations_dir.mkdir()
    (migrations_dir / "0001_first.sql").write_text("CREATE TABLE a (id INTEGER);\n")
    (migrations_dir / "extra.sql").write_text("CREATE TABLE b (id INTEGER);\n")
    conn = db.connect(tmp_path / "clips.sqlite")

    with caplog.at_level(logging.WARNING, logger="clipkeep.migrations"):
        migrations = MigrationRunner(conn, migrations_dir).discover()

    assert [(m.version, m.name) for m in migrations] == [(1, "0001_first.sql"), (2, "extra.sql")]
    assert "extra.sql" in caplog.text
    conn.close()
