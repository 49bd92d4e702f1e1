"""
Schema upgrades for the app database.

Numbered SQL files in ``sql/`` are applied in order; the applied version
lives in ``meta.schema_version``. Before an existing database is upgraded
it is copied to ``backups/``, and only the newest few copies are kept.
"""

from __future__ import annotations

import logging
import re
import shutil
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import NamedTuple

from config import PROJECT_ROOT
from utils.file_utils import ensure_directory_exists

DB_PATH = PROJECT_ROOT / "data" / "app.db"
BACKUPS_DIR = PROJECT_ROOT / "backups"
LOCK_PATH = BACKUPS_DIR / ".migrate.lock"
MIGRATIONS_SQL_DIR = Path(__file__).resolve().parent / "sql"
MAX_BACKUPS = 5

_FILE_RE = re.compile(r"^(\d{3})_\w+\.sql$")

LOGGER = logging.getLogger("mistakes.migrate")


class MigrationError(RuntimeError):
    """A migration script failed; its transaction was rolled back."""


class MigrationInProgressError(RuntimeError):
    """Another process holds the migration lock."""


class Migration(NamedTuple):
    version: int
    path: Path


def available_migrations() -> list[Migration]:
    found = []
    for path in MIGRATIONS_SQL_DIR.glob("*.sql"):
        match = _FILE_RE.match(path.name)
        if match:
            found.append(Migration(int(match.group(1)), path))
    return sorted(found)


def latest_migration_version() -> int:
    migrations = available_migrations()
    return migrations[-1].version if migrations else 0


def _schema_version(conn: sqlite3.Connection) -> int:
    has_meta = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name='meta'").fetchone()
    if not has_meta:
        return 0
    row = conn.execute("SELECT value FROM meta WHERE key='schema_version'").fetchone()
    try:
        return int(row[0]) if row else 0
    except (TypeError, ValueError):
        return 0


def schema_status() -> dict[str, int]:
    """Current and latest schema versions, plus how many migrations are pending."""
    current = 0
    if DB_PATH.exists():
        conn = sqlite3.connect(DB_PATH)
        try:
            current = _schema_version(conn)
        finally:
            conn.close()
    pending = [m for m in available_migrations() if m.version > current]
    return {"current": current, "latest": latest_migration_version(), "pending": len(pending)}


def _backup_database() -> Path:
    ensure_directory_exists(BACKUPS_DIR)
    target = BACKUPS_DIR / f"app_{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}.db"
    shutil.copy2(DB_PATH, target)
    for stale in sorted(BACKUPS_DIR.glob("app_*.db"))[:-MAX_BACKUPS]:
        stale.unlink(missing_ok=True)
    return target


def _apply(conn: sqlite3.Connection, migration: Migration) -> None:
    script = migration.path.read_text(encoding="utf-8")
    try:
        conn.execute("BEGIN IMMEDIATE")
        conn.executescript(script)
        conn.execute(
            "INSERT INTO meta(key, value) VALUES('schema_version', ?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (str(migration.version),),
        )
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise MigrationError(
            f"Migration {migration.path.name} failed and was rolled back. Backups: {BACKUPS_DIR}"
        ) from e
    LOGGER.info("Applied migration %s", migration.path.name)


def migrate_to_latest() -> int:
    """
    Bring the database to the newest schema and return that version.

    Creates the database when missing. Running it again once up to date
    changes nothing and makes no backup.

    Raises:
        MigrationInProgressError: If the lock file already exists.
        MigrationError: If a migration script fails.
    """
    ensure_directory_exists(DB_PATH.parent)
    ensure_directory_exists(LOCK_PATH.parent)
    try:
        LOCK_PATH.touch(exist_ok=False)
    except FileExistsError as e:
        raise MigrationInProgressError(f"lock held: {LOCK_PATH}") from e
    try:
        existed = DB_PATH.exists()
        conn = sqlite3.connect(DB_PATH)
        try:
            current = _schema_version(conn)
            pending = [m for m in available_migrations() if m.version > current]
            if not pending:
                return current
            if existed:
                LOGGER.info("Backed up database to %s", _backup_database())
            for migration in pending:
                _apply(conn, migration)
            return pending[-1].version
        finally:
            conn.close()
    finally:
        LOCK_PATH.unlink(missing_ok=True)
