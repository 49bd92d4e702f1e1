"""Shared pytest fixtures for the 错题本 Pro test suite."""

from __future__ import annotations

import sqlite3
import sys
from pathlib import Path

import pytest

# Ensure src/ is on the path so all service imports resolve.
SRC_DIR = Path(__file__).resolve().parents[1] / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


@pytest.fixture
def tmp_db(tmp_path, monkeypatch):
    """
    Freshly migrated SQLite DB under tmp_path.

    Every module that captured DB_PATH at import time is pointed at it, so
    nothing touches the project's data/ directory.
    """
    import migrations.migrate as migrate_mod
    import services.question_store as store_mod
    import utils.metrics as metrics_mod

    db_file = tmp_path / "app.db"
    monkeypatch.setattr(migrate_mod, "DB_PATH", db_file)
    monkeypatch.setattr(migrate_mod, "BACKUPS_DIR", tmp_path / "backups")
    monkeypatch.setattr(migrate_mod, "LOCK_PATH", tmp_path / "backups" / ".migrate.lock")
    for mod in (store_mod, metrics_mod):
        monkeypatch.setattr(mod, "DB_PATH", db_file)
    migrate_mod.migrate_to_latest()
    return db_file


@pytest.fixture
def write_raw_bank(tmp_db):
    """Store an arbitrary raw string under the question bank key."""

    def _write(value: str) -> None:
        conn = sqlite3.connect(tmp_db)
        try:
            with conn:
                conn.execute(
                    "INSERT OR REPLACE INTO local_storage(key, value, updated_at) VALUES(?, ?, ?)",
                    ("questionBank", value, "2024-01-01T00:00:00"),
                )
        finally:
            conn.close()

    return _write
