"""Model-call timings and outcomes, recorded in the app database."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from migrations.migrate import DB_PATH

LOGGER = logging.getLogger("mistakes.metrics")

OUTCOME_OK = "ok"
OUTCOME_ERROR = "error"


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0, tzinfo=None).isoformat()


def _open_db() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def log_metric(operation: str, elapsed_s: float, outcome: str = OUTCOME_OK, **meta: Any) -> None:
    """
    Record one finished operation.

    Never raises; a broken metrics table must not interrupt the study flow.

    Args:
        operation: "extract", "analyze", "generate", "chat_start" or "chat_turn".
        elapsed_s: Wall-clock seconds the operation took.
        outcome: OUTCOME_OK or OUTCOME_ERROR.
        **meta: Extra details kept as JSON (e.g. items=3, detail="timeout").
    """
    row = (
        operation,
        outcome or OUTCOME_OK,
        round(elapsed_s, 3),
        json.dumps(meta, ensure_ascii=False, default=str),
        _utc_stamp(),
    )
    try:
        conn = _open_db()
        try:
            with conn:
                conn.execute(
                    "INSERT INTO operation_metrics (operation, outcome, elapsed_s, meta_json, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    row,
                )
        finally:
            conn.close()
    except Exception:  # noqa: BLE001
        LOGGER.debug("Dropped metric for %s", operation, exc_info=True)


@contextmanager
def track_operation(operation: str, **meta: Any) -> Iterator[dict[str, Any]]:
    """
    Time the enclosed block and record it with :func:`log_metric`.

    The yielded dict can be filled with details while the block runs. An
    exception is recorded as an error (its text under ``detail``, unless
    one was set) and re-raised.
    """
    details: dict[str, Any] = dict(meta)
    started = time.perf_counter()
    try:
        yield details
    except Exception as e:
        details.setdefault("detail", getattr(e, "detail", "") or str(e))
        log_metric(operation, time.perf_counter() - started, OUTCOME_ERROR, **details)
        raise
    log_metric(operation, time.perf_counter() - started, OUTCOME_OK, **details)


def get_recent_metrics(limit: int = 50, operation: str | None = None) -> list[dict[str, Any]]:
    """Newest-first metric rows, optionally for one operation; [] on any error."""
    sql = "SELECT id, operation, outcome, elapsed_s, meta_json, created_at FROM operation_metrics"
    params: list[Any] = []
    if operation:
        sql += " WHERE operation = ?"
        params.append(operation)
    sql += " ORDER BY id DESC LIMIT ?"
    params.append(max(1, limit))
    try:
        conn = _open_db()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
    except Exception:  # noqa: BLE001
        return []
    out: list[dict[str, Any]] = []
    for row in rows:
        item = dict(row)
        try:
            item["meta"] = json.loads(item.pop("meta_json") or "{}")
        except json.JSONDecodeError:
            item["meta"] = {}
        out.append(item)
    return out


def get_metrics_summary() -> dict[str, dict[str, Any]]:
    """
    Per-operation call counts, failures and timings, busiest first.

    Returns {} on any error (e.g. the table does not exist yet).
    """
    try:
        conn = _open_db()
        try:
            rows = conn.execute(
                """
                SELECT operation,
                       COUNT(*) AS total,
                       SUM(outcome = 'error') AS errors,
                       AVG(elapsed_s) AS avg_s,
                       MIN(elapsed_s) AS min_s,
                       MAX(elapsed_s) AS max_s,
                       MAX(created_at) AS last_at
                FROM operation_metrics
                GROUP BY operation
                ORDER BY total DESC, operation
                """
            ).fetchall()
        finally:
            conn.close()
    except Exception:  # noqa: BLE001
        return {}
    summary: dict[str, dict[str, Any]] = {}
    for row in rows:
        total = int(row["total"])
        errors = int(row["errors"] or 0)
        summary[row["operation"]] = {
            "total": total,
            "errors": errors,
            "error_rate": round(errors / total, 2) if total else 0.0,
            "avg_s": round(row["avg_s"], 2),
            "min_s": round(row["min_s"], 2),
            "max_s": round(row["max_s"], 2),
            "last_at": row["last_at"],
        }
    return summary
