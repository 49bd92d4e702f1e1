"""Local persistence of the wrong-question bank (one JSON value in a key/value table)."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from config import STORAGE_KEY_QUESTION_BANK
from migrations.migrate import DB_PATH
from services.models import Question

LOGGER = logging.getLogger("mistakes.store")

DEFAULT_QUESTIONS: tuple[Question, ...] = (
    Question(
        id="default-1",
        subject="数学",
        question_text=(
            "已知函数 $f(x) = \\sin(\\omega x + \\phi)$ ($\\omega > 0, |\\phi| < \\pi/2$) "
            "的图像相邻两条对称轴之间的距离为 $\\pi/2$，且 $f(\\pi/6) = 1$。求 $f(x)$ 的解析式。"
        ),
    ),
    Question(
        id="default-2",
        subject="物理",
        question_text=(
            "一个质量为 2kg 的物体，在水平拉力 F 的作用下，从静止开始沿粗糙水平面做匀加速直线运动。"
            "经过 3s，物体的速度达到 6m/s。已知物体与水平面间的动摩擦因数为 0.2，$g=10m/s^2$。"
            "求拉力 F 的大小。"
        ),
    ),
    Question(
        id="default-3",
        subject="化学",
        question_text="将 23g 钠投入到 100g 水中，完全反应后，所得溶液的溶质质量分数是多少？（Na=23, H=1, O=16）",
    ),
)


class QuestionStoreError(RuntimeError):
    """Raised when the bank cannot be written to local storage."""


@dataclass(frozen=True)
class BankLoadResult:
    questions: list[Question]
    failed: bool = False


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0, tzinfo=None).isoformat()


def _connect() -> sqlite3.Connection:
    return sqlite3.connect(DB_PATH)


def default_questions() -> list[Question]:
    return list(DEFAULT_QUESTIONS)


def _read_raw(key: str) -> str | None:
    conn = _connect()
    try:
        row = conn.execute("SELECT value FROM local_storage WHERE key=?", (key,)).fetchone()
    finally:
        conn.close()
    return None if row is None else str(row[0])


def _write_raw(key: str, value: str) -> None:
    conn = _connect()
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO local_storage(key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (key, value, _now_iso()),
            )
    finally:
        conn.close()


def _parse_bank(raw: str) -> list[Question]:
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("stored question bank is not a JSON array")
    return [Question.from_dict(item) for item in data]


def load() -> BankLoadResult:
    """
    Load the question bank from local storage.

    An absent or empty bank yields the default seed. A corrupt value or a
    storage error yields the default seed with ``failed`` set.
    """
    try:
        raw = _read_raw(STORAGE_KEY_QUESTION_BANK)
    except sqlite3.Error:
        LOGGER.exception("Failed to read question bank from local storage")
        return BankLoadResult(default_questions(), failed=True)
    if not raw or not raw.strip():
        return BankLoadResult(default_questions())
    try:
        questions = _parse_bank(raw)
    except (json.JSONDecodeError, ValueError):
        LOGGER.warning("Stored question bank is corrupt; falling back to defaults", exc_info=True)
        return BankLoadResult(default_questions(), failed=True)
    if not questions:
        return BankLoadResult(default_questions())
    return BankLoadResult(questions)


def save(bank: Iterable[Question]) -> None:
    """
    Persist the full bank, replacing whatever was stored before.

    Raises:
        QuestionStoreError: If local storage cannot be written.
    """
    payload = json.dumps([q.to_dict() for q in bank], ensure_ascii=False)
    try:
        _write_raw(STORAGE_KEY_QUESTION_BANK, payload)
    except sqlite3.Error as e:
        LOGGER.exception("Failed to save question bank to local storage")
        raise QuestionStoreError("question bank could not be saved") from e
