"""Quick health check: schema upgrades are repeatable and the question bank survives a save."""

from __future__ import annotations

import sys
from pathlib import Path


SRC_DIR = Path(__file__).resolve().parents[1] / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from migrations.migrate import migrate_to_latest, schema_status
from services import question_store
from services.models import Question, generate_id


def check_schema() -> None:
    versions = (migrate_to_latest(), migrate_to_latest())
    status = schema_status()
    assert versions[0] == versions[1], f"second migration run changed the version: {versions}"
    assert status["pending"] == 0, f"migrations still pending: {status}"
    assert status["current"] == status["latest"], f"schema behind: {status}"


def check_question_bank() -> None:
    before = question_store.load()
    assert not before.failed, "stored question bank could not be read"
    probe = Question(id=generate_id(), subject="自检", question_text="self check $x^2$")
    try:
        question_store.save([*before.questions, probe])
        after = question_store.load()
        assert not after.failed, "question bank unreadable after save"
        assert after.questions[-1] == probe, "saved question missing after reload"
    finally:
        question_store.save(before.questions)


def main() -> None:
    check_schema()
    check_question_bank()
    print("self_check: OK")


if __name__ == "__main__":
    main()
