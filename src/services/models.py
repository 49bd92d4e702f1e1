"""Data records shared by the question store, the model gateway and the UI."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Literal
from uuid import uuid4

Sender = Literal["user", "ai"]


def generate_id() -> str:
    """Return a fresh opaque id, e.g. ``id-1718000000000-3f9c2a1b7``."""
    return f"id-{int(time.time() * 1000)}-{uuid4().hex[:9]}"


@dataclass(frozen=True)
class Question:
    """A question the student answered wrongly."""

    id: str
    subject: str
    question_text: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "subject": self.subject, "questionText": self.question_text}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Question":
        """Build from the stored camelCase shape. Raises ValueError on a malformed record."""
        if not isinstance(raw, dict):
            raise ValueError("question record must be an object")
        values = [raw.get("id"), raw.get("subject"), raw.get("questionText")]
        if not all(isinstance(v, str) for v in values):
            raise ValueError("question record requires string id, subject and questionText")
        return cls(id=values[0], subject=values[1], question_text=values[2])


@dataclass(frozen=True)
class PracticeQuestion:
    id: str
    question_text: str
    answer_text: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "questionText": self.question_text, "answerText": self.answer_text}


@dataclass(frozen=True)
class KnowledgePoint:
    """
    A synthesized topic derived from several questions.

    ``relevant_question_ids`` are lookups only; they may refer to questions
    that have since been deleted from the bank.
    """

    title: str
    description: str
    relevant_question_ids: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "relevantQuestionIds": list(self.relevant_question_ids),
        }


@dataclass(frozen=True)
class ChatMessage:
    sender: Sender
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"sender": self.sender, "text": self.text}
