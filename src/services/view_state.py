"""
Application state and the single controller allowed to mutate it.

The Streamlit layer keeps one ``StudyController`` per browser session and
renders from ``controller.state``; every user action goes through a
controller method.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

import services.question_store as question_store
from config import TAB_ANALYSIS, TAB_BANK, TAB_PRACTICE, TAB_UPLOAD, TABS
from i18n import DEFAULT_LANG, tr
from services.llm_service import GatewayError, LLMProcessor, TutorChat
from services.models import ChatMessage, KnowledgePoint, PracticeQuestion, Question
from services.question_store import QuestionStoreError
from utils.metrics import track_operation

LOGGER = logging.getLogger("mistakes.controller")

UpdateCallback = Callable[["AppState"], None]


@dataclass
class AppState:
    active_tab: str = TAB_UPLOAD
    is_loading: bool = False
    error: str = ""
    uploaded_image: bytes | None = None
    uploaded_image_name: str = ""
    extracted_questions: list[Question] = field(default_factory=list)
    question_bank: list[Question] = field(default_factory=list)
    analysis: list[KnowledgePoint] = field(default_factory=list)
    practice: list[PracticeQuestion] = field(default_factory=list)
    visible_answers: set[str] = field(default_factory=set)
    chat_open: bool = False
    chat_question: Question | None = None
    chat_history: list[ChatMessage] = field(default_factory=list)
    chat_loading: bool = False


class StudyController:
    """Drives tab transitions and model calls for one session."""

    def __init__(
        self,
        gateway: LLMProcessor,
        store: Any = question_store,
        lang: str = DEFAULT_LANG,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self.lang = lang
        self._state = AppState()
        self._chat: TutorChat | None = None
        self._cancel_event: threading.Event | None = None

        loaded = store.load()
        self._state.question_bank = list(loaded.questions)
        if loaded.failed:
            self._state.error = self._t("err_storage_read")

    @property
    def state(self) -> AppState:
        return self._state

    def _t(self, key: str, **kwargs: object) -> str:
        return tr(self.lang, key, **kwargs)

    def _timed(self, operation: str, fn: Callable[..., list[Any]], *args: Any) -> list[Any]:
        with track_operation(operation) as meta:
            result = fn(*args)
            meta["items"] = len(result)
        return result

    def _persist_bank(self) -> None:
        try:
            self._store.save(self._state.question_bank)
        except QuestionStoreError:
            self._state.error = self._t("err_storage_write")

    # ── navigation & banner ──

    def select_tab(self, tab: str) -> None:
        if tab in TABS:
            self._state.active_tab = tab

    def dismiss_error(self) -> None:
        self._state.error = ""

    # ── upload & extraction ──

    def upload_image(self, image_bytes: bytes, file_name: str = "") -> None:
        s = self._state
        s.uploaded_image = image_bytes
        s.uploaded_image_name = file_name
        s.extracted_questions = []
        s.error = ""

    def extract(self) -> None:
        s = self._state
        if not s.uploaded_image:
            s.error = self._t("err_no_image")
            return
        s.is_loading = True
        s.error = ""
        try:
            s.extracted_questions = self._timed("extract", self._gateway.extract_questions, s.uploaded_image)
        except GatewayError as e:
            LOGGER.warning("Question extraction failed: %s", e.detail)
            s.error = self._t("err_extract")
        finally:
            s.is_loading = False

    def add_to_bank(self) -> int:
        """Merge extracted questions into the bank, skipping known question texts."""
        s = self._state
        known_texts = {q.question_text for q in s.question_bank}
        known_ids = {q.id for q in s.question_bank}
        new_questions: list[Question] = []
        for q in s.extracted_questions:
            if q.question_text in known_texts or q.id in known_ids:
                continue
            known_texts.add(q.question_text)
            known_ids.add(q.id)
            new_questions.append(q)
        if new_questions:
            s.question_bank = [*s.question_bank, *new_questions]
            self._persist_bank()
        s.extracted_questions = []
        s.uploaded_image = None
        s.uploaded_image_name = ""
        s.active_tab = TAB_BANK
        LOGGER.info("Added %d question(s) to the bank", len(new_questions))
        return len(new_questions)

    def delete_question(self, question_id: str) -> None:
        s = self._state
        remaining = [q for q in s.question_bank if q.id != question_id]
        if len(remaining) == len(s.question_bank):
            return
        s.question_bank = remaining
        self._persist_bank()

    # ── analysis & practice ──

    def analyze(self) -> None:
        s = self._state
        if not s.question_bank:
            s.error = self._t("err_empty_bank")
            return
        s.is_loading = True
        s.error = ""
        try:
            s.analysis = self._timed("analyze", self._gateway.analyze_knowledge_points, list(s.question_bank))
            s.active_tab = TAB_ANALYSIS
        except GatewayError as e:
            LOGGER.warning("Knowledge point analysis failed: %s", e.detail)
            s.error = self._t("err_analyze")
        finally:
            s.is_loading = False

    def generate_practice(self) -> None:
        s = self._state
        if not s.analysis:
            s.error = self._t("err_no_analysis")
            s.active_tab = TAB_ANALYSIS
            return
        s.is_loading = True
        s.error = ""
        try:
            s.practice = self._timed("generate", self._gateway.generate_practice_test, list(s.analysis))
            s.visible_answers = set()
            s.active_tab = TAB_PRACTICE
        except GatewayError as e:
            LOGGER.warning("Practice test generation failed: %s", e.detail)
            s.error = self._t("err_generate")
        finally:
            s.is_loading = False

    def toggle_answer(self, practice_id: str) -> None:
        visible = self._state.visible_answers
        if practice_id in visible:
            visible.discard(practice_id)
        else:
            visible.add(practice_id)

    # ── tutoring chat ──

    def _notify(self, on_update: UpdateCallback | None) -> None:
        if on_update is not None:
            on_update(self._state)

    def _stream_turn(self, chat: TutorChat, message: str, on_update: UpdateCallback | None) -> None:
        cancel = threading.Event()
        self._cancel_event = cancel
        history = self._state.chat_history
        history.append(ChatMessage("ai", ""))
        index = len(history) - 1
        text = ""
        self._notify(on_update)
        for fragment in chat.stream_reply(message, cancel):
            if cancel.is_set():
                break
            text += fragment
            history[index] = ChatMessage("ai", text)
            self._notify(on_update)

    def open_chat(self, question: Question, on_update: UpdateCallback | None = None) -> None:
        """Open a fresh tutoring chat on *question* and stream the first reply."""
        self.close_chat()
        s = self._state
        s.chat_open = True
        s.chat_question = question
        s.chat_history = []
        s.chat_loading = True
        try:
            with track_operation("chat_start"):
                self._chat = self._gateway.start_tutor_chat(question)
                self._stream_turn(self._chat, self._chat.opening_message, on_update)
        except GatewayError as e:
            LOGGER.warning("Could not start tutoring chat: %s", e.detail)
            self._chat = None
            if s.chat_question is question:
                s.chat_history = [ChatMessage("ai", self._t("err_chat_start"))]
        finally:
            s.chat_loading = False
            self._notify(on_update)

    def send_chat_message(self, text: str, on_update: UpdateCallback | None = None) -> None:
        """Append the user's message and stream one tutor reply."""
        s = self._state
        message = (text or "").strip()
        if self._chat is None or not message or s.chat_loading:
            return
        chat = self._chat
        history = s.chat_history
        history.append(ChatMessage("user", message))
        s.chat_loading = True
        self._notify(on_update)
        try:
            with track_operation("chat_turn"):
                self._stream_turn(chat, message, on_update)
        except GatewayError as e:
            LOGGER.warning("Chat turn failed: %s", e.detail)
            if history and history[-1].sender == "ai" and not history[-1].text:
                history.pop()
            history.append(ChatMessage("ai", self._t("err_chat_turn")))
        finally:
            s.chat_loading = False
            self._notify(on_update)

    def close_chat(self) -> None:
        """Stop any in-flight reply and discard the chat session and transcript."""
        if self._cancel_event is not None:
            self._cancel_event.set()
            self._cancel_event = None
        self._chat = None
        s = self._state
        s.chat_open = False
        s.chat_question = None
        s.chat_history = []
        s.chat_loading = False
