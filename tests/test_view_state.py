"""Tests for the study controller with a fake gateway and store."""

from __future__ import annotations

import pytest

from config import TAB_ANALYSIS, TAB_BANK, TAB_PRACTICE, TAB_UPLOAD
from i18n import tr
from services.llm_service import GatewayError
from services.models import ChatMessage, KnowledgePoint, PracticeQuestion, Question
from services.question_store import BankLoadResult, QuestionStoreError, default_questions
from services.view_state import StudyController


@pytest.fixture(autouse=True)
def _isolated_metrics(tmp_db):
    """Controller actions log metrics; keep them out of the project DB."""
    return tmp_db


class FakeStore:
    def __init__(self, questions=None, failed=False, fail_save=False):
        self.questions = list(questions) if questions is not None else default_questions()
        self.failed = failed
        self.fail_save = fail_save
        self.saved: list[list[Question]] = []

    def load(self) -> BankLoadResult:
        return BankLoadResult(questions=list(self.questions), failed=self.failed)

    def save(self, bank):
        if self.fail_save:
            raise QuestionStoreError("disk full")
        self.saved.append(list(bank))


class FakeChat:
    def __init__(self, question, replies, fail_on=None):
        self.question = question
        self.replies = list(replies)
        self.fail_on = fail_on
        self.sent: list[str] = []

    @property
    def opening_message(self):
        return f"题目：{self.question.question_text}"

    def stream_reply(self, message, cancel_event=None):
        self.sent.append(message)
        if self.fail_on is not None and len(self.sent) == self.fail_on:
            raise GatewayError("chat", "boom")
        for fragment in self.replies:
            if cancel_event is not None and cancel_event.is_set():
                return
            yield fragment


class FakeGateway:
    def __init__(self):
        self.calls: list[str] = []
        self.extracted: list[Question] = []
        self.analysis: list[KnowledgePoint] = [KnowledgePoint("一次方程", "移项", ("default-1",))]
        self.practice: list[PracticeQuestion] = [PracticeQuestion("p1", "解 $3x=9$", "$x=3$")]
        self.replies = ["Hel", "lo", " world"]
        self.fail: set[str] = set()
        self.chat_fail_on = None
        self.chats: list[FakeChat] = []

    def _check(self, op):
        self.calls.append(op)
        if op in self.fail:
            raise GatewayError(op, "boom")

    def extract_questions(self, image_bytes):
        self._check("extract")
        return list(self.extracted)

    def analyze_knowledge_points(self, bank):
        self._check("analyze")
        return list(self.analysis)

    def generate_practice_test(self, analysis):
        self._check("generate")
        return list(self.practice)

    def start_tutor_chat(self, question):
        self._check("chat_start")
        chat = FakeChat(question, self.replies, self.chat_fail_on)
        self.chats.append(chat)
        return chat


def _q(qid: str, text: str, subject: str = "数学") -> Question:
    return Question(id=qid, subject=subject, question_text=text)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def controller(gateway, store) -> StudyController:
    return StudyController(gateway, store=store, lang="zh")


class TestStartup:
    def test_initial_state(self, controller):
        s = controller.state
        assert s.active_tab == TAB_UPLOAD
        assert s.is_loading is False
        assert s.error == ""
        assert [q.id for q in s.question_bank] == ["default-1", "default-2", "default-3"]
        assert s.chat_open is False

    def test_failed_load_shows_read_error(self, gateway):
        c = StudyController(gateway, store=FakeStore(failed=True))
        assert c.state.error == "无法从本地加载错题库。"
        assert c.state.question_bank == default_questions()

    def test_english_messages(self, gateway):
        c = StudyController(gateway, store=FakeStore(failed=True), lang="en")
        assert c.state.error == tr("en", "err_storage_read")


class TestNavigation:
    def test_select_tab(self, controller):
        controller.select_tab(TAB_PRACTICE)
        assert controller.state.active_tab == TAB_PRACTICE

    def test_unknown_tab_ignored(self, controller):
        controller.select_tab("settings")
        assert controller.state.active_tab == TAB_UPLOAD

    def test_dismiss_error(self, gateway):
        c = StudyController(gateway, store=FakeStore(failed=True))
        c.dismiss_error()
        assert c.state.error == ""


class TestExtraction:
    def test_extract_without_image(self, controller, gateway):
        controller.extract()
        assert controller.state.error == "请先上传一张图片。"
        assert gateway.calls == []

    def test_upload_clears_previous_results(self, controller, gateway):
        gateway.extracted = [_q("n1", "2x=4")]
        controller.upload_image(b"img1", "a.png")
        controller.extract()
        controller.upload_image(b"img2", "b.png")
        assert controller.state.extracted_questions == []
        assert controller.state.uploaded_image == b"img2"

    def test_extract_success(self, controller, gateway):
        gateway.extracted = [_q("n1", "2x=4")]
        controller.upload_image(b"img", "a.png")
        controller.extract()
        assert controller.state.extracted_questions == [_q("n1", "2x=4")]
        assert controller.state.is_loading is False
        assert controller.state.error == ""

    def test_extract_failure_keeps_stale_results(self, controller, gateway):
        gateway.extracted = [_q("n1", "2x=4")]
        controller.upload_image(b"img", "a.png")
        controller.extract()
        gateway.fail.add("extract")
        controller.extract()
        assert controller.state.error == "无法从图片中提取题目，请确保图片清晰并重试。"
        assert controller.state.extracted_questions == [_q("n1", "2x=4")]
        assert controller.state.is_loading is False


class TestBankEditing:
    def test_add_to_bank_appends_in_order(self, controller, gateway, store):
        gateway.extracted = [_q("n1", "a"), _q("n2", "b")]
        controller.upload_image(b"img", "a.png")
        controller.extract()
        added = controller.add_to_bank()
        s = controller.state
        assert added == 2
        assert [q.id for q in s.question_bank][-2:] == ["n1", "n2"]
        assert s.extracted_questions == []
        assert s.uploaded_image is None
        assert s.active_tab == TAB_BANK
        assert store.saved[-1] == s.question_bank

    def test_duplicate_question_text_skipped(self, gateway):
        store = FakeStore(questions=[_q("a", "2x=4")])
        c = StudyController(gateway, store=store)
        gateway.extracted = [_q("n1", "2x=4"), _q("n2", "F=ma"), _q("n3", "F=ma")]
        c.upload_image(b"img")
        c.extract()
        assert c.add_to_bank() == 1
        assert [q.id for q in c.state.question_bank] == ["a", "n2"]

    def test_nothing_new_does_not_save(self, gateway):
        store = FakeStore(questions=[_q("a", "2x=4")])
        c = StudyController(gateway, store=store)
        gateway.extracted = [_q("n1", "2x=4")]
        c.upload_image(b"img")
        c.extract()
        assert c.add_to_bank() == 0
        assert store.saved == []

    def test_delete_question(self, controller, store):
        controller.delete_question("default-2")
        assert [q.id for q in controller.state.question_bank] == ["default-1", "default-3"]
        assert store.saved[-1] == controller.state.question_bank

    def test_delete_unknown_id_is_noop(self, controller, store):
        before = list(controller.state.question_bank)
        controller.delete_question("missing")
        assert controller.state.question_bank == before
        assert store.saved == []

    def test_save_failure_shows_write_error_and_keeps_bank(self, gateway):
        c = StudyController(gateway, store=FakeStore(fail_save=True))
        c.delete_question("default-1")
        assert c.state.error == "无法将错题保存至本地。"
        assert [q.id for q in c.state.question_bank] == ["default-2", "default-3"]


class TestAnalysisAndPractice:
    def test_analyze_empty_bank_skips_gateway(self, gateway):
        c = StudyController(gateway, store=FakeStore(questions=[]))
        c.state.question_bank = []
        c.analyze()
        assert c.state.error == "错题库为空，请先添加错题。"
        assert gateway.calls == []

    def test_analyze_success_switches_tab(self, controller, gateway):
        controller.analyze()
        assert controller.state.analysis == gateway.analysis
        assert controller.state.active_tab == TAB_ANALYSIS
        assert controller.state.is_loading is False

    def test_analyze_failure(self, controller, gateway):
        gateway.fail.add("analyze")
        controller.analyze()
        assert controller.state.error == "生成知识点分析失败，请稍后重试。"
        assert controller.state.analysis == []

    def test_generate_without_analysis_redirects(self, controller, gateway):
        controller.select_tab(TAB_PRACTICE)
        controller.generate_practice()
        assert controller.state.error == "请先进行知识点分析。"
        assert controller.state.active_tab == TAB_ANALYSIS
        assert gateway.calls == []

    def test_generate_success_hides_answers(self, controller, gateway):
        controller.analyze()
        controller.generate_practice()
        controller.toggle_answer("p1")
        controller.generate_practice()
        s = controller.state
        assert s.practice == gateway.practice
        assert s.visible_answers == set()
        assert s.active_tab == TAB_PRACTICE

    def test_generate_failure(self, controller, gateway):
        controller.analyze()
        gateway.fail.add("generate")
        controller.generate_practice()
        assert controller.state.error == "生成巩固练习失败，请稍后重试。"
        assert controller.state.practice == []

    def test_toggle_answer(self, controller):
        controller.toggle_answer("p1")
        assert "p1" in controller.state.visible_answers
        controller.toggle_answer("p1")
        assert "p1" not in controller.state.visible_answers

    def test_metrics_recorded(self, controller):
        from utils.metrics import get_metrics_summary

        controller.analyze()
        assert get_metrics_summary()["analyze"]["total"] == 1


class TestChat:
    def test_open_chat_streams_single_ai_entry(self, controller):
        snapshots: list[list[ChatMessage]] = []
        question = controller.state.question_bank[0]
        controller.open_chat(question, on_update=lambda s: snapshots.append(list(s.chat_history)))
        s = controller.state
        assert s.chat_open is True
        assert s.chat_question == question
        assert s.chat_history == [ChatMessage("ai", "Hello world")]
        assert s.chat_loading is False

        ai_texts = [snap[-1].text for snap in snapshots if snap]
        assert all(len(snap) == 1 for snap in snapshots if snap)
        assert all(b.startswith(a) for a, b in zip(ai_texts, ai_texts[1:]))

    def test_first_turn_sends_question(self, controller, gateway):
        question = controller.state.question_bank[0]
        controller.open_chat(question)
        assert question.question_text in gateway.chats[0].sent[0]

    def test_send_message_appends_user_then_ai(self, controller):
        controller.open_chat(controller.state.question_bank[0])
        controller.send_chat_message("  为什么？ ")
        history = controller.state.chat_history
        assert history[1] == ChatMessage("user", "为什么？")
        assert history[2] == ChatMessage("ai", "Hello world")

    def test_blank_message_ignored(self, controller, gateway):
        controller.open_chat(controller.state.question_bank[0])
        controller.send_chat_message("   ")
        assert len(controller.state.chat_history) == 1
        assert gateway.chats[0].sent == [gateway.chats[0].opening_message]

    def test_message_without_chat_ignored(self, controller):
        controller.send_chat_message("hello")
        assert controller.state.chat_history == []

    def test_start_failure_shows_apology(self, controller, gateway):
        gateway.fail.add("chat_start")
        controller.open_chat(controller.state.question_bank[0])
        s = controller.state
        assert s.chat_open is True
        assert s.chat_history == [ChatMessage("ai", "抱歉，我现在无法开始辅导。请稍后再试。")]
        assert s.chat_loading is False

    def test_first_turn_failure_shows_apology(self, controller, gateway):
        gateway.chat_fail_on = 1
        controller.open_chat(controller.state.question_bank[0])
        assert controller.state.chat_history == [ChatMessage("ai", "抱歉，我现在无法开始辅导。请稍后再试。")]

    def test_turn_failure_appends_error(self, controller, gateway):
        gateway.chat_fail_on = 2
        controller.open_chat(controller.state.question_bank[0])
        controller.send_chat_message("hi")
        history = controller.state.chat_history
        assert history[-2] == ChatMessage("user", "hi")
        assert history[-1] == ChatMessage("ai", "抱歉，我好像遇到了一些问题，请稍后再试。")
        assert controller.state.chat_loading is False

    def test_reopen_starts_fresh(self, controller, gateway):
        bank = controller.state.question_bank
        controller.open_chat(bank[0])
        controller.send_chat_message("hi")
        controller.open_chat(bank[1])
        assert controller.state.chat_question == bank[1]
        assert controller.state.chat_history == [ChatMessage("ai", "Hello world")]
        assert len(gateway.chats) == 2

    def test_close_then_reopen_same_question_starts_empty(self, controller, gateway):
        question = controller.state.question_bank[0]
        controller.open_chat(question)
        controller.send_chat_message("hi")
        assert len(controller.state.chat_history) == 3
        controller.close_chat()
        controller.open_chat(question)
        assert controller.state.chat_question == question
        assert controller.state.chat_history == [ChatMessage("ai", "Hello world")]
        assert len(gateway.chats) == 2
        assert gateway.chats[1] is not gateway.chats[0]
        assert gateway.chats[1].sent == [gateway.chats[1].opening_message]

    def test_close_chat_clears_everything(self, controller):
        controller.open_chat(controller.state.question_bank[0])
        controller.close_chat()
        s = controller.state
        assert s.chat_open is False
        assert s.chat_question is None
        assert s.chat_history == []
        controller.send_chat_message("hi")
        assert s.chat_history == []

    def test_failed_start_leaves_no_session(self, controller, gateway):
        gateway.chat_fail_on = 1
        controller.open_chat(controller.state.question_bank[0])
        controller.send_chat_message("hi")
        assert len(controller.state.chat_history) == 1
