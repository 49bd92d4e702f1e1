"""
Model gateway: question extraction, knowledge analysis, practice generation and tutoring chat.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import threading
from typing import Any, Iterable, Iterator

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from config import (
    CHAT_MODEL,
    LLM_MAX_RETRIES,
    LLM_TIMEOUT_S,
    PRACTICE_MAX_ITEMS,
    TEXT_MODEL,
    VISION_MODEL,
    load_api_key,
)
from services.models import KnowledgePoint, PracticeQuestion, Question, generate_id
from utils.file_utils import detect_image_mime

LOGGER = logging.getLogger("mistakes.gateway")

EXTRACTION_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {"subject": {"type": "string"}, "questionText": {"type": "string"}},
        "required": ["subject", "questionText"],
    },
}

ANALYSIS_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "description": {"type": "string"},
            "relevantQuestionIds": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["title", "description", "relevantQuestionIds"],
    },
}

PRACTICE_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {"questionText": {"type": "string"}, "answerText": {"type": "string"}},
        "required": ["questionText", "answerText"],
    },
}

_JSON_ONLY = "你必须只输出一个合法的 JSON 数组，不要用 markdown 代码块包裹，不要输出任何 JSON 以外的文字。"

EXTRACTION_PROMPT = (
    "你是一位经验丰富的中国高中老师。请仔细分析这张图片中的试卷。"
    "识别出所有标记为错误的题目（通常有红叉或圈）。"
    "每个对象应包含 'subject'（例如 '数学', '物理', '语文'）和 'questionText'（完整的题目文本，包括选项）。"
    "题目中的数学公式请使用 LaTeX（$...$）。请忽略图片中的其他内容，只关注错题。"
    "如果图片中没有明显的错题，请返回一个空数组。\n"
    f"{_JSON_ONLY}\nJSON schema:\n{json.dumps(EXTRACTION_SCHEMA, ensure_ascii=False, indent=2)}"
)

ANALYSIS_SYSTEM_PROMPT = (
    "你是一位资深的教学分析专家。用户会给出一组学生做错的题目（JSON 数组，每题含 id、subject、questionText）。"
    "请分析这些题目，总结出背后考察的核心知识点和能力短板。"
    "每个知识点包含：title（知识点名称）、description（薄弱原因与复习建议，可使用 Markdown 列表和粗体，公式用 LaTeX）、"
    "relevantQuestionIds（与该知识点相关的题目 id，必须取自输入）。\n"
    f"{_JSON_ONLY}\nJSON schema:\n{json.dumps(ANALYSIS_SCHEMA, ensure_ascii=False, indent=2)}"
)

PRACTICE_SYSTEM_PROMPT = (
    "你是一位出题专家。根据用户给出的知识点复习提纲，为一名高中生出一套包含 3-5 道题目的新练习题，"
    "旨在巩固这些薄弱的知识点。为每道题提供详细的步骤和解析。"
    "每个对象包含 'questionText'（题目）和 'answerText'（详解答案）。数学公式必须使用 LaTeX（$...$ 或 $$...$$）。\n"
    f"{_JSON_ONLY}\nJSON schema:\n{json.dumps(PRACTICE_SCHEMA, ensure_ascii=False, indent=2)}"
)

TUTOR_SYSTEM_PROMPT = (
    "你是一位耐心、知识渊博的辅导老师。你的目标是清晰地解释概念，"
    "并用苏格拉底式的提问引导学生自己找到答案，而不是直接给出答案。"
    "请使用与学生提问相同的语言回答。"
    "所有数学公式都必须使用 LaTeX 格式（行内用 $...$，块级用 $$...$$）。"
)

ANALYSIS_FAILED_TITLE = "分析失败"
ANALYSIS_FAILED_DESCRIPTION = "模型返回的内容无法解析为知识点列表，请稍后重试。"

UNKNOWN_SUBJECT = "未知科目"
UNREADABLE_QUESTION = "无法识别的题目"
UNGENERATED_QUESTION = "无法生成的题目"
UNGENERATED_ANSWER = "无法生成的答案"


class GatewayError(ValueError):
    """
    A model call failed.

    ``operation`` is one of "extract", "analyze", "generate", "chat_start" or
    "chat"; ``detail`` is the classified cause, suitable for logs.
    """

    def __init__(self, operation: str, detail: str = "") -> None:
        super().__init__(f"{operation}: {detail}" if detail else operation)
        self.operation = operation
        self.detail = detail


def _classify_error(e: Exception, fallback: str) -> str:
    err_msg = str(e).lower()
    if "invalid" in err_msg or "authentication" in err_msg or "incorrect api key" in err_msg:
        return "API Key 无效，请检查后重试。"
    if "insufficient_quota" in err_msg or "quota" in err_msg or "rate limit" in err_msg:
        return "API 余额不足或请求过于频繁，请稍后再试。"
    if "timed out" in err_msg or "timeout" in err_msg:
        return "请求超时，请稍后重试。"
    return f"{fallback}：{e!s}"


def _build_chat_model(model: str, api_key: str, temperature: float = 0.3) -> ChatOpenAI:
    return ChatOpenAI(
        model=model,
        api_key=api_key,
        temperature=temperature,
        timeout=LLM_TIMEOUT_S,
        max_retries=LLM_MAX_RETRIES,
    )


def _message_text(content: Any) -> str:
    """Flatten a LangChain message content (str or list of parts) into text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text") or ""))
        return "".join(parts)
    return ""


def _call_llm(
    system_prompt: str,
    user_message: str,
    api_key: str,
    model: str = TEXT_MODEL,
    temperature: float = 0.3,
) -> str:
    """
    Invoke the chat model with a system and a user message.

    Returns:
        Assistant response content.

    Raises:
        ValueError: If the API key is missing or the call fails.
    """
    if not (api_key and api_key.strip()):
        raise ValueError("请提供有效的 API Key。")
    try:
        llm = _build_chat_model(model, api_key.strip(), temperature)
        response = llm.invoke([SystemMessage(content=system_prompt), HumanMessage(content=user_message)])
        return _message_text(response.content)
    except Exception as e:
        raise ValueError(_classify_error(e, "调用 API 时出错")) from e


def _call_llm_vision(image_bytes: bytes, text_prompt: str, api_key: str, model: str = VISION_MODEL) -> str:
    """
    Invoke the vision model with an image and a text prompt.

    Raises:
        ValueError: If the API key is missing or the call fails.
    """
    if not (api_key and api_key.strip()):
        raise ValueError("请提供有效的 API Key。")
    b64 = base64.b64encode(image_bytes).decode("utf-8")
    data_url = f"data:{detect_image_mime(image_bytes)};base64,{b64}"
    content: list[Any] = [
        {"type": "text", "text": text_prompt},
        {"type": "image_url", "image_url": {"url": data_url, "detail": "high"}},
    ]
    try:
        llm = _build_chat_model(model, api_key.strip(), temperature=0.2)
        response = llm.invoke([HumanMessage(content=content)])
        return _message_text(response.content)
    except Exception as e:
        raise ValueError(_classify_error(e, "分析图片时出错")) from e


def _stream_llm(
    llm: Any,
    messages: list[BaseMessage],
    cancel_event: threading.Event | None = None,
) -> Iterator[str]:
    """
    Yield text fragments from a streaming chat call, in receipt order.

    Stops early (closing the underlying stream) once *cancel_event* is set.

    Raises:
        ValueError: If the call fails before or during the stream.
    """
    try:
        stream = llm.stream(messages)
    except Exception as e:
        raise ValueError(_classify_error(e, "调用 API 时出错")) from e
    try:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                return
            try:
                chunk = next(stream)
            except StopIteration:
                return
            except Exception as e:
                raise ValueError(_classify_error(e, "调用 API 时出错")) from e
            text = _message_text(getattr(chunk, "content", ""))
            if text:
                yield text
    finally:
        close = getattr(stream, "close", None)
        if callable(close):
            close()


def _strip_json_raw(raw: str) -> str:
    """Remove markdown code fences and surrounding whitespace from LLM output."""
    text = raw.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```\s*$", "", text)
    return text.strip()


_DECODER = json.JSONDecoder()


def _is_record_list(value: Any) -> bool:
    return isinstance(value, list) and bool(value) and all(isinstance(v, dict) for v in value)


def _embedded_json(raw: str) -> Any:
    """First non-empty array of objects in *raw*, else its first object; None if neither."""
    for opener, accept in (("[", _is_record_list), ("{", lambda v: isinstance(v, dict))):
        start = raw.find(opener)
        while start != -1:
            try:
                value, _ = _DECODER.raw_decode(raw, start)
            except json.JSONDecodeError:
                value = None
            if value is not None and accept(value):
                return value
            start = raw.find(opener, start + 1)
    return None


def _parse_json_lenient(raw: str) -> Any:
    """
    Parse JSON from LLM output: raw, then fence-stripped, then the first
    embedded array of objects, then the first embedded object.

    Bracketed prose such as ``区间 [0, 1]`` or ``[1]`` is not taken as data.

    Raises:
        ValueError: If no JSON value can be recovered.
    """
    for candidate in (raw, _strip_json_raw(raw)):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            pass
    embedded = _embedded_json(raw)
    if embedded is None:
        raise ValueError("no JSON value found in model output")
    return embedded


def _clean_str(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _unique_ids(raw_ids: Any) -> tuple[str, ...]:
    if not isinstance(raw_ids, list):
        return ()
    seen: dict[str, None] = {}
    for v in raw_ids:
        sid = _clean_str(v)
        if sid and sid not in seen:
            seen[sid] = None
    return tuple(seen)


def _questions_from_items(items: list[Any]) -> list[Question]:
    out: list[Question] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        out.append(
            Question(
                id=generate_id(),
                subject=_clean_str(item.get("subject")) or UNKNOWN_SUBJECT,
                question_text=_clean_str(item.get("questionText")) or UNREADABLE_QUESTION,
            )
        )
    return out


def _knowledge_points_from_items(items: list[Any]) -> list[KnowledgePoint]:
    out: list[KnowledgePoint] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        title = _clean_str(item.get("title"))
        if not title:
            continue
        out.append(
            KnowledgePoint(
                title=title,
                description=_clean_str(item.get("description")),
                relevant_question_ids=_unique_ids(item.get("relevantQuestionIds")),
            )
        )
    return out


def _practice_from_items(items: list[Any]) -> list[PracticeQuestion]:
    out: list[PracticeQuestion] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        out.append(
            PracticeQuestion(
                id=generate_id(),
                question_text=_clean_str(item.get("questionText")) or UNGENERATED_QUESTION,
                answer_text=_clean_str(item.get("answerText")) or UNGENERATED_ANSWER,
            )
        )
        if len(out) >= PRACTICE_MAX_ITEMS:
            break
    return out


def analysis_failed_point(bank: Iterable[Question], raw: str = "") -> KnowledgePoint:
    """The visible stand-in returned when the analysis reply cannot be parsed."""
    description = ANALYSIS_FAILED_DESCRIPTION
    if raw.strip():
        description = f"{description}\n\n{raw.strip()}"
    return KnowledgePoint(
        title=ANALYSIS_FAILED_TITLE,
        description=description,
        relevant_question_ids=tuple(q.id for q in bank),
    )


def analysis_digest(analysis: Iterable[KnowledgePoint]) -> str:
    """Render knowledge points as the outline text sent to the practice generator."""
    return "\n".join(f"- {kp.title}：{kp.description}" for kp in analysis)


def opening_message(question: Question) -> str:
    return f"你好，这是一道我做错的题，可以请你帮我看看吗？\n\n题目：{question.question_text}"


class TutorChat:
    """A tutoring conversation anchored to one question."""

    def __init__(self, question: Question, api_key: str, model: str = CHAT_MODEL) -> None:
        self.question = question
        self._llm = _build_chat_model(model, api_key, temperature=0.5)
        self._history: list[BaseMessage] = [SystemMessage(content=TUTOR_SYSTEM_PROMPT)]

    @property
    def opening_message(self) -> str:
        return opening_message(self.question)

    @property
    def history(self) -> list[BaseMessage]:
        return list(self._history)

    def stream_reply(self, message: str, cancel_event: threading.Event | None = None) -> Iterator[str]:
        """
        Send one user turn and yield the assistant reply as text fragments.

        The finished (or cancelled) reply is appended to the conversation.
        A failed turn is removed from the conversation.

        Raises:
            GatewayError: operation "chat", if the model call fails.
        """
        self._history.append(HumanMessage(content=message))
        parts: list[str] = []
        finished = False
        try:
            for fragment in _stream_llm(self._llm, list(self._history), cancel_event):
                parts.append(fragment)
                yield fragment
            finished = True
        except ValueError as e:
            LOGGER.warning("Chat turn failed: %s", e)
            raise GatewayError("chat", str(e)) from e
        finally:
            if finished:
                self._history.append(AIMessage(content="".join(parts)))
            else:
                self._history.pop()


class LLMProcessor:
    """Calls the hosted model for every step of the wrong-question workflow."""

    def __init__(self, api_key: str | None = None) -> None:
        self._api_key = (api_key if api_key is not None else load_api_key()).strip()

    def extract_questions(self, image_bytes: bytes) -> list[Question]:
        """
        Find the questions marked wrong in an exam photo.

        Returns:
            Extracted questions with fresh ids; [] when the reply is not an array.

        Raises:
            GatewayError: operation "extract", on API failure or unparsable reply.
        """
        try:
            raw = _call_llm_vision(image_bytes, EXTRACTION_PROMPT, self._api_key)
            parsed = _parse_json_lenient(raw)
        except ValueError as e:
            raise GatewayError("extract", str(e)) from e
        if not isinstance(parsed, list):
            LOGGER.info("Extraction reply was not an array; returning no questions")
            return []
        questions = _questions_from_items(parsed)
        LOGGER.info("Extracted %d question(s) from image", len(questions))
        return questions

    def analyze_knowledge_points(self, bank: list[Question]) -> list[KnowledgePoint]:
        """
        Summarize the knowledge gaps behind the bank's questions.

        An unparsable or non-array reply yields a single "分析失败" point that
        references every input question instead of raising.

        Raises:
            GatewayError: operation "analyze", on API failure.
        """
        payload = json.dumps([q.to_dict() for q in bank], ensure_ascii=False, indent=2)
        try:
            raw = _call_llm(ANALYSIS_SYSTEM_PROMPT, f"错题列表：\n{payload}", self._api_key, temperature=0.3)
        except ValueError as e:
            raise GatewayError("analyze", str(e)) from e
        try:
            parsed = _parse_json_lenient(raw)
        except ValueError:
            parsed = None
        if not isinstance(parsed, list) or (parsed and not any(isinstance(v, dict) for v in parsed)):
            LOGGER.warning("Analysis reply could not be parsed as an array; using fallback point")
            return [analysis_failed_point(bank, raw)]
        points = _knowledge_points_from_items(parsed)
        LOGGER.info("Analysis produced %d knowledge point(s)", len(points))
        return points

    def generate_practice_test(self, analysis: list[KnowledgePoint]) -> list[PracticeQuestion]:
        """
        Write new practice questions targeting the analysed knowledge points.

        Raises:
            GatewayError: operation "generate", on API failure or unparsable reply.
        """
        user_message = f"复习提纲：\n{analysis_digest(analysis)}"
        try:
            raw = _call_llm(PRACTICE_SYSTEM_PROMPT, user_message, self._api_key, temperature=0.5)
            parsed = _parse_json_lenient(raw)
        except ValueError as e:
            raise GatewayError("generate", str(e)) from e
        if not isinstance(parsed, list):
            LOGGER.info("Practice reply was not an array; returning no questions")
            return []
        return _practice_from_items(parsed)

    def start_tutor_chat(self, question: Question) -> TutorChat:
        """
        Open a tutoring conversation about *question*.

        Raises:
            GatewayError: operation "chat_start", if the chat cannot be created.
        """
        try:
            return TutorChat(question, self._api_key)
        except Exception as e:
            raise GatewayError("chat_start", _classify_error(e, "创建对话时出错")) from e
