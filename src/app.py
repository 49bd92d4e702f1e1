"""错题本 Pro main entry point."""

from __future__ import annotations

import html
import logging
from pathlib import Path
from typing import Any, Callable

import streamlit as st

from config import (
    ACCEPTED_IMAGE_TYPES,
    API_KEY_ENV,
    LOG_FORMAT,
    LOG_LEVEL,
    MissingCredentialError,
    PAGE_ICON,
    PAGE_SUBTITLE,
    PAGE_TITLE,
    TAB_ANALYSIS,
    TAB_BANK,
    TAB_PRACTICE,
    TAB_UPLOAD,
    TABS,
    THEME_ANSWER_BG,
    THEME_ANSWER_BORDER,
    THEME_BG_PAGE,
    THEME_CARD_BG,
    THEME_CARD_BORDER,
    THEME_CARD_SHADOW,
    THEME_PRIMARY,
    THEME_PRIMARY_HOVER,
    THEME_TEXT,
)
from i18n import tr
from migrations.migrate import (
    BACKUPS_DIR,
    MigrationError,
    MigrationInProgressError,
    migrate_to_latest,
    schema_status,
)
from services.content_renderer import escape_markdown, excerpt, to_markdown
from services.llm_service import LLMProcessor
from services.models import Question
from services.view_state import AppState, StudyController
from utils.file_utils import read_upload_bytes
from utils.metrics import get_metrics_summary

LOGGER = logging.getLogger("mistakes.app")

_MIGRATIONS_DONE = False
TAB_LABEL_KEYS: dict[str, str] = {
    TAB_UPLOAD: "tab_upload",
    TAB_BANK: "tab_bank",
    TAB_ANALYSIS: "tab_analysis",
    TAB_PRACTICE: "tab_practice",
}
TAB_ICONS: dict[str, str] = {TAB_UPLOAD: "📤", TAB_BANK: "📚", TAB_ANALYSIS: "⚡", TAB_PRACTICE: "✏️"}


def _read_app_version() -> str:
    version_file = Path(__file__).resolve().parents[1] / "VERSION"
    try:
        return version_file.read_text(encoding="utf-8").strip() or "0.0.0"
    except OSError:
        return "0.0.0"


APP_VERSION = _read_app_version()


def _lang() -> str:
    return st.session_state.get("lang", "zh")


def _t(key: str, **kwargs: object) -> str:
    return tr(_lang(), key, **kwargs)


def _configure_logging() -> None:
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)


def _ensure_migrations_once() -> None:
    global _MIGRATIONS_DONE
    if _MIGRATIONS_DONE:
        return
    try:
        version = migrate_to_latest()
    except MigrationInProgressError:
        if not st.session_state.get("migration_in_progress_notice_shown"):
            st.info(_t("migration_in_progress"))
            st.session_state["migration_in_progress_notice_shown"] = True
        st.stop()
    except MigrationError as e:
        LOGGER.exception("Database migration failed")
        st.error(f"{e}")
        st.error(_t("migration_recovery", path=BACKUPS_DIR))
        st.stop()
    _MIGRATIONS_DONE = True
    st.session_state["migration_in_progress_notice_shown"] = False
    LOGGER.info("Database schema at version %s", version)


def _get_controller() -> StudyController:
    controller = st.session_state.get("controller")
    if controller is None:
        try:
            gateway = LLMProcessor()
        except MissingCredentialError:
            LOGGER.error("Missing %s; refusing to start", API_KEY_ENV)
            st.error(_t("err_missing_key", env=API_KEY_ENV))
            st.stop()
        controller = StudyController(gateway, lang=_lang())
        st.session_state["controller"] = controller
    controller.lang = _lang()
    return controller


def _inject_css() -> None:
    st.markdown(
        f"""
        <style>
        .stApp {{ background: {THEME_BG_PAGE} !important; }}
        .main .block-container {{ max-width: 64rem !important; padding-top: 1.5rem !important; }}
        h1, h2, h3 {{ color: {THEME_TEXT} !important; }}
        .stButton > button[kind="primary"] {{
            background: {THEME_PRIMARY} !important;
            border-color: {THEME_PRIMARY} !important;
            color: #FFFFFF !important;
            font-weight: 600 !important;
        }}
        .stButton > button[kind="primary"]:hover {{ background: {THEME_PRIMARY_HOVER} !important; }}
        [data-testid="stVerticalBlockBorderWrapper"] {{
            background: {THEME_CARD_BG};
            border-color: {THEME_CARD_BORDER} !important;
            box-shadow: {THEME_CARD_SHADOW};
            border-radius: 12px;
        }}
        .subject-pill {{
            display: inline-block;
            background: #E0E7FF;
            color: #3730A3;
            font-size: 0.8rem;
            font-weight: 600;
            padding: 0.1rem 0.7rem;
            border-radius: 999px;
        }}
        .answer-box {{
            background: {THEME_ANSWER_BG};
            border-left: 4px solid {THEME_ANSWER_BORDER};
            padding: 0.5rem 1rem;
            border-radius: 0 8px 8px 0;
        }}
        </style>
        """,
        unsafe_allow_html=True,
    )


def _render_content(text: str) -> None:
    """Render model text: lightweight markdown plus KaTeX math, never raw HTML."""
    st.markdown(to_markdown(text))


def _render_language_switcher() -> None:
    if "lang" not in st.session_state:
        st.session_state["lang"] = "zh"
    c1, c2 = st.sidebar.columns(2, gap="small")
    if c1.button(
        _t("lang_zh"),
        key="btn_lang_zh",
        type="primary" if _lang() == "zh" else "secondary",
        use_container_width=True,
    ):
        st.session_state["lang"] = "zh"
        st.rerun()
    if c2.button(
        _t("lang_en"),
        key="btn_lang_en",
        type="primary" if _lang() == "en" else "secondary",
        use_container_width=True,
    ):
        st.session_state["lang"] = "en"
        st.rerun()
    st.sidebar.caption(f"{_t('lang_label')}: {_t('lang_zh') if _lang() == 'zh' else _t('lang_en')}")


def _render_sidebar(controller: StudyController) -> None:
    _render_language_switcher()
    st.sidebar.markdown(f"### {PAGE_ICON} {PAGE_TITLE}")
    st.sidebar.caption(_t("bank_size", n=len(controller.state.question_bank)))
    with st.sidebar.expander(_t("metrics_title")):
        summary = get_metrics_summary()
        if not summary:
            st.caption(_t("metrics_empty"))
        for operation, row in summary.items():
            st.caption(
                _t(
                    "metrics_row",
                    op=operation,
                    total=row["total"],
                    errors=row["errors"],
                    avg=row["avg_s"],
                )
            )
    status = schema_status()
    st.sidebar.caption(_t("version", v=APP_VERSION))
    st.sidebar.caption(_t("schema_version", current=status["current"], latest=status["latest"]))


def _render_header() -> None:
    st.title(f"{PAGE_ICON} {PAGE_TITLE}")
    st.caption(PAGE_SUBTITLE)


def _render_tab_bar(controller: StudyController) -> None:
    active = controller.state.active_tab
    cols = st.columns(len(TABS), gap="small")
    for col, tab in zip(cols, TABS):
        if col.button(
            f"{TAB_ICONS[tab]} {_t(TAB_LABEL_KEYS[tab])}",
            key=f"tab_btn_{tab}",
            type="primary" if tab == active else "secondary",
            use_container_width=True,
        ):
            if tab != active:
                controller.select_tab(tab)
                st.rerun()
    st.divider()


def _render_error_banner(controller: StudyController) -> None:
    error = controller.state.error
    if not error:
        return
    c1, c2 = st.columns([6, 1])
    c1.error(error)
    if c2.button(_t("dismiss"), key="dismiss_error", use_container_width=True):
        controller.dismiss_error()
        st.rerun()


def _render_question_list(
    controller: StudyController,
    questions: list[Question],
    key_prefix: str,
    actions: bool = False,
) -> None:
    for i, q in enumerate(questions, 1):
        with st.container(border=True):
            st.markdown(
                f'<span class="subject-pill">{html.escape(q.subject)}</span> '
                f"&nbsp; {_t('question_n', n=i)}",
                unsafe_allow_html=True,
            )
            _render_content(q.question_text)
            if not actions:
                continue
            c1, c2, _ = st.columns([1, 1, 4])
            if c1.button(_t("chat_btn"), key=f"{key_prefix}_chat_{q.id}", use_container_width=True):
                st.session_state["chat_pending_question"] = q
                st.rerun()
            if c2.button(_t("delete_btn"), key=f"{key_prefix}_del_{q.id}", use_container_width=True):
                controller.delete_question(q.id)
                st.rerun()


def _uploader_key() -> str:
    return f"exam_image_{int(st.session_state.get('upload_nonce', 0))}"


def _render_upload_tab(controller: StudyController) -> None:
    state = controller.state
    uploaded = st.file_uploader(
        _t("upload_label"),
        type=ACCEPTED_IMAGE_TYPES,
        key=_uploader_key(),
        help=_t("upload_help"),
    )
    if uploaded is not None:
        signature = f"{uploaded.name}:{uploaded.size}"
        if signature != st.session_state.get("upload_signature"):
            try:
                controller.upload_image(read_upload_bytes(uploaded), uploaded.name)
                st.session_state["upload_signature"] = signature
            except ValueError as e:
                LOGGER.warning("Could not read uploaded image: %s", e)
                st.error(str(e))

    if state.uploaded_image:
        st.markdown(f"#### {_t('upload_preview')}")
        st.image(state.uploaded_image, width=420)
        if st.button(_t("extract_btn"), key="extract_btn", type="primary", disabled=state.is_loading):
            with st.spinner(_t("loading_extract")):
                controller.extract()
            st.rerun()

    if state.extracted_questions:
        st.markdown(f"### {_t('extracted_title')}")
        _render_question_list(controller, state.extracted_questions, "extracted")
        if st.button(_t("add_to_bank_btn"), key="add_to_bank_btn", type="primary"):
            added = controller.add_to_bank()
            st.session_state["upload_nonce"] = int(st.session_state.get("upload_nonce", 0)) + 1
            st.session_state.pop("upload_signature", None)
            st.toast(_t("added_n", n=added))
            st.rerun()


def _render_bank_tab(controller: StudyController) -> None:
    state = controller.state
    st.subheader(_t("bank_title", n=len(state.question_bank)))
    if not state.question_bank:
        st.info(f"**{_t('bank_empty_title')}**  \n{_t('bank_empty_hint')}")
        return
    _render_question_list(controller, state.question_bank, "bank", actions=True)
    if st.button(_t("analyze_btn"), key="analyze_btn", type="primary", disabled=state.is_loading):
        with st.spinner(_t("loading_analyze")):
            controller.analyze()
        st.rerun()


def _render_analysis_tab(controller: StudyController) -> None:
    state = controller.state
    if not state.analysis:
        st.info(f"**{_t('analysis_empty_title')}**  \n{_t('analysis_empty_hint')}")
        return
    st.subheader(_t("analysis_title"))
    by_id = {q.id: q for q in state.question_bank}
    for point in state.analysis:
        with st.container(border=True):
            st.markdown(f"#### {escape_markdown(point.title)}")
            _render_content(point.description)
            related = [by_id[qid] for qid in point.relevant_question_ids if qid in by_id]
            if related:
                with st.expander(f"{_t('related_questions')} ({len(related)})"):
                    for q in related:
                        _render_content(f"- **{q.subject}** {excerpt(q.question_text, 80)}")
            elif point.relevant_question_ids:
                st.caption(_t("related_missing"))
    if st.button(_t("generate_btn"), key="generate_btn", type="primary", disabled=state.is_loading):
        with st.spinner(_t("loading_generate")):
            controller.generate_practice()
        st.rerun()


def _render_practice_tab(controller: StudyController) -> None:
    state = controller.state
    if not state.practice:
        st.info(f"**{_t('practice_empty_title')}**  \n{_t('practice_empty_hint')}")
        return
    st.subheader(_t("practice_title"))
    for i, pq in enumerate(state.practice, 1):
        with st.container(border=True):
            st.markdown(f"**{_t('practice_n', n=i)}**")
            _render_content(pq.question_text)
            visible = pq.id in state.visible_answers
            if st.button(
                f"🙈 {_t('hide_answer')}" if visible else f"👁 {_t('show_answer')}",
                key=f"toggle_answer_{pq.id}",
            ):
                controller.toggle_answer(pq.id)
                st.rerun()
            if visible:
                st.markdown(f'<div class="answer-box"><b>{_t("answer_label")}</b></div>', unsafe_allow_html=True)
                _render_content(pq.answer_text)


def _stream_into(placeholder: Any) -> Callable[[AppState], None]:
    def _update(state: AppState) -> None:
        if state.chat_history and state.chat_history[-1].sender == "ai":
            text = state.chat_history[-1].text
            placeholder.markdown(to_markdown(text) if text else f"_{_t('chat_thinking')}_")

    return _update


def _render_chat_panel(controller: StudyController, pending: Question | None) -> None:
    state = controller.state
    question = pending or state.chat_question
    if question is None:
        return
    with st.container(border=True):
        c1, c2 = st.columns([5, 1])
        c1.markdown(f"### 💬 {_t('chat_title')}")
        if c2.button(_t("chat_close"), key="chat_close_btn", use_container_width=True):
            controller.close_chat()
            st.rerun()
        with st.expander(question.subject, expanded=True):
            _render_content(question.question_text)

        if pending is not None:
            with st.chat_message("assistant"):
                placeholder = st.empty()
                placeholder.markdown(f"_{_t('chat_thinking')}_")
            controller.open_chat(pending, on_update=_stream_into(placeholder))
            st.rerun()

        for msg in state.chat_history:
            with st.chat_message("user" if msg.sender == "user" else "assistant"):
                _render_content(msg.text)

        prompt = st.chat_input(_t("chat_placeholder"), key="chat_input", disabled=state.chat_loading)
        if prompt:
            with st.chat_message("user"):
                _render_content(prompt)
            with st.chat_message("assistant"):
                placeholder = st.empty()
            controller.send_chat_message(prompt, on_update=_stream_into(placeholder))
            st.rerun()


def main() -> None:
    st.set_page_config(page_title=PAGE_TITLE, page_icon=PAGE_ICON, layout="wide")
    _configure_logging()
    _ensure_migrations_once()
    _inject_css()
    controller = _get_controller()
    _render_sidebar(controller)
    _render_header()
    _render_tab_bar(controller)
    _render_error_banner(controller)

    pending = st.session_state.pop("chat_pending_question", None)
    if pending is not None or controller.state.chat_open:
        _render_chat_panel(controller, pending)

    tab = controller.state.active_tab
    if tab == TAB_UPLOAD:
        _render_upload_tab(controller)
    elif tab == TAB_BANK:
        _render_bank_tab(controller)
    elif tab == TAB_ANALYSIS:
        _render_analysis_tab(controller)
    elif tab == TAB_PRACTICE:
        _render_practice_tab(controller)
    else:
        _render_upload_tab(controller)


if __name__ == "__main__":
    main()
