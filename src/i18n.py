"""UI strings for the two supported languages."""

from __future__ import annotations

DEFAULT_LANG = "zh"

_STRINGS: dict[str, dict[str, str]] = {
    "zh": {
        "lang_zh": "中文",
        "lang_en": "English",
        "lang_label": "界面语言",
        "tab_upload": "上传错题",
        "tab_bank": "我的错题库",
        "tab_analysis": "知识点分析",
        "tab_practice": "巩固练习",
        "bank_size": "错题数量：{n}",
        "version": "版本 {v}",
        "schema_version": "数据库结构 v{current}（最新 v{latest}）",
        "dismiss": "关闭提示",
        # loading
        "loading_extract": "正在识别题目...",
        "loading_analyze": "正在分析知识点...",
        "loading_generate": "正在生成练习题...",
        # upload
        "upload_label": "拖拽错题图片到这里，或点击上传",
        "upload_help": "支持 PNG, JPG, JPEG, WEBP 格式",
        "upload_preview": "图片预览",
        "extract_btn": "开始识别",
        "extracted_title": "识别出的错题",
        "add_to_bank_btn": "存入错题库",
        "added_n": "已存入 {n} 道新错题。",
        # bank
        "bank_title": "我的错题库 ({n})",
        "question_n": "题目 {n}",
        "delete_btn": "删除",
        "chat_btn": "AI 辅导",
        "analyze_btn": "⚡ 分析知识点",
        "bank_empty_title": "错题库是空的",
        "bank_empty_hint": "请先从“上传错题”标签页添加题目。",
        # analysis
        "analysis_title": "知识点分析报告",
        "related_questions": "相关错题",
        "related_missing": "（相关错题已被删除）",
        "generate_btn": "✏️ 生成巩固练习",
        "analysis_empty_title": "暂无分析报告",
        "analysis_empty_hint": "请先在“我的错题库”中进行知识点分析。",
        # practice
        "practice_title": "巩固练习",
        "practice_n": "第 {n} 题",
        "show_answer": "查看详解",
        "hide_answer": "隐藏答案",
        "answer_label": "详解：",
        "practice_empty_title": "暂无练习题",
        "practice_empty_hint": "请先生成知识点分析，然后创建巩固练习。",
        # chat
        "chat_title": "错题精讲",
        "chat_close": "结束辅导",
        "chat_placeholder": "在这里输入你的问题...",
        "chat_thinking": "思考中...",
        # errors
        "err_storage_read": "无法从本地加载错题库。",
        "err_storage_write": "无法将错题保存至本地。",
        "err_no_image": "请先上传一张图片。",
        "err_extract": "无法从图片中提取题目，请确保图片清晰并重试。",
        "err_empty_bank": "错题库为空，请先添加错题。",
        "err_analyze": "生成知识点分析失败，请稍后重试。",
        "err_no_analysis": "请先进行知识点分析。",
        "err_generate": "生成巩固练习失败，请稍后重试。",
        "err_chat_start": "抱歉，我现在无法开始辅导。请稍后再试。",
        "err_chat_turn": "抱歉，我好像遇到了一些问题，请稍后再试。",
        "err_missing_key": "未配置 API Key：请设置环境变量 {env} 后重新启动。",
        "migration_in_progress": "数据库正在升级，请稍后刷新页面。",
        "migration_recovery": "恢复方法：从 {path} 中的备份还原数据库。",
        "metrics_title": "运行统计",
        "metrics_empty": "暂无调用记录。",
        "metrics_row": "{op}：{total} 次（失败 {errors} 次），平均 {avg}s",
    },
    "en": {
        "lang_zh": "中文",
        "lang_en": "English",
        "lang_label": "Language",
        "tab_upload": "Upload",
        "tab_bank": "My Bank",
        "tab_analysis": "Analysis",
        "tab_practice": "Practice",
        "bank_size": "Questions: {n}",
        "version": "Version {v}",
        "schema_version": "Database schema v{current} (latest v{latest})",
        "dismiss": "Dismiss",
        "loading_extract": "Reading questions from the photo...",
        "loading_analyze": "Analysing knowledge points...",
        "loading_generate": "Generating practice questions...",
        "upload_label": "Drop a photo of your exam here, or browse",
        "upload_help": "PNG, JPG, JPEG and WEBP are supported",
        "upload_preview": "Preview",
        "extract_btn": "Extract questions",
        "extracted_title": "Extracted questions",
        "add_to_bank_btn": "Add to bank",
        "added_n": "Added {n} new question(s).",
        "bank_title": "My question bank ({n})",
        "question_n": "Question {n}",
        "delete_btn": "Delete",
        "chat_btn": "AI tutor",
        "analyze_btn": "⚡ Analyse knowledge points",
        "bank_empty_title": "Your bank is empty",
        "bank_empty_hint": "Add questions from the Upload tab first.",
        "analysis_title": "Knowledge point report",
        "related_questions": "Related questions",
        "related_missing": "(related questions were deleted)",
        "generate_btn": "✏️ Generate practice test",
        "analysis_empty_title": "No analysis yet",
        "analysis_empty_hint": "Run an analysis from My Bank first.",
        "practice_title": "Practice test",
        "practice_n": "Question {n}",
        "show_answer": "Show solution",
        "hide_answer": "Hide solution",
        "answer_label": "Solution:",
        "practice_empty_title": "No practice questions yet",
        "practice_empty_hint": "Analyse your bank, then generate a practice test.",
        "chat_title": "Tutoring",
        "chat_close": "Close",
        "chat_placeholder": "Type your question here...",
        "chat_thinking": "Thinking...",
        "err_storage_read": "Could not load the question bank from local storage.",
        "err_storage_write": "Could not save the question bank locally.",
        "err_no_image": "Please upload an image first.",
        "err_extract": "Could not extract questions from the image. Please retry with a clearer photo.",
        "err_empty_bank": "Your question bank is empty. Add some questions first.",
        "err_analyze": "Knowledge point analysis failed. Please try again later.",
        "err_no_analysis": "Please run the knowledge point analysis first.",
        "err_generate": "Practice test generation failed. Please try again later.",
        "err_chat_start": "Sorry, I can't start tutoring right now. Please try again later.",
        "err_chat_turn": "Sorry, something went wrong. Please try again later.",
        "err_missing_key": "No API key configured: set {env} and restart.",
        "migration_in_progress": "Database upgrade in progress. Please refresh shortly.",
        "migration_recovery": "Recovery: restore the database from the backups in {path}.",
        "metrics_title": "Usage stats",
        "metrics_empty": "No model calls yet.",
        "metrics_row": "{op}: {total} call(s) ({errors} failed), avg {avg}s",
    },
}


def tr(lang: str, key: str, **kwargs: object) -> str:
    """Look up *key* for *lang*, falling back to Chinese and then to the key itself."""
    table = _STRINGS.get(lang) or _STRINGS[DEFAULT_LANG]
    text = table.get(key) or _STRINGS[DEFAULT_LANG].get(key) or key
    if kwargs:
        try:
            return text.format(**kwargs)
        except (KeyError, IndexError):
            return text
    return text
