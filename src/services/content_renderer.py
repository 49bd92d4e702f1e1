"""
Lightweight markdown + LaTeX parsing for model-written text.

Text is parsed line by line into block nodes with inline spans, then
re-emitted as markdown in which every piece of model text is escaped.
Only the constructs listed here survive: headings (#, ##, ###), list items
(- or *), bold (**...**), inline math ($...$) and display math ($$...$$,
on one line or across lines). Math spans are passed through verbatim for
KaTeX typesetting; raw HTML, links and images are never interpreted.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

SpanKind = Literal["text", "bold", "math", "display_math"]
BlockKind = Literal["heading", "list_item", "paragraph", "blank", "math_block"]

_INLINE_RE = re.compile(r"\$\$(?P<display>.+?)\$\$|\$(?P<math>[^$\n]+?)\$")
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")
_HEADING_RE = re.compile(r"^(#{1,3}) (.*)$")
_MD_SPECIAL_RE = re.compile(r"([\\`*_{}\[\]<>#|~!$])")
_LEADING_MARKER_RE = re.compile(r"^(\s*)(\d*)([-+=>.)])")


@dataclass(frozen=True)
class Span:
    kind: SpanKind
    text: str


@dataclass(frozen=True)
class Block:
    kind: BlockKind
    spans: tuple[Span, ...] = field(default_factory=tuple)
    level: int = 0


def _split_bold(text: str) -> list[Span]:
    spans: list[Span] = []
    pos = 0
    for match in _BOLD_RE.finditer(text):
        if match.start() > pos:
            spans.append(Span("text", text[pos:match.start()]))
        spans.append(Span("bold", match.group(1)))
        pos = match.end()
    if pos < len(text):
        spans.append(Span("text", text[pos:]))
    return spans


def parse_inline(line: str) -> tuple[Span, ...]:
    """Split one line into text, bold and math spans."""
    spans: list[Span] = []
    pos = 0
    for match in _INLINE_RE.finditer(line):
        if match.start() > pos:
            spans.extend(_split_bold(line[pos:match.start()]))
        if match.group("display") is not None:
            spans.append(Span("display_math", match.group("display").strip()))
        else:
            spans.append(Span("math", match.group("math")))
        pos = match.end()
    if pos < len(line):
        spans.extend(_split_bold(line[pos:]))
    return tuple(spans)


def parse_blocks(text: str) -> list[Block]:
    """Parse *text* into a flat list of block nodes."""
    blocks: list[Block] = []
    math_lines: list[str] | None = None
    for line in (text or "").replace("\r\n", "\n").split("\n"):
        if math_lines is not None:
            if line.strip() == "$$":
                blocks.append(Block("math_block", (Span("display_math", "\n".join(math_lines).strip()),)))
                math_lines = None
            else:
                math_lines.append(line)
            continue
        if line.strip() == "$$":
            math_lines = []
            continue
        heading = _HEADING_RE.match(line)
        if heading:
            blocks.append(Block("heading", parse_inline(heading.group(2)), level=len(heading.group(1))))
        elif line.startswith("* ") or line.startswith("- "):
            blocks.append(Block("list_item", parse_inline(line[2:])))
        elif not line.strip():
            blocks.append(Block("blank"))
        else:
            blocks.append(Block("paragraph", parse_inline(line)))
    if math_lines is not None:
        # Unclosed block: keep the text visible as plain paragraphs.
        blocks.append(Block("paragraph", (Span("text", "$$"),)))
        blocks.extend(Block("paragraph", parse_inline(m)) for m in math_lines)
    return blocks


def _span_source(span: Span) -> str:
    if span.kind == "bold":
        return f"**{span.text}**" if span.text.strip() else ""
    if span.kind == "math":
        return f"${span.text}$"
    if span.kind == "display_math":
        return f"$${span.text}$$"
    return span.text


def excerpt(text: str, limit: int = 80) -> str:
    """
    Shorten *text* to roughly *limit* visible characters, ending with "…".

    Plain and bold text may be cut anywhere; a math span is kept whole or
    dropped, so the result never holds an unpaired ``$``.
    """
    flat = " ".join((text or "").split())
    if len(flat) <= limit:
        return flat
    out: list[str] = []
    used = 0
    for span in parse_inline(flat):
        room = limit - used
        if span.kind in ("text", "bold") and len(span.text) > room:
            out.append(_span_source(Span(span.kind, span.text[:room].rstrip())))
            break
        if span.kind in ("math", "display_math") and len(span.text) > room:
            break
        out.append(_span_source(span))
        used += len(span.text)
    return f"{''.join(out).rstrip()}…"


def escape_markdown(text: str) -> str:
    """Escape characters that markdown (or HTML) would otherwise interpret."""
    escaped = _MD_SPECIAL_RE.sub(r"\\\1", text)
    return _LEADING_MARKER_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}\\{m.group(3)}", escaped)


def _spans_to_markdown(spans: tuple[Span, ...]) -> str:
    out: list[str] = []
    for span in spans:
        if span.kind == "text":
            out.append(escape_markdown(span.text))
        elif span.kind == "bold":
            out.append(f"**{escape_markdown(span.text)}**" if span.text.strip() else "")
        elif span.kind == "math":
            out.append(f"${span.text}$")
        else:
            out.append(f"$${span.text}$$")
    return "".join(out)


def block_to_markdown(block: Block) -> str:
    if block.kind == "heading":
        return f"{'#' * max(1, min(block.level, 3))} {_spans_to_markdown(block.spans)}"
    if block.kind == "list_item":
        return f"- {_spans_to_markdown(block.spans)}"
    if block.kind == "math_block":
        return f"$$\n{block.spans[0].text}\n$$" if block.spans else ""
    if block.kind == "blank":
        return ""
    return _spans_to_markdown(block.spans)


def to_markdown(text: str) -> str:
    """
    Convert model text into safe markdown for Streamlit.

    Consecutive list items stay in one list; every other line becomes its
    own paragraph so the model's line breaks are preserved.
    """
    chunks: list[str] = []
    prev_kind: str | None = None
    for block in parse_blocks(text):
        if block.kind == "blank":
            prev_kind = "blank"
            continue
        rendered = block_to_markdown(block)
        if chunks and prev_kind == "list_item" and block.kind == "list_item":
            chunks[-1] = f"{chunks[-1]}\n{rendered}"
        else:
            chunks.append(rendered)
        prev_kind = block.kind
    return "\n\n".join(chunks)
