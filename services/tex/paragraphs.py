"""Paragraph assembly: blank-line splitting, block pass-through, <p> wrapping."""
from __future__ import annotations

import re
from typing import Callable, List

from services.tex.errors import TexError
from services.tex.normalizer import InlineNormalizer
from utils.html_utils import escape_html

_PARAGRAPH_SPLIT_RE = re.compile(r"\n[ \t]*\n\s*")
_BLOCK_START_RE = re.compile(r"<(?:h[1-6]|div|ol|ul|dl|table|blockquote)\b")
_DISPLAY_ONLY_RE = re.compile(r"(?:__DISPLAY_MATH_\d+__\s*)+")
_DISPLAY_TOKEN_RE = re.compile(r"(__DISPLAY_MATH_\d+__)")
_OPEN_TAG_RE = re.compile(r"<(?!br\b)[a-z][a-z0-9]*\b[^>]*>")
_CLOSE_TAG_RE = re.compile(r"</[a-z][a-z0-9]*>")

ErrorCallback = Callable[[str, BaseException, str], None]


def is_block(fragment: str) -> bool:
    """True for already-rendered block HTML or bare display-math tokens."""
    return bool(_BLOCK_START_RE.match(fragment) or _DISPLAY_ONLY_RE.fullmatch(fragment))


def _open_tags(html: str) -> int:
    return len(_OPEN_TAG_RE.findall(html)) - len(_CLOSE_TAG_RE.findall(html))


def wrap_paragraph(content: str) -> str:
    """Wrap inline HTML in <p>, closing it around top-level display math.

    A display token nested in an inline element (``<strong>`` and the
    like) stays inside the paragraph.
    """
    pieces = _DISPLAY_TOKEN_RE.split(content)
    out: List[str] = []
    run = ""
    for idx, piece in enumerate(pieces):
        if idx % 2 and _open_tags(run) == 0:
            if run.strip():
                out.append(f"<p>{run.strip()}</p>")
            out.append(piece)
            run = ""
        else:
            run += piece
    if run.strip():
        out.append(f"<p>{run.strip()}</p>")
    return "".join(out)


class ParagraphAssembler:
    """Split text on blank lines and render each fragment."""

    def __init__(self, normalizer: InlineNormalizer, on_error: ErrorCallback) -> None:
        self.normalizer = normalizer
        self.on_error = on_error

    def assemble(self, text: str) -> str:
        parts: List[str] = []
        for fragment in _PARAGRAPH_SPLIT_RE.split(text):
            fragment = fragment.strip()
            if not fragment:
                continue
            if is_block(fragment):
                parts.append(fragment)
                continue
            parts.append(self._render_paragraph(fragment))
        return "".join(parts)

    def _render_paragraph(self, fragment: str) -> str:
        try:
            content = self.normalizer.normalize(fragment)
        except TexError as exc:
            # Only this paragraph degrades; its raw text stays readable
            self.on_error("paragraphs", exc, fragment)
            return f'<p class="tex-error">{escape_html(fragment)}</p>'
        return wrap_paragraph(content)
