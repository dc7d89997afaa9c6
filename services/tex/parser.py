"""Top-level TeX → HTML parser.

Flow per call: strip comments, lift the title block, cut the document body,
split into sections, then for each section protect math, run the block
stages, assemble paragraphs and restore math.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from core.config import settings
from core.logger import logger
from services.tex.blocks import BlockProcessor
from services.tex.errors import FatalParseError, ParseError, TexError
from services.tex.inline_scanner import UNESCAPED, find_balanced
from services.tex.math_protection import MathStore
from services.tex.math_render import MathRenderer
from services.tex.normalizer import InlineNormalizer
from services.tex.paragraphs import ParagraphAssembler

_COMMENT_LINE_RE = re.compile(r"^[ \t]*%[^\n]*\n", re.MULTILINE)
_COMMENT_RE = re.compile(UNESCAPED + r"%[^\n]*")
_DOCUMENT_RE = re.compile(r"\\begin\{document\}(.*?)(?:\\end\{document\}|\Z)", re.DOTALL)
_SECTION_SPLIT_RE = re.compile(r"(?=\\section\*?\s*[\[{])")

_TITLE_RE = re.compile(r"\\title\s*(?:\[[^\]]*\])?\s*\{")
_AUTHOR_RE = re.compile(r"\\author\s*(?:\[[^\]]*\])?\s*\{")
_ABSTRACT_RE = re.compile(r"\\begin\{abstract\}(.*?)\\end\{abstract\}", re.DOTALL)
_MAKETITLE_RE = re.compile(r"\\maketitle(?![A-Za-z])")
_SUBTITLE_SPLIT_RE = re.compile(r"\\\\(?:[ \t]*\[[^\]]*\])?")

SECTION_ERROR_HTML = '<div class="article-section tex-error">Error processing section</div>'


@dataclass
class ParseResult:
    """HTML plus the errors recovered while producing it."""

    html: str
    errors: List[ParseError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def strip_comments(text: str) -> str:
    """Remove ``%`` comments; whole comment lines disappear with their newline."""
    text = _COMMENT_LINE_RE.sub("", text)
    return _COMMENT_RE.sub(r"\1", text)


def split_sections(body: str) -> List[str]:
    """Cut the body in front of every ``\\section``; blank slices are dropped."""
    return [chunk for chunk in _SECTION_SPLIT_RE.split(body) if chunk.strip()]


def _take_command(text: str, pattern: "re.Pattern[str]") -> Tuple[Optional[str], str]:
    """Remove the first ``\\cmd{...}`` matching pattern; return (argument, rest)."""
    m = pattern.search(text)
    if m is None:
        return None, text
    end = find_balanced(text, m.end() - 1)
    return text[m.end():end], text[:m.start()] + text[end + 1:]


class TexParser:
    """Convert a LaTeX article into an HTML fragment.

    All per-document state (math store, footnote counter, error list) is
    rebuilt at the start of every call, so one instance can be reused for
    any number of documents, one at a time.
    """

    def __init__(self, math_output: Optional[str] = None) -> None:
        self.math_output = math_output or settings.math_output
        self.errors: List[ParseError] = []
        self._reset()

    def _reset(self) -> None:
        self.errors = []
        self.math = MathStore(MathRenderer(self.math_output), on_error=self._record)
        self.normalizer = InlineNormalizer()
        self.assembler = ParagraphAssembler(self.normalizer, self._record)
        self.blocks = BlockProcessor(self.normalizer, self.assembler, self._record)

    def _record(self, stage: str, exc: BaseException, context: str = "") -> None:
        error = ParseError.from_exception(stage, exc, context)
        self.errors.append(error)
        logger.warning("[TexParser] %s: %s", stage, error.message)

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    def parse(self, source: str) -> str:
        """Render source to HTML; recovered errors are left in ``self.errors``."""
        return self.parse_with_diagnostics(source).html

    def parse_with_diagnostics(self, source: str) -> ParseResult:
        if not isinstance(source, str):
            raise FatalParseError(f"Expected document text, got {type(source).__name__}")

        self._reset()
        try:
            html = self._render_document(source)
        except Exception as exc:  # noqa: BLE001
            logger.exception("[TexParser] Parse failed")
            raise FatalParseError(str(exc) or exc.__class__.__name__) from exc

        logger.info(
            "[TexParser] Rendered %d characters into %d characters of HTML (%d recovered errors)",
            len(source),
            len(html),
            len(self.errors),
        )
        return ParseResult(html=html, errors=list(self.errors))

    # ------------------------------------------------------------------
    # document structure
    # ------------------------------------------------------------------
    def _render_document(self, source: str) -> str:
        text = strip_comments(source)
        header, text = self._render_front_matter(text)

        m = _DOCUMENT_RE.search(text)
        body = m.group(1) if m else text

        parts = [header]
        parts.extend(self._render_section(section) for section in split_sections(body))
        return "".join(parts)

    def _render_front_matter(self, text: str) -> Tuple[str, str]:
        try:
            title, text = _take_command(text, _TITLE_RE)
            author, text = _take_command(text, _AUTHOR_RE)
        except TexError as exc:
            self._record("front_matter", exc, text[:200])
            return "", text

        abstract = None
        m = _ABSTRACT_RE.search(text)
        if m is not None:
            abstract = m.group(1)
            text = text[:m.start()] + text[m.end():]
        text = _MAKETITLE_RE.sub("", text)

        parts: List[str] = []
        try:
            if title is not None:
                pieces = _SUBTITLE_SPLIT_RE.split(title, maxsplit=1)
                parts.append(f'<div class="article-title">{self._render_inline(pieces[0])}</div>')
                if len(pieces) > 1 and pieces[1].strip():
                    parts.append(f'<div class="article-subtitle">{self._render_inline(pieces[1])}</div>')
            if author is not None:
                parts.append(f'<div class="article-author">{self._render_inline(author)}</div>')
            if abstract is not None:
                parts.append(self._with_math(abstract, self.blocks.render_abstract))
        except TexError as exc:
            self._record("front_matter", exc, title or author or abstract or "")
        return "".join(parts), text

    def _render_section(self, section: str) -> str:
        try:
            inner = self._with_math(
                section, lambda text: self.assembler.assemble(self.blocks.process(text))
            )
        except Exception as exc:  # noqa: BLE001
            self._record("section", exc, section)
            return SECTION_ERROR_HTML
        return f'<div class="article-section">{inner}</div>'

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _render_inline(self, text: str) -> str:
        return self._with_math(text, self.normalizer.normalize)

    def _with_math(self, text: str, render: Callable[[str], str]) -> str:
        protected = self.math.protect(text)
        try:
            html = render(protected)
        except Exception:
            # Tokens of a failed render must not be counted as lost later
            self.math.discard_pending()
            raise
        return self.math.restore(html)
