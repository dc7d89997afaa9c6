"""Math protection: swap math spans for opaque tokens and put them back.

Text passes (inline commands, citations, escapes) run between ``protect``
and ``restore`` and therefore never see math source.
"""
from __future__ import annotations

import re
from typing import Callable, Dict, List, Optional

from core.logger import logger
from services.tex.commands import DISPLAY_MATH_ENVS
from services.tex.errors import MathRestorationMismatch
from services.tex.inline_scanner import UNESCAPED
from services.tex.math_render import MathRenderer, MathSpan

DISPLAY_TOKEN = "__DISPLAY_MATH_{}__"
INLINE_TOKEN = "__INLINE_MATH_{}__"
TOKEN_RE = re.compile(r"__(?:DISPLAY|INLINE)_MATH_\d+__")

# Groups: 1 = backslash run before the span, 2 = whole span, 3 = body.
# Bodies step over escape pairs, so \$ and \\ never close a span.
_DOUBLE_DOLLAR_RE = re.compile(UNESCAPED + r"(\$\$((?:\\.|[^\\])+?)\$\$)", re.DOTALL)
_BRACKET_RE = re.compile(UNESCAPED + r"(\\\[((?:\\.|[^\\])*?)\\\])", re.DOTALL)
_DISPLAY_ENV_RE = re.compile(
    r"\\begin\{((?:%s)\*?|displaymath)\}(.*?)\\end\{\1\}"
    % "|".join(env for env in DISPLAY_MATH_ENVS if env != "displaymath"),
    re.DOTALL,
)
_PAREN_RE = re.compile(UNESCAPED + r"(\\\(((?:\\.|[^\\])*?)\\\))", re.DOTALL)
# Opening $ must touch non-space, closing $ must follow non-space
_DOLLAR_RE = re.compile(UNESCAPED + r"(\$(?![\s$])((?:\\.|[^$\\])+?)(?<!\s)\$)", re.DOTALL)
_CURRENCY_RE = re.compile(r"\d+(?:\.\d*)?")
_PARAGRAPH_BREAK_RE = re.compile(r"\n[ \t]*\n")

ErrorCallback = Callable[[str, BaseException, str], None]


class MathStore:
    """Per-parse placeholder → math mapping.

    Tokens are numbered monotonically for the lifetime of the store; each
    parse call gets a fresh store so nothing leaks between documents.
    """

    def __init__(
        self,
        renderer: Optional[MathRenderer] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self.renderer = renderer or MathRenderer()
        self.on_error = on_error
        self.spans: Dict[str, MathSpan] = {}
        self.counter = 0
        self._pending: List[str] = []

    def __len__(self) -> int:
        return len(self.spans)

    @property
    def pending(self) -> List[str]:
        """Tokens inserted by the most recent protect call(s), not yet restored."""
        return list(self._pending)

    def clear(self) -> None:
        self.spans.clear()
        self.counter = 0
        self._pending = []

    def discard_pending(self) -> None:
        self._pending = []

    # ------------------------------------------------------------------
    # protect
    # ------------------------------------------------------------------
    def protect(self, text: str) -> str:
        """Replace every math span in text with a fresh token."""
        before = self.counter

        text = _DOUBLE_DOLLAR_RE.sub(lambda m: self._store_delimited(m, True), text)
        text = _BRACKET_RE.sub(lambda m: self._store_delimited(m, True), text)
        text = _DISPLAY_ENV_RE.sub(lambda m: self._store(m.group(0), m.group(0), True), text)
        text = _PAREN_RE.sub(lambda m: self._store_delimited(m, False), text)
        text = _DOLLAR_RE.sub(self._store_dollar, text)

        logger.debug("[MathStore] Protected %d math expressions", self.counter - before)
        return text

    def _store_delimited(self, m: re.Match, display: bool) -> str:
        return m.group(1) + self._store(m.group(2), m.group(3), display)

    def _store_dollar(self, m: re.Match) -> str:
        body = m.group(3)
        if _CURRENCY_RE.fullmatch(body) or _PARAGRAPH_BREAK_RE.search(body):
            return m.group(0)
        return self._store_delimited(m, False)

    def _store(self, source: str, body: str, display: bool) -> str:
        token = (DISPLAY_TOKEN if display else INLINE_TOKEN).format(self.counter)
        self.counter += 1
        self.spans[token] = MathSpan(token=token, display=display, source=source, body=body)
        self._pending.append(token)
        return token

    # ------------------------------------------------------------------
    # restore
    # ------------------------------------------------------------------
    def restore(self, text: str, verbatim: bool = False) -> str:
        """Put back every span recorded since the last restore.

        With ``verbatim=True`` the exact original source is reinserted, so
        ``restore(protect(t), verbatim=True) == t``. Otherwise each span is
        rendered through the configured MathRenderer.
        """
        restored = 0
        # Newest first: a later span's source may contain an earlier token
        for token in reversed(self._pending):
            span = self.spans[token]
            count = text.count(token)
            if count != 1:
                self._report_mismatch(token, count)
            if count == 0:
                continue
            replacement = span.source if verbatim else self._render(span)
            text = text.replace(token, replacement)
            restored += count
        self._pending = []

        logger.debug("[MathStore] Restored %d math expressions", restored)
        return text

    def _render(self, span: MathSpan) -> str:
        try:
            return self.renderer.render(span)
        except Exception as exc:  # noqa: BLE001
            logger.warning("[MathStore] Math rendering failed for %s: %s", span.token, exc)
            if self.on_error is not None:
                self.on_error("math_render", exc, span.source)
            return MathRenderer.render_delimiters(span)

    def _report_mismatch(self, token: str, count: int) -> None:
        if count == 0:
            message = f"Placeholder {token} was lost before restoration"
        else:
            message = f"Placeholder {token} was duplicated ({count} occurrences)"
        logger.warning("[MathStore] %s", message)
        if self.on_error is not None:
            self.on_error("restore_math", MathRestorationMismatch(message), self.spans[token].source)
