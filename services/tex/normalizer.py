"""Inline text normalizer: the terminal pass over plain (non-HTML) text.

Step order matters and must not be rearranged:
  1. brace-balanced inline commands (bold, italic, code, sizes, ...),
     then links and typography
  2. citations  3. references/labels  4. footnotes  5. line breaks
  6. remaining commands and stray braces  7. whitespace
  8. reserved-character escapes, always last
"""
from __future__ import annotations

import re
import unicodedata
from typing import List

from services.tex.commands import (
    ACCENTS,
    DROPPED_COMMANDS,
    FONT_SIZES,
    SPECIAL_ESCAPES,
    SYMBOL_COMMANDS,
)
from services.tex.inline_scanner import UNESCAPED, find_balanced, read_group, scan_inline
from utils.html_utils import anchor_id, escape_attr

_SIZE_SWITCH_RE = re.compile(r"\\(%s)(?![A-Za-z])[ \t]+([^\n]*)" % "|".join(FONT_SIZES))
_ACCENT_RE = re.compile(UNESCAPED + r"\\([\'`^\"~=.])\s*(?:\{([A-Za-z])\}|([A-Za-z]))")
_SPACING_RE = re.compile(UNESCAPED + r"\\([,;: !@/-])")
_SPACING = {",": "\u2009", ";": " ", ":": " ", " ": " ", "!": "", "@": "", "/": "", "-": ""}
_TIE_RE = re.compile(UNESCAPED + r"~")
_TAG_SPLIT_RE = re.compile(r"(<[^>]*>)")
_LITERAL_OPEN_RE = re.compile(r"<(?:code|a)\b")
_LITERAL_CLOSE_RE = re.compile(r"</(?:code|a)>")

_HREF_RE = re.compile(r"\\href\s*\{")
_URL_RE = re.compile(r"\\url\s*\{([^}]*)\}")

_CITEP_RE = re.compile(r"\\citep\*?(?:\[([^\]]*)\])?(?:\[([^\]]*)\])?\{([^}]*)\}")
_CITET_RE = re.compile(r"\\citet\*?(?:\[([^\]]*)\])?\{([^}]*)\}")
_CITE_RE = re.compile(r"\\cite\*?(?:\[([^\]]*)\])?\{([^}]*)\}")

_LABEL_RE = re.compile(r"\\label\s*\{([^}]*)\}")
_EQREF_RE = re.compile(r"\\eqref\s*\{([^}]*)\}")
_REF_RE = re.compile(r"\\(?:ref|autoref|cref|Cref|pageref)\s*\{([^}]*)\}")

_FOOTNOTE_RE = re.compile(r"\\footnote\s*(?:\[[^\]]*\])?\s*\{")

_LINE_BREAK_RE = re.compile(r"\\\\\*?(?:[ \t]*\[[^\]]*\])?")
_SYMBOL_RE = re.compile(r"\\(%s)(?![A-Za-z])(?:\{\})?" % "|".join(SYMBOL_COMMANDS))
_DROPPED_RE = re.compile(r"\\(%s)\*?(?![A-Za-z])" % "|".join(sorted(DROPPED_COMMANDS)))
_ENV_MARKER_RE = re.compile(r"\\(?:begin|end)\s*\{[^}]*\}")
_COMMAND_RE = re.compile(r"\\[A-Za-z]+\*?")
_STRAY_BRACE_RE = re.compile(r"(?<!\\)[{}]")
_WHITESPACE_RE = re.compile(r"\s+")
_ESCAPE_RE = re.compile(r"\\([#$%&_{}])")


class InlineNormalizer:
    """Convert a fragment of LaTeX running text into inline HTML.

    One instance lives for one parse call; it owns the footnote counter.
    Raises UnbalancedBraceError from the brace scanner; callers decide how
    to degrade.
    """

    def __init__(self) -> None:
        self.footnote_count = 0

    def normalize(self, text: str) -> str:
        text = scan_inline(text)
        text = self._apply_size_switches(text)
        text = self._replace_links(text)
        text = self._apply_typography(text)
        text = self._replace_citations(text)
        text = self._replace_references(text)
        text = self._replace_footnotes(text)
        text = _LINE_BREAK_RE.sub("<br>", text)
        text = self._strip_commands(text)
        text = _WHITESPACE_RE.sub(" ", text).strip()
        return self.resolve_escapes(text)

    # ------------------------------------------------------------------
    def _apply_size_switches(self, text: str) -> str:
        # \small rest-of-line; the braced form was handled by the scanner
        return _SIZE_SWITCH_RE.sub(r'<span class="tex-\1">\2</span>', text)

    def _replace_links(self, text: str) -> str:
        out: List[str] = []
        pos = 0
        for m in _HREF_RE.finditer(text):
            if m.start() < pos:
                continue
            url_end = find_balanced(text, m.end() - 1)
            url = text[m.end():url_end]
            label, after = read_group(text, url_end + 1)
            out.append(text[pos:m.start()])
            out.append(f'<a href="{escape_attr(url)}">{label if label is not None else escape_attr(url)}</a>')
            pos = after
        out.append(text[pos:])
        text = "".join(out)
        return _URL_RE.sub(
            lambda m: f'<a href="{escape_attr(m.group(1))}">{escape_attr(m.group(1))}</a>', text
        )

    def _apply_typography(self, text: str) -> str:
        text = _ACCENT_RE.sub(self._accent, text)
        parts = _TAG_SPLIT_RE.split(text)
        literal = 0
        # Odd indices are tags; attribute values must stay untouched
        for idx, part in enumerate(parts):
            if idx % 2:
                if _LITERAL_OPEN_RE.match(part):
                    literal += 1
                elif _LITERAL_CLOSE_RE.match(part):
                    literal = max(0, literal - 1)
                continue
            if literal:
                # code and link text is shown as typed
                continue
            part = part.replace("---", "\u2014").replace("--", "\u2013")
            part = part.replace("``", "\u201c").replace("''", "\u201d")
            parts[idx] = _TIE_RE.sub(r"\1&nbsp;", part)
        text = "".join(parts)
        return _SPACING_RE.sub(lambda m: m.group(1) + _SPACING[m.group(2)], text)

    @staticmethod
    def _accent(m: re.Match) -> str:
        letter = m.group(3) or m.group(4)
        return m.group(1) + unicodedata.normalize("NFC", letter + ACCENTS[m.group(2)])

    # ------------------------------------------------------------------
    def _replace_citations(self, text: str) -> str:
        def citep(m: re.Match) -> str:
            pre, post = m.group(1), m.group(2)
            if post is None:
                # a single optional argument is the post-note
                pre, post = None, pre
            inner = _cite_links(m.group(3), bracketed=True)
            if pre:
                inner = f"{pre} {inner}"
            if post:
                inner = f"{inner}, {post}"
            return f"({inner})"

        def citet(m: re.Match) -> str:
            inner = _cite_links(m.group(2), bracketed=False)
            return f"{inner} ({m.group(1)})" if m.group(1) else inner

        def cite(m: re.Match) -> str:
            inner = _cite_links(m.group(2), bracketed=True)
            return f"{inner}, {m.group(1)}" if m.group(1) else inner

        text = _CITEP_RE.sub(citep, text)
        text = _CITET_RE.sub(citet, text)
        return _CITE_RE.sub(cite, text)

    def _replace_references(self, text: str) -> str:
        text = _LABEL_RE.sub(lambda m: f'<span id="{anchor_id(m.group(1))}"></span>', text)
        text = _EQREF_RE.sub(lambda m: f"({_ref_link(m.group(1))})", text)
        return _REF_RE.sub(lambda m: _ref_link(m.group(1)), text)

    def _replace_footnotes(self, text: str) -> str:
        out: List[str] = []
        pos = 0
        while True:
            m = _FOOTNOTE_RE.search(text, pos)
            if m is None:
                break
            end = find_balanced(text, m.end() - 1)
            self.footnote_count += 1
            n = self.footnote_count
            out.append(text[pos:m.start()])
            out.append(
                f'<sup class="footnote-marker" id="fnref-{n}">{n}</sup>'
                f'<span class="footnote" id="fn-{n}">{text[m.end():end]}</span>'
            )
            pos = end + 1
        out.append(text[pos:])
        return "".join(out)

    def _strip_commands(self, text: str) -> str:
        text = _SYMBOL_RE.sub(lambda m: SYMBOL_COMMANDS[m.group(1)], text)
        text = self._drop_with_arguments(text)
        text = _ENV_MARKER_RE.sub("", text)
        text = _COMMAND_RE.sub("", text)
        return _STRAY_BRACE_RE.sub("", text)

    def _drop_with_arguments(self, text: str) -> str:
        out: List[str] = []
        pos = 0
        for m in _DROPPED_RE.finditer(text):
            if m.start() < pos:
                continue
            out.append(text[pos:m.start()])
            end = m.end()
            while True:
                _, after = read_group(text, end, "[", "]")
                if after == end:
                    _, after = read_group(text, end)
                if after == end:
                    break
                end = after
            pos = end
        out.append(text[pos:])
        return "".join(out)

    @staticmethod
    def resolve_escapes(text: str) -> str:
        return _ESCAPE_RE.sub(lambda m: SPECIAL_ESCAPES[m.group(1)], text)


def _cite_links(keys: str, bracketed: bool) -> str:
    links = []
    for key in (k.strip() for k in keys.split(",")):
        if not key:
            continue
        label = f"[{escape_attr(key)}]" if bracketed else escape_attr(key)
        links.append(f'<a href="#ref-{anchor_id(key)}" class="citation">{label}</a>')
    return ", ".join(links)


def _ref_link(key: str) -> str:
    key = key.strip()
    return f'<a href="#{anchor_id(key)}" class="reference">{escape_attr(key)}</a>'
