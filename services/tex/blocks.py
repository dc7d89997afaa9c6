"""Block environment processor.

A fixed, ordered pipeline of structural rewrites. Each stage leaves text
it does not recognise untouched, and later stages rely on earlier ones
having already consumed their syntax (lists after theorems, so theorem
bodies can hold lists; tables before the paragraph pass, so `&` and `\\\\`
never reach the inline normalizer as row/cell syntax).

Rendered blocks are emitted between blank lines so the paragraph
assembler sees each one as its own fragment.
"""
from __future__ import annotations

import re
from typing import Callable, List, Tuple

from services.tex.commands import HEADING_LEVELS, LIST_TAGS, QUOTE_ENVS, RULE_COMMANDS, THEOREM_KINDS
from services.tex.errors import StageError, TexError
from services.tex.inline_scanner import find_balanced, read_group
from services.tex.normalizer import InlineNormalizer
from services.tex.paragraphs import ErrorCallback, ParagraphAssembler
from utils.html_utils import anchor_id, escape_html

STAGES = ("headings", "theorems", "lists", "tables", "bibliography", "quotes", "appendix")

_HEADING_TAGS = dict(HEADING_LEVELS)
_HEADING_RE = re.compile(
    r"\\(%s)(?![A-Za-z])\*?\s*(?:\[[^\]]*\])?\s*\{" % "|".join(_HEADING_TAGS)
)


def _innermost_env_re(names, title: bool = False) -> "re.Pattern[str]":
    """Match an environment from ``names`` that contains none of ``names``."""
    alternatives = "|".join(names)
    optional = r"[ \t]*(?:\[([^\]]*)\])?" if title else r"[ \t]*(?:\[[^\]]*\])?"
    return re.compile(
        r"\\begin\{(%s)\}%s((?:(?!\\begin\{(?:%s)\}).)*?)\\end\{\1\}"
        % (alternatives, optional, alternatives),
        re.DOTALL,
    )


_THEOREM_RE = _innermost_env_re(THEOREM_KINDS, title=True)
_LIST_RE = _innermost_env_re(tuple(LIST_TAGS))
_QUOTE_RE = _innermost_env_re(QUOTE_ENVS)
_ABSTRACT_RE = re.compile(r"\\begin\{abstract\}(.*?)\\end\{abstract\}", re.DOTALL)
_ITEM_RE = re.compile(r"\\item(?![A-Za-z])")

_TABLE_RE = re.compile(r"\\begin\{(table\*?)\}[ \t]*(?:\[[^\]]*\])?(.*?)\\end\{\1\}", re.DOTALL)
_TABLE_OPEN_RE = re.compile(r"\\begin\{table\*?\}(?:[ \t]*\[[^\]]*\])?")
_TABULAR_OPEN_RE = re.compile(r"\\begin\{tabular\}[ \t]*(?:\[[^\]]*\])?\s*\{")
_TABULAR_END_RE = re.compile(r"\\end\{tabular\}")
_CAPTION_RE = re.compile(r"\\caption\s*(?:\[[^\]]*\])?\s*\{")
_RULE_RE = re.compile(
    r"\\(?:%s)(?![A-Za-z])|\\(?:cline|cmidrule)(?:\([^)]*\))?\{[^}]*\}|\\label\{[^}]*\}"
    % "|".join(RULE_COMMANDS)
)
_ROW_SPLIT_RE = re.compile(r"\\\\(?:[ \t]*\[[^\]]*\])?")
_CELL_SPLIT_RE = re.compile(r"(?<!\\)&")
_MULTICOLUMN = "\\multicolumn"

_BIB_RE = re.compile(
    r"\\begin\{thebibliography\}\s*(?:\{[^}]*\})?(.*?)\\end\{thebibliography\}", re.DOTALL
)
_BIBITEM_RE = re.compile(r"\\bibitem(?![A-Za-z])")
_BIB_COMMAND_RE = re.compile(r"\\bibliography(?:style)?\s*\{[^}]*\}")

_APPENDIX_RE = re.compile(r"\\appendix(?![A-Za-z])")


def _block(html: str) -> str:
    return f"\n\n{html}\n\n"


def error_html(stage: str) -> str:
    return f'<div class="tex-error" data-stage="{stage}">Error in {stage}</div>'


class BlockProcessor:
    """Run the block stages over one (math-protected) chunk of text."""

    def __init__(
        self,
        normalizer: InlineNormalizer,
        assembler: ParagraphAssembler,
        on_error: ErrorCallback,
    ) -> None:
        self.normalizer = normalizer
        self.assembler = assembler
        self.on_error = on_error

    def process(self, text: str) -> str:
        for stage in STAGES:
            handler = getattr(self, f"parse_{stage}")
            try:
                text = handler(text)
            except Exception as exc:  # noqa: BLE001
                # The stage's input carries on unmodified to the next stage
                self.on_error(stage, exc, text)
        return text

    def render_nested(self, text: str) -> str:
        """Full block + paragraph rendering for an environment body."""
        return self.assembler.assemble(self.process(text))

    def render_abstract(self, content: str) -> str:
        return (
            '<div class="article-abstract"><strong>Abstract:</strong>'
            f"{self.render_nested(content.strip())}</div>"
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _guard(self, stage: str, raw: str, render: Callable[[], str]) -> str:
        try:
            return _block(render())
        except TexError as exc:
            self.on_error(stage, exc, raw)
            return _block(error_html(stage))

    def _replace_innermost(
        self, stage: str, pattern: "re.Pattern[str]", render: Callable[[re.Match], str], text: str
    ) -> str:
        while True:
            m = pattern.search(text)
            if m is None:
                return text
            html = self._guard(stage, m.group(0), lambda: render(m))
            text = text[:m.start()] + html + text[m.end():]

    # ------------------------------------------------------------------
    # 1. headings
    # ------------------------------------------------------------------
    def parse_headings(self, text: str) -> str:
        out: List[str] = []
        pos = 0
        for m in _HEADING_RE.finditer(text):
            if m.start() < pos:
                continue
            out.append(text[pos:m.start()])
            tag = _HEADING_TAGS[m.group(1)]
            try:
                end = find_balanced(text, m.end() - 1)
                title = self.normalizer.normalize(text[m.end():end])
            except TexError as exc:
                self.on_error("headings", exc, m.group(0))
                out.append(_block(error_html("headings")))
                pos = m.end()
                continue
            out.append(_block(f"<{tag}>{title}</{tag}>"))
            pos = end + 1
        out.append(text[pos:])
        return "".join(out)

    # ------------------------------------------------------------------
    # 2. theorem-like environments
    # ------------------------------------------------------------------
    def parse_theorems(self, text: str) -> str:
        return self._replace_innermost("theorems", _THEOREM_RE, self._render_theorem, text)

    def _render_theorem(self, m: re.Match) -> str:
        kind, title, content = m.group(1), m.group(2), m.group(3)
        heading = kind.capitalize()
        if title:
            heading += f" ({self.normalizer.normalize(title)})"
        css = "article-proof" if kind == "proof" else "article-theorem"
        body = self.render_nested(content.strip())
        return (
            f'<div class="{css}" data-kind="{kind}">'
            f'<div class="article-theorem-title">{heading}</div>{body}</div>'
        )

    # ------------------------------------------------------------------
    # 3. lists
    # ------------------------------------------------------------------
    def parse_lists(self, text: str) -> str:
        return self._replace_innermost("lists", _LIST_RE, self._render_list, text)

    def _render_list(self, m: re.Match) -> str:
        env, body = m.group(1), m.group(2)
        tag = LIST_TAGS[env]
        # Anything before the first \item is list setup, not content
        items = [self._render_item(env, chunk) for chunk in _ITEM_RE.split(body)[1:]]
        return f"<{tag}>{''.join(items)}</{tag}>"

    def _render_item(self, env: str, chunk: str) -> str:
        try:
            label, pos = read_group(chunk, 0, "[", "]")
            label_html = self.normalizer.normalize(label) if label is not None else None
            content = self.normalizer.normalize(chunk[pos:])
        except TexError as exc:
            self.on_error("lists", exc, chunk)
            tag = "dd" if env == "description" else "li"
            return f'<{tag} class="tex-error">{escape_html(chunk.strip())}</{tag}>'

        if env == "description":
            return f"<dt>{label_html or ''}</dt><dd>{content}</dd>"
        if label_html:
            return f'<li><em class="item-label">{label_html}</em> {content}</li>'
        return f"<li>{content}</li>"

    # ------------------------------------------------------------------
    # 4. tables
    # ------------------------------------------------------------------
    def parse_tables(self, text: str) -> str:
        text = _TABLE_RE.sub(
            lambda m: self._guard("tables", m.group(0), lambda: self._render_table(m.group(2))),
            text,
        )
        text = _TABLE_OPEN_RE.sub(lambda m: self._unclosed_table(m.group(0)), text)
        return self._replace_tabulars(text)

    def _unclosed_table(self, raw: str) -> str:
        self.on_error("tables", StageError("tables", "table environment is never closed"), raw)
        return _block(error_html("tables"))

    def _render_table(self, content: str) -> str:
        caption_html = ""
        m = _CAPTION_RE.search(content)
        if m is not None:
            end = find_balanced(content, m.end() - 1)
            caption_html = f"<caption>{self.normalizer.normalize(content[m.end():end])}</caption>"
            content = content[:m.start()] + content[end + 1:]

        content = _RULE_RE.sub("", content)
        tabular = _TABULAR_OPEN_RE.search(content)
        if tabular is None:
            raise StageError("tables", "table float has no tabular body")
        rows, _ = self._render_tabular(content, tabular)
        return f'<table class="article-table">{caption_html}{rows}</table>'

    def _replace_tabulars(self, text: str) -> str:
        out: List[str] = []
        pos = 0
        while True:
            m = _TABULAR_OPEN_RE.search(text, pos)
            if m is None:
                break
            out.append(text[pos:m.start()])
            try:
                rows, end = self._render_tabular(text, m)
            except TexError as exc:
                self.on_error("tables", exc, m.group(0))
                out.append(_block(error_html("tables")))
                pos = m.end()
                continue
            out.append(_block(f'<table class="article-table">{rows}</table>'))
            pos = end
        out.append(text[pos:])
        return "".join(out)

    def _render_tabular(self, text: str, m: re.Match) -> Tuple[str, int]:
        cols_end = find_balanced(text, m.end() - 1)
        end = _TABULAR_END_RE.search(text, cols_end)
        if end is None:
            raise StageError("tables", "tabular environment is never closed")
        body = _RULE_RE.sub("", text[cols_end + 1:end.start()])
        return self._render_rows(body), end.end()

    def _render_rows(self, body: str) -> str:
        rows: List[str] = []
        for row in _ROW_SPLIT_RE.split(body):
            if not row.strip():
                continue
            # The first surviving row is the header
            tag = "td" if rows else "th"
            cells = "".join(self._render_cell(cell.strip(), tag) for cell in _CELL_SPLIT_RE.split(row))
            rows.append(f"<tr>{cells}</tr>")
        return "".join(rows)

    def _render_cell(self, cell: str, tag: str) -> str:
        if cell.startswith(_MULTICOLUMN):
            span, pos = read_group(cell, len(_MULTICOLUMN))
            _, pos = read_group(cell, pos)
            content, _ = read_group(cell, pos)
            if span is not None and span.strip().isdigit() and content is not None:
                return f'<{tag} colspan="{span.strip()}">{self.normalizer.normalize(content)}</{tag}>'
        return f"<{tag}>{self.normalizer.normalize(cell)}</{tag}>"

    # ------------------------------------------------------------------
    # 5. bibliography
    # ------------------------------------------------------------------
    def parse_bibliography(self, text: str) -> str:
        text = _BIB_COMMAND_RE.sub("", text)
        return _BIB_RE.sub(
            lambda m: self._guard(
                "bibliography", m.group(0), lambda: self._render_bibliography(m.group(1))
            ),
            text,
        )

    def _render_bibliography(self, content: str) -> str:
        entries = [self._render_bibitem(entry) for entry in _BIBITEM_RE.split(content)[1:]]
        return f'<div class="bibliography"><h2>References</h2><ol>{"".join(entries)}</ol></div>'

    def _render_bibitem(self, entry: str) -> str:
        try:
            entry = entry.lstrip()
            label, pos = read_group(entry, 0, "[", "]")
            key, pos = read_group(entry, pos)
            content = self.normalizer.normalize(entry[pos:])
            lead = ""
            if label:
                lead = f'<span class="bib-label">[{self.normalizer.normalize(label)}]</span> '
        except TexError as exc:
            self.on_error("bibliography", exc, entry)
            return f'<li class="tex-error">{escape_html(entry.strip())}</li>'
        attrs = f' id="ref-{anchor_id(key)}"' if key else ""
        return f"<li{attrs}>{lead}{content}</li>"

    # ------------------------------------------------------------------
    # 6. quotes and abstracts
    # ------------------------------------------------------------------
    def parse_quotes(self, text: str) -> str:
        text = self._replace_innermost(
            "quotes",
            _QUOTE_RE,
            lambda m: f'<blockquote class="article-{m.group(1)}">'
                      f"{self.render_nested(m.group(2).strip())}</blockquote>",
            text,
        )
        return _ABSTRACT_RE.sub(
            lambda m: self._guard("quotes", m.group(0), lambda: self.render_abstract(m.group(1))),
            text,
        )

    # ------------------------------------------------------------------
    # 7. appendix marker
    # ------------------------------------------------------------------
    def parse_appendix(self, text: str) -> str:
        return _APPENDIX_RE.sub(lambda m: _block('<div class="appendix"></div>'), text)
