"""End-to-end tests for TexParser."""
from __future__ import annotations

import pytest

from services.tex.errors import FatalParseError
from services.tex.paragraphs import ParagraphAssembler
from services.tex.parser import SECTION_ERROR_HTML, ParseResult, TexParser, split_sections, strip_comments


def test_end_to_end_section(parser: TexParser) -> None:
    source = "\\section{Intro}\n\nSome $x+1=2$ text.\n\n\\begin{itemize}\\item one\\item two\\end{itemize}"
    html = parser.parse(source)
    assert html == (
        '<div class="article-section"><h1>Intro</h1>'
        "<p>Some \\(x+1=2\\) text.</p>"
        "<ul><li>one</li><li>two</li></ul></div>"
    )
    assert parser.errors == []


def test_theorem_keeps_align_verbatim(parser: TexParser) -> None:
    align = "\\begin{align}\na &= \\textbf{b} \\cite{k} \\\\\nc &= d\n\\end{align}"
    source = f"\\begin{{theorem}}[Main]\nLet \\textbf{{x}} hold.\n{align}\n\\end{{theorem}}"
    html = parser.parse(source)
    assert '<div class="article-theorem" data-kind="theorem">' in html
    assert '<div class="article-theorem-title">Theorem (Main)</div>' in html
    assert "<strong>x</strong>" in html
    assert f'<div class="article-equation">{align}</div>' in html


def test_malformed_table_does_not_abort(parser: TexParser) -> None:
    source = "\n\n".join(
        [
            "\\section{A}",
            "\\begin{itemize}\\item x\\end{itemize}",
            "\\begin{table}\\caption{Broken}\\end{table}",
            "\\subsection{B}",
        ]
    )
    html = parser.parse(source)
    assert "<h1>A</h1>" in html
    assert "<h2>B</h2>" in html
    assert "<ul><li>x</li></ul>" in html
    assert 'class="tex-error"' in html
    assert [error.stage for error in parser.errors] == ["tables"]


def test_unbalanced_brace_is_isolated(parser: TexParser) -> None:
    source = "\\section{S}\n\n\\textbf{unterminated\n\nAfter text survives.\n\n\\section{T}\n\nMore."
    html = parser.parse(source)
    assert '<p class="tex-error">\\textbf{unterminated</p>' in html
    assert "<p>After text survives.</p>" in html
    assert "<h1>T</h1><p>More.</p>" in html
    assert len(parser.errors) == 1
    assert parser.errors[0].stage == "paragraphs"


def test_sections_are_wrapped_separately(parser: TexParser) -> None:
    html = parser.parse("Preface.\n\\section{One}\nA.\n\\section*{Two}\nB.")
    assert html == (
        '<div class="article-section"><p>Preface.</p></div>'
        '<div class="article-section"><h1>One</h1><p>A.</p></div>'
        '<div class="article-section"><h1>Two</h1><p>B.</p></div>'
    )


def test_document_envelope(parser: TexParser) -> None:
    source = "\n".join(
        [
            "\\documentclass{article}",
            "\\usepackage{amsmath}",
            "\\title{Main Title \\\\ A Subtitle}",
            "\\author{Ada Lovelace}",
            "\\begin{document}",
            "\\maketitle",
            "\\begin{abstract}",
            "We study $x$.",
            "\\end{abstract}",
            "\\section{Intro}",
            "Hello.",
            "\\end{document}",
        ]
    )
    html = parser.parse(source)
    assert html == (
        '<div class="article-title">Main Title</div>'
        '<div class="article-subtitle">A Subtitle</div>'
        '<div class="article-author">Ada Lovelace</div>'
        '<div class="article-abstract"><strong>Abstract:</strong><p>We study \\(x\\).</p></div>'
        '<div class="article-section"><h1>Intro</h1><p>Hello.</p></div>'
    )


def test_comments_are_removed(parser: TexParser) -> None:
    html = parser.parse("Visible % hidden\n% whole line\nmore \\% kept")
    assert html == '<div class="article-section"><p>Visible more &#37; kept</p></div>'


def test_state_is_reset_between_parses(parser: TexParser) -> None:
    source = "Text $a$ and\\footnote{note}."
    first = parser.parse(source)
    second = parser.parse(source)
    assert first == second
    assert 'id="fnref-1"' in second

    parser.parse("\\textbf{broken")
    assert len(parser.errors) == 1
    parser.parse("fine")
    assert parser.errors == []


def test_parse_with_diagnostics(parser: TexParser) -> None:
    result = parser.parse_with_diagnostics("\\textbf{" + "x" * 300)
    assert isinstance(result, ParseResult)
    assert not result.ok
    assert result.errors[0].context.endswith("...")
    assert len(result.errors[0].context) == 103


def test_empty_document(parser: TexParser) -> None:
    assert parser.parse("") == ""
    assert parser.parse("   \n\n  ") == ""


def test_non_string_is_fatal(parser: TexParser) -> None:
    with pytest.raises(FatalParseError):
        parser.parse(None)  # type: ignore[arg-type]


def test_failing_section_is_isolated(parser: TexParser, monkeypatch: pytest.MonkeyPatch) -> None:
    original = ParagraphAssembler.assemble

    def assemble(self: ParagraphAssembler, text: str) -> str:
        if "BAD" in text:
            raise RuntimeError("assembler exploded")
        return original(self, text)

    monkeypatch.setattr(ParagraphAssembler, "assemble", assemble)
    html = parser.parse("\\section{Good}\nok\n\\section{Other}\nBAD")
    assert html == (
        '<div class="article-section"><h1>Good</h1><p>ok</p></div>' + SECTION_ERROR_HTML
    )
    assert [error.stage for error in parser.errors] == ["section"]


def test_mathml_output() -> None:
    html = TexParser(math_output="mathml").parse("Area $x^2$.")
    assert "<math" in html
    assert "\\(" not in html


def test_escaped_dollar_is_text(parser: TexParser) -> None:
    html = parser.parse("Costs \\$5 or $5$, and $y$.")
    assert html == (
        '<div class="article-section"><p>Costs &#36;5 or $5$, and \\(y\\).</p></div>'
    )


def test_strip_comments_keeps_escaped_percent() -> None:
    assert strip_comments("50\\% done % note") == "50\\% done "


def test_split_sections() -> None:
    assert split_sections("intro\\section{A}a\\section[s]{B}b") == [
        "intro",
        "\\section{A}a",
        "\\section[s]{B}b",
    ]


def test_percent_after_line_break_starts_comment() -> None:
    assert strip_comments("a\\\\% secret note\nb") == "a\\\\\nb"


def test_math_after_line_break(parser: TexParser) -> None:
    html = parser.parse("line\\\\$x$ end")
    assert html == '<div class="article-section"><p>line<br>\\(x\\) end</p></div>'


def test_display_math_closes_paragraph(parser: TexParser) -> None:
    html = parser.parse("Before $$x$$ after.")
    assert html == (
        '<div class="article-section"><p>Before</p>'
        '<div class="article-equation">$$x$$</div><p>after.</p></div>'
    )
