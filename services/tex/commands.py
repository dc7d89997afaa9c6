"""Static command and environment tables shared by the parser stages.

Everything here is read-only after import; parser instances never mutate it.
"""
from __future__ import annotations

from types import MappingProxyType

FONT_SIZES = (
    "tiny", "scriptsize", "footnotesize", "small", "normalsize",
    "large", "Large", "LARGE", "huge", "Huge",
)

# name -> (opening HTML, closing HTML)
_INLINE_COMMANDS = {
    "textbf": ("<strong>", "</strong>"),
    "emph": ("<em>", "</em>"),
    "textit": ("<em>", "</em>"),
    "textsl": ("<em>", "</em>"),
    "texttt": ("<code>", "</code>"),
    "underline": ("<u>", "</u>"),
    "uline": ("<u>", "</u>"),
    "textsc": ('<span class="smallcaps">', "</span>"),
    "textsf": ('<span class="sans">', "</span>"),
    "textrm": ("<span>", "</span>"),
    "mbox": ("<span>", "</span>"),
    "textsuperscript": ("<sup>", "</sup>"),
    "textsubscript": ("<sub>", "</sub>"),
}
_INLINE_COMMANDS.update(
    (size, (f'<span class="tex-{size}">', "</span>")) for size in FONT_SIZES
)
INLINE_COMMANDS = MappingProxyType(_INLINE_COMMANDS)

HEADING_LEVELS = (
    ("section", "h1"),
    ("subsection", "h2"),
    ("subsubsection", "h3"),
    ("paragraph", "h4"),
)

THEOREM_KINDS = (
    "theorem", "definition", "lemma", "corollary", "proposition", "proof",
    "remark", "example", "claim", "fact", "observation", "note",
)

# Starred variants are accepted for every name except displaymath
DISPLAY_MATH_ENVS = (
    "equation", "align", "gather", "eqnarray", "displaymath",
    "multline", "flalign", "alignat",
)

LIST_TAGS = MappingProxyType({
    "itemize": "ul",
    "enumerate": "ol",
    "description": "dl",
})

QUOTE_ENVS = ("quote", "quotation", "verse")

RULE_COMMANDS = ("hline", "toprule", "midrule", "bottomrule", "centering")

# Commands whose arguments are layout or preamble data, not content
DROPPED_COMMANDS = frozenset({
    "vspace", "hspace", "includegraphics", "input", "include", "usepackage",
    "documentclass", "setlength", "setcounter", "addtocounter", "pagestyle",
    "thispagestyle", "bibliography", "bibliographystyle", "color", "cline",
    "cmidrule", "newcommand", "renewcommand", "graphicspath", "date",
})

# Reserved-character escapes, resolved as the very last inline step
SPECIAL_ESCAPES = MappingProxyType({
    "#": "&#35;",
    "$": "&#36;",
    "%": "&#37;",
    "&": "&amp;",
    "_": "&#95;",
    "{": "&#123;",
    "}": "&#125;",
})

SYMBOL_COMMANDS = MappingProxyType({
    "ldots": "…",
    "dots": "…",
    "LaTeX": "LaTeX",
    "TeX": "TeX",
    "textbackslash": "&#92;",
    "newline": "<br>",
    "newblock": " ",
    "par": " ",
})

ACCENTS = MappingProxyType({
    "'": "\u0301",
    "`": "\u0300",
    "^": "\u0302",
    '"': "\u0308",
    "~": "\u0303",
    "=": "\u0304",
    ".": "\u0307",
})
