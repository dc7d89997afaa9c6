"""Final rendering of protected math spans.

Two output modes:
 - "delimiters": the math source is handed to a client-side renderer
   (KaTeX / MathJax); display spans are wrapped in an equation container and
   inline spans are normalised to \\( ... \\).
 - "mathml": spans are converted server-side with latex2mathml. Any span the
   converter rejects falls back to the delimiter form.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

from latex2mathml.converter import convert as latex2mathml_convert

from core.logger import logger

MATH_OUTPUT_MODES = ("delimiters", "mathml")

# Environments latex2mathml only understands through an aligned block
_ALIGNED_ENVS = ("align", "flalign", "alignat", "eqnarray")
_ENV_RE = re.compile(r"^\\begin\{([A-Za-z]+)(\*?)\}(.*)\\end\{\1\2\}$", re.DOTALL)
_MATH_NOISE_RE = re.compile(r"\\label\{[^}]*\}|\\nonumber\b|\\notag\b")


@dataclass(frozen=True)
class MathSpan:
    """One protected math span."""

    token: str
    display: bool
    source: str  # verbatim text that was replaced by the token
    body: str  # content without delimiters; environments keep begin/end


class MathRenderer:
    """Turn a MathSpan into its final HTML form."""

    def __init__(self, mode: str = "delimiters") -> None:
        if mode not in MATH_OUTPUT_MODES:
            raise ValueError(f"Unknown math output mode: {mode}")
        self.mode = mode

    def render(self, span: MathSpan) -> str:
        """Render span; raises only in mathml mode, from the converter."""
        if self.mode == "mathml":
            return self._render_mathml(span)
        return self.render_delimiters(span)

    @staticmethod
    def render_delimiters(span: MathSpan) -> str:
        if span.display:
            return f'<div class="article-equation">{span.source}</div>'
        return f"\\({span.body}\\)"

    def _render_mathml(self, span: MathSpan) -> str:
        latex = _MATH_NOISE_RE.sub("", self._mathml_source(span)).strip()
        mathml = latex2mathml_convert(latex, display="block" if span.display else "inline")
        if span.display:
            return f'<div class="article-equation">{mathml}</div>'
        return mathml

    @staticmethod
    def _mathml_source(span: MathSpan) -> str:
        m = _ENV_RE.match(span.body.strip())
        if m is None:
            return span.body
        env, inner = m.group(1), m.group(3)
        if env == "alignat":
            # Drop the column-count argument: \begin{alignat}{2}
            inner = re.sub(r"^\s*\{\d+\}", "", inner)
        if env in _ALIGNED_ENVS:
            logger.debug("Rewriting %s as aligned for MathML conversion", env)
            return "\\begin{aligned}" + inner + "\\end{aligned}"
        return inner
