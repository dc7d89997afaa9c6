"""Utilities for emitting HTML from parsed LaTeX."""
from __future__ import annotations

import html
import re

_ID_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_:.\-]+")


def escape_html(text: str) -> str:
    """
    Escape text for an HTML text node.

    Args:
        text: Raw text (e.g. an unparseable LaTeX fragment)

    Returns:
        Text with &, < and > escaped
    """
    if not text:
        return text
    return html.escape(text, quote=False)


def escape_attr(text: str) -> str:
    """Escape text for a double-quoted HTML attribute value."""
    if not text:
        return text
    return html.escape(text, quote=True)


def anchor_id(key: str) -> str:
    """
    Turn a LaTeX label or citation key into a usable element id.

    Runs of characters outside [A-Za-z0-9_:.-] collapse to a single '-',
    so ``\\label{eq:main result}`` and ``\\ref{eq:main result}`` agree.
    """
    key = key.strip()
    return _ID_UNSAFE_RE.sub("-", key) or "anchor"
