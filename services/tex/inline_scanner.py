"""Brace-balanced scanning helpers and the recursive inline command expander."""
from __future__ import annotations

import re
from typing import Mapping, Optional, Tuple

from services.tex.commands import INLINE_COMMANDS
from services.tex.errors import UnbalancedBraceError, trim_context

# Even run of backslashes (``\\`` line breaks) ahead of a delimiter, captured
# so substitutions can re-emit it; an odd run escapes the delimiter
UNESCAPED = r"(?<!\\)((?:\\\\)*)"

_COMMAND_RE = re.compile(r"\\([A-Za-z]+)")
_COMMAND_OPEN_RE = re.compile(r"\s*\{")


def find_balanced(text: str, pos: int, open_ch: str = "{", close_ch: str = "}") -> int:
    """Return the index of the delimiter closing the one opened at ``pos``.

    Backslash escapes (``\\{``, ``\\}``, ``\\\\``) are skipped and never
    counted. Raises UnbalancedBraceError when the group is never closed.
    """
    if pos >= len(text) or text[pos] != open_ch:
        raise ValueError(f"Expected {open_ch!r} at position {pos}")
    depth = 0
    i = pos
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            i += 2
            continue
        if ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise UnbalancedBraceError(
        f"Unbalanced {open_ch!r} at position {pos}",
        position=pos,
        context=trim_context(text[max(0, pos - 20):]),
    )


def read_group(
    text: str, pos: int, open_ch: str = "{", close_ch: str = "}"
) -> Tuple[Optional[str], int]:
    """Consume an optional ``{...}`` (or ``[...]``) group at ``pos``.

    Leading spaces and tabs are skipped. Returns ``(content, pos_after)``,
    or ``(None, pos)`` when no group starts there.
    """
    start = pos
    while pos < len(text) and text[pos] in " \t":
        pos += 1
    if pos >= len(text) or text[pos] != open_ch:
        return None, start
    end = find_balanced(text, pos, open_ch, close_ch)
    return text[pos + 1:end], end + 1


def scan_inline(src: str, commands: Mapping[str, Tuple[str, str]] = INLINE_COMMANDS) -> str:
    """Expand known ``\\name{body}`` commands into their HTML wrappers.

    Bodies may nest further groups and commands to any depth; each body is
    scanned recursively. Unknown commands and two-character escapes are
    copied through unchanged for the later normalizer passes.
    """
    out = []
    i = 0
    n = len(src)
    while i < n:
        ch = src[i]
        if ch != "\\":
            out.append(ch)
            i += 1
            continue

        m = _COMMAND_RE.match(src, i)
        if m is None:
            # \\, \{, \$ ... stay together so the second char is never re-read
            out.append(src[i:i + 2])
            i += 2
            continue

        name = m.group(1)
        opener = _COMMAND_OPEN_RE.match(src, m.end())
        if name not in commands or opener is None:
            out.append(m.group(0))
            i = m.end()
            continue

        brace = opener.end() - 1
        close = find_balanced(src, brace)
        open_html, close_html = commands[name]
        out.append(open_html + scan_inline(src[brace + 1:close], commands) + close_html)
        i = close + 1
    return "".join(out)
