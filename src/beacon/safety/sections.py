"""Delimited, idempotently detectable sections inside operator-owned files.

    # BEGIN beacon /robots.txt
    ...our lines...
    # END beacon /robots.txt

Nothing outside the markers is ever rewritten.
"""

from __future__ import annotations

import re
from typing import Optional

MARKER_TAG = "beacon"

_ANY_BEGIN = re.compile(rf"^\s*(#|//|<!--)\s*BEGIN {MARKER_TAG} ", re.MULTILINE)


def comment_prefix(content_type: str) -> str:
    ct = (content_type or "").lower()
    if "html" in ct or "xml" in ct:
        return "<!--"
    return "#"


def begin_marker(key: str, prefix: str = "#") -> str:
    return _marker("BEGIN", key, prefix)


def end_marker(key: str, prefix: str = "#") -> str:
    return _marker("END", key, prefix)


def _marker(which: str, key: str, prefix: str) -> str:
    if prefix == "<!--":
        return f"<!-- {which} {MARKER_TAG} {key} -->"
    return f"{prefix} {which} {MARKER_TAG} {key}"


def render_section(key: str, body: str, prefix: str = "#") -> str:
    body = body.strip("\n")
    return f"{begin_marker(key, prefix)}\n{body}\n{end_marker(key, prefix)}\n"


def find_section(text: str, key: str, prefix: str = "#") -> Optional[tuple[int, int]]:
    """(start, end) offsets of the section including its trailing newline, or None.

    Raises ValueError when the begin marker has no matching end marker.
    """
    begin = begin_marker(key, prefix)
    end = end_marker(key, prefix)

    start = _line_offset(text, begin)
    if start is None:
        return None
    m = re.compile(rf"^{re.escape(end)}[ \t]*$", re.MULTILINE).search(text, start)
    if m is None:
        raise ValueError(f"unterminated managed section for {key}")
    stop = m.end()
    if text[stop : stop + 1] == "\n":
        stop += 1
    return start, stop


def _line_offset(text: str, line: str) -> Optional[int]:
    m = re.search(rf"^{re.escape(line)}[ \t]*$", text, re.MULTILINE)
    return m.start() if m else None


def has_section(text: str, key: str, prefix: str = "#") -> bool:
    return _line_offset(text, begin_marker(key, prefix)) is not None


def has_any_section(text: str) -> bool:
    return _ANY_BEGIN.search(text) is not None


def upsert_section(text: str, key: str, body: str, prefix: str = "#") -> str:
    section = render_section(key, body, prefix)
    span = find_section(text, key, prefix)
    if span is not None:
        return text[: span[0]] + section + text[span[1] :]
    if not text.strip():
        return section
    return text.rstrip("\n") + "\n\n" + section


def strip_section(text: str, key: str, prefix: str = "#") -> str:
    span = find_section(text, key, prefix)
    if span is None:
        return text
    before, after = text[: span[0]], text[span[1] :]
    # drop the blank separator line upsert_section added
    if before.endswith("\n\n"):
        before = before[:-1]
    return before + after
