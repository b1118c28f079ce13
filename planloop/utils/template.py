from __future__ import annotations

import re
from typing import Any


_VAR_RE = re.compile(r"\{\{\s*(?P<key>[a-zA-Z0-9_]+)\s*\}\}")


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Render `{{var}}` placeholders; unknown keys render as empty strings."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group("key")
        value = variables.get(key, "")
        return str(value)

    return _VAR_RE.sub(_replace, template)


def truncate_line(value: str, max_len: int) -> str:
    """First line of `value`, cut to `max_len` chars with a trailing ellipsis."""
    s = (value or "").strip()
    if not s:
        return ""
    first = s.split("\n", 1)[0].strip()
    if len(first) <= max_len:
        return first
    return first[:max_len] + "..."
