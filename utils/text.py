"""Deterministic text helpers shared by the matcher and the renderer."""
from __future__ import annotations

import re
from typing import Mapping, Optional

ELLIPSIS = "…"

_PLACEHOLDER = re.compile(r"\{\{\s*([\w:.-]+)\s*\}\}")


def truncate(value: Optional[str], max_len: int) -> Optional[str]:
    """Cut ``value`` to ``max_len`` characters, marking the cut with an ellipsis."""
    if value is None or len(value) <= max_len:
        return value
    if max_len <= 1:
        return value[:max_len]
    return value[: max_len - 1] + ELLIPSIS


def fold(value: str, case_sensitive: bool) -> str:
    value = value.strip()
    return value if case_sensitive else value.casefold()


def interpolate(template: str, variables: Mapping[str, str]) -> str:
    """Fill ``{{name}}`` placeholders; unknown names are left as written."""
    if not variables or "{{" not in template:
        return template

    def replacer(match):
        name = match.group(1)
        return variables.get(name, match.group(0))

    return _PLACEHOLDER.sub(replacer, template)
