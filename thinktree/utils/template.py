from __future__ import annotations

import re
from typing import Any


_VAR_RE = re.compile(r"\{\{\s*(?P<key>[a-zA-Z0-9_]+)\s*\}\}")


def render_template(template: str, variables: dict[str, Any]) -> str:
    """Render a persona prompt template using {{var}} placeholders.

    Unknown placeholders render as empty strings so a persona can omit
    optional blocks (context, blueprint) without conditionals in TOML.
    """

    def _replace(match: re.Match[str]) -> str:
        key = match.group("key")
        value = variables.get(key, "")
        if value is None:
            return ""
        return str(value)

    return _VAR_RE.sub(_replace, template).strip() + "\n"


def template_keys(template: str) -> set[str]:
    return {m.group("key") for m in _VAR_RE.finditer(template)}
