from __future__ import annotations

import json
from typing import Any


def format_sse(event: str, data: Any) -> str:
    """Encode one Server-Sent Event frame (single-line JSON payload)."""
    payload = json.dumps(data, ensure_ascii=False, default=str)
    return f"event: {event}\ndata: {payload}\n\n"
