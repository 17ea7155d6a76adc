from __future__ import annotations

import json
import logging
from typing import Any, Callable, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


class JSONExtractionError(ValueError):
    pass


def _strip_code_fence(text: str) -> str:
    s = text.strip()
    if s.startswith("```"):
        # ```json\n...\n```
        first_nl = s.find("\n")
        s = s[first_nl + 1 :] if first_nl != -1 else s[3:]
        if s.rstrip().endswith("```"):
            s = s.rstrip()[:-3]
    return s.strip()


def _extract_span(text: str, open_ch: str, close_ch: str, what: str) -> Any:
    start = text.find(open_ch)
    end = text.rfind(close_ch)
    if start == -1 or end == -1 or end <= start:
        raise JSONExtractionError(f"No JSON {what} found in response.")

    candidate = text[start : end + 1].strip()
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        raise JSONExtractionError(f"Invalid JSON: {e}") from e
    except RecursionError as e:
        raise JSONExtractionError("JSON nested too deeply.") from e


def extract_first_json_object(text: str) -> dict:
    """Extract and parse the first JSON object from an LLM response."""
    obj = _extract_span(text or "", "{", "}", "object")
    if not isinstance(obj, dict):
        raise JSONExtractionError(f"Expected JSON object, got {type(obj).__name__}")
    return obj


def extract_first_json_array(text: str) -> list:
    """Extract and parse the first JSON array from an LLM response.

    Models asked for an array frequently wrap it in an object instead
    ({"strategies": [...]}), so a single-list-valued object is unwrapped.
    """
    s = _strip_code_fence(text or "")
    if not s:
        raise JSONExtractionError("Empty response.")

    if s.lstrip().startswith("{"):
        obj = extract_first_json_object(s)
        lists = [v for v in obj.values() if isinstance(v, list)]
        if len(lists) == 1:
            return lists[0]
        raise JSONExtractionError("Expected JSON array, got object.")

    arr = _extract_span(s, "[", "]", "array")
    if not isinstance(arr, list):
        raise JSONExtractionError(f"Expected JSON array, got {type(arr).__name__}")
    return arr


def decode_or_default(
    text: str,
    decode: Callable[[str], T],
    default: Callable[[], T],
    *,
    site: str,
) -> T:
    """Run `decode` on model output, collapsing any extraction error to `default()`.

    `decode` signals malformed output by raising JSONExtractionError (or a
    ValueError/TypeError/KeyError from field coercion). Anything else is a bug
    and propagates.
    """
    if not (text or "").strip():
        logger.warning("[%s] empty model response, using fallback", site)
        return default()
    try:
        return decode(text)
    except (JSONExtractionError, ValueError, TypeError, KeyError) as e:
        logger.warning("[%s] unparsable model response (%s), using fallback", site, e)
        return default()


def as_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value).strip()


def as_str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    if not isinstance(value, list):
        return []
    out: list[str] = []
    for item in value:
        s = as_str(item)
        if s:
            out.append(s)
    return out
