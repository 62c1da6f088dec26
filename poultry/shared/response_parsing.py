"""Recover the classifier's JSON object from its free-form reply."""

from __future__ import annotations

import json
import re
from typing import Any, Dict

from poultry.shared.errors import ResponseFormatError


# Opening/closing code fence, with an optional language tag (```json, ```JSON, ```).
FENCE_RE = re.compile(r"`{3,}[ \t]*[A-Za-z0-9_+-]*")


def strip_fences(text: str) -> str:
    return FENCE_RE.sub("", str(text or "")).strip()


def extract_json_object(text: str) -> Dict[str, Any]:
    """Strip markdown fences and parse the remainder as a JSON object.

    No repair is attempted: anything that is not a syntactically valid JSON
    object after fence removal raises `ResponseFormatError`.
    """

    cleaned = strip_fences(text)
    if not cleaned:
        raise ResponseFormatError("Classifier reply was empty")
    try:
        raw = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ResponseFormatError(f"Classifier reply is not valid JSON: {exc.msg}") from exc

    if not isinstance(raw, dict):
        raise ResponseFormatError("Classifier reply must be a JSON object")
    return raw
