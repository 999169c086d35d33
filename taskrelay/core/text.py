"""Tolerant extraction of JSON objects from free-form model output."""
from __future__ import annotations

import json
import re
from typing import Any, Dict, Optional

# Greedy: first "{" to last "}" so nested objects survive.
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Return the JSON object embedded in ``text``, or ``None``."""
    if not text:
        return None
    match = _JSON_OBJECT.search(text)
    if not match:
        return None
    try:
        value = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None
