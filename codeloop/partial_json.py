"""Best-effort parsing of incomplete JSON produced mid-stream."""

from typing import Any

import json_repair


def parse_partial_json(text: str) -> dict[str, Any]:
    """Parse possibly-incomplete JSON object text.

    Truncated strings, brackets and separators are repaired by ``json_repair``.
    Never raises; returns ``{}`` when nothing usable is found or the value is
    not an object.
    """
    if not text or not text.strip():
        return {}
    value = json_repair.loads(text)
    return value if isinstance(value, dict) else {}
