"""
Utility functions for parsing LLM responses.

These helpers handle common quirks like markdown code fences in JSON responses.
"""
from __future__ import annotations

import json
from typing import Any


def strip_markdown_fences(text: str) -> str:
    """Strip markdown code fences (```json ... ```) from text.

    Safe to call on any text: fenced content is unwrapped, anything else is
    returned stripped but otherwise unchanged.

    Examples:
        >>> strip_markdown_fences('```json\\n{"key": "value"}\\n```')
        '{"key": "value"}'
        >>> strip_markdown_fences('{"key": "value"}')
        '{"key": "value"}'
    """
    text = text.strip()
    if text.startswith("```"):
        # Drop the opening fence along with any language tag
        lines = text.split("\n", 1)
        text = lines[1] if len(lines) > 1 else text[3:]
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3].rstrip()
    return text


def parse_json_reply(text: str) -> Any:
    """json.loads on a model reply, tolerating code fences and leading prose."""
    cleaned = strip_markdown_fences(text or "")
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        start = min((i for i in (cleaned.find("{"), cleaned.find("[")) if i >= 0), default=-1)
        if start < 0:
            raise
        return json.loads(cleaned[start:])
