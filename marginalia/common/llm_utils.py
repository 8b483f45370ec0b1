"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json
import re

# A plain ``` fence only counts as a wrapper above this many lines
PLAIN_FENCE_MIN_LINES = 3

_LABELED_FENCE_RE = re.compile(
    r"^```(?:markdown|md)(?=[ \t]*(?:\n|$))[ \t]*\n?(.*?)\n?```$", re.DOTALL | re.IGNORECASE
)
_PLAIN_FENCE_RE = re.compile(r"^```[ \t]*\n(.*?)\n?```$", re.DOTALL)
_ANY_FENCE_RE = re.compile(r"^```(?:markdown|md)?[ \t]*\n?.*?```$", re.DOTALL | re.IGNORECASE)
_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def strip_markdown_wrapper(text: str) -> str:
    """Remove a code-fence wrapper the model put around its whole answer.

    A ```markdown (or ```md) fence is always removed. A bare ``` fence is
    removed only when the fenced block spans more than three lines, so that
    a short code snippet the user asked for survives. Fences naming another
    language are left alone.
    """
    if not text:
        return ""

    trimmed = text.strip()

    match = _LABELED_FENCE_RE.match(trimmed)
    if match:
        return match.group(1)

    match = _PLAIN_FENCE_RE.match(trimmed)
    if match and len(trimmed.split("\n")) > PLAIN_FENCE_MIN_LINES:
        return match.group(1)

    return trimmed


def has_markdown_wrapper(text: str) -> bool:
    return bool(_ANY_FENCE_RE.match((text or "").strip()))


def ensure_markdown_wrapper(text: str, lang: str = "markdown") -> str:
    """Wrap text in a fenced block unless it already has one."""
    if has_markdown_wrapper(text):
        return text
    return f"```{lang}\n{text}\n```"


def extract_json_payload(raw: str) -> str | None:
    """Return the JSON-looking part of an LLM answer, if any.

    Prefers the body of a code fence, then the span between the first '{'
    and the last '}'.
    """
    if not raw:
        return None

    match = _JSON_FENCE_RE.search(raw)
    if match:
        return match.group(1).strip()

    start = raw.find("{")
    end = raw.rfind("}")
    if start != -1 and end > start:
        return raw[start:end + 1]
    return None


def parse_llm_json(raw: str) -> dict:
    """Parse JSON from an LLM response, handling code fences and preamble text.

    Tries in order:
    1. Direct json.loads on the raw string
    2. The fenced block or brace-delimited span from extract_json_payload
    3. Return empty dict
    """
    if not raw:
        return {}

    try:
        parsed = json.loads(raw)
        return parsed if isinstance(parsed, dict) else {}
    except json.JSONDecodeError:
        pass

    payload = extract_json_payload(raw)
    if payload:
        try:
            parsed = json.loads(payload)
            return parsed if isinstance(parsed, dict) else {}
        except json.JSONDecodeError:
            pass

    return {}
