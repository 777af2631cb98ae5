from __future__ import annotations

import json
import re
from typing import Any

from context_search.constants import PROMPT_INJECTION_PATTERNS
from context_search.errors import ModelOutputParseError

_INJECTION_RE = re.compile("|".join(PROMPT_INJECTION_PATTERNS), re.IGNORECASE)
_CODE_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_DECODER = json.JSONDecoder()


def sanitize_prompt_text(text: str | None) -> str:
    """Strip known prompt-injection phrases from user or post derived text."""
    if not text:
        return ""
    return _INJECTION_RE.sub("", text).strip()


def build_messages(
    system: str | None, user: str
) -> list[dict[str, str]]:
    messages: list[dict[str, str]] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": user})
    return messages


def build_payload(
    model: str,
    messages: list[dict[str, str]],
    temperature: float,
    json_mode: bool = True,
    max_tokens: int | None = None,
) -> dict[str, object]:
    payload: dict[str, object] = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
    }
    if isinstance(max_tokens, int) and max_tokens > 0:
        payload["max_tokens"] = max_tokens
    if json_mode:
        payload["response_format"] = {"type": "json_object"}
    return payload


def extract_json_value(text: str) -> Any:
    """Return the first well-formed JSON object or array in a model response.

    Tolerates surrounding prose and markdown code fences.
    """
    if not text:
        raise ModelOutputParseError("empty model response")

    cleaned = _CODE_FENCE_RE.sub("", text).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    for idx, ch in enumerate(cleaned):
        if ch not in "{[":
            continue
        try:
            value, _ = _DECODER.raw_decode(cleaned, idx)
        except json.JSONDecodeError:
            continue
        return value

    raise ModelOutputParseError(f"no JSON value in model response: {text[:120]!r}")
