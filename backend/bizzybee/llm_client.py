"""
OpenAI-compatible chat gateway and tolerant JSON extraction for model output.

Model responses are treated as untrusted text: fenced, truncated or chatty
output is salvaged as far as possible instead of failing the whole batch.
"""
import json
import logging
import re
from typing import Optional

from .config import settings

logger = logging.getLogger(__name__)


def _get_openai_client():
    """Get OpenAI client instance (OPENAI_BASE_URL may point at any compatible gateway)."""
    api_key = settings.openai_api_key
    if not api_key:
        raise ValueError("OPENAI_API_KEY not set. Add to .env or environment.")
    from openai import OpenAI
    return OpenAI(api_key=api_key, base_url=settings.openai_base_url or None)


def call_llm(
    prompt: str,
    system: Optional[str] = None,
    max_tokens: int = 1000,
    force_json: bool = False,
    retry_once: bool = True,
) -> str:
    """Call the chat model and return response text. Retries once on any API error."""
    client = _get_openai_client()
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    kwargs = {"temperature": float(settings.openai_temperature)}
    if force_json:
        kwargs["response_format"] = {"type": "json_object"}

    attempts = 2 if retry_once else 1
    for attempt in range(attempts):
        try:
            response = client.chat.completions.create(
                model=settings.openai_model,
                max_tokens=max_tokens,
                messages=messages,
                **kwargs,
            )
            return (response.choices[0].message.content or "").strip()
        except Exception as e:
            if attempt == attempts - 1:
                raise
            logger.warning(f"LLM call failed ({e}); retrying once")
    return ""


def _strip_fences(text: str) -> str:
    text = re.sub(r"```(?:json)?\s*", "", text or "")
    return text.replace("```", "").strip()


def _balanced_objects(text: str) -> list[str]:
    """Top-level {...} spans, tracking string literals so braces inside values don't count."""
    spans = []
    depth = 0
    start = None
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start is not None:
                spans.append(text[start : i + 1])
                start = None
    return spans


def extract_json_array(text: str) -> Optional[list]:
    """
    Parse a JSON array out of model output.

    strict parse -> fence-stripped parse -> first [...] span -> salvage of each
    complete {...} object (handles truncated output) -> None.
    """
    if not text:
        return None
    for candidate in (text.strip(), _strip_fences(text)):
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(parsed, list):
            return parsed
        if isinstance(parsed, dict):
            # {"results": [...]} style wrappers
            for value in parsed.values():
                if isinstance(value, list):
                    return value

    cleaned = _strip_fences(text)
    match = re.search(r"\[[\s\S]*\]", cleaned)
    if match:
        try:
            parsed = json.loads(match.group())
            if isinstance(parsed, list):
                return parsed
        except json.JSONDecodeError:
            pass

    salvaged = []
    for span in _balanced_objects(cleaned):
        try:
            obj = json.loads(span)
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            salvaged.append(obj)
    if salvaged:
        logger.warning(f"Salvaged {len(salvaged)} objects from malformed JSON array")
        return salvaged
    return None


def extract_json_object(text: str) -> dict:
    """Parse JSON object from LLM response, handling markdown code blocks."""
    cleaned = _strip_fences(text)
    try:
        parsed = json.loads(cleaned)
        return parsed if isinstance(parsed, dict) else {}
    except json.JSONDecodeError:
        match = re.search(r"\{[\s\S]*\}", cleaned)
        if match:
            try:
                parsed = json.loads(match.group())
                return parsed if isinstance(parsed, dict) else {}
            except json.JSONDecodeError:
                pass
        return {}
