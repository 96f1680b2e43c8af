"""
Recover JSON objects from AI completion text.

Completions are asked for JSON but come back fenced in Markdown, wrapped in
prose, or cut off mid-string. ``recover_json`` runs a fixed chain of parse
attempts and stops at the first that yields an object. Every attempt returns
an ``Ok`` or ``Err``; nothing in the chain raises, so callers can drop just
the affected batch and carry on with the next one.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple, Union

logger = logging.getLogger(__name__)

FENCE_RE = re.compile(r"```(?:json)?\s*", re.I)


@dataclass(frozen=True)
class Ok:
    value: Dict[str, Any]


@dataclass(frozen=True)
class Err:
    reason: str


Result = Union[Ok, Err]


@dataclass(frozen=True)
class RecoveryFailure:
    """Typed, recoverable failure: the batch that produced ``preview`` should be skipped."""
    stage: str
    reason: str
    preview: str

    def __bool__(self) -> bool:
        return False


def _loads_object(text: str) -> Result:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError, ValueError) as e:
        return Err(str(e))
    if not isinstance(value, dict):
        return Err(f"expected a JSON object, got {type(value).__name__}")
    return Ok(value)


def _strip_fences(text: str) -> str:
    return FENCE_RE.sub("", text).strip()


def _slice_braces(text: str) -> str:
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return ""
    return text[start:end + 1]


def _count_unescaped_quotes(text: str) -> int:
    count = 0
    escaped = False
    for ch in text:
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == '"':
            count += 1
    return count


def parse_direct(text: str, array_field: str) -> Result:
    return _loads_object(text.strip())


def parse_without_fences(text: str, array_field: str) -> Result:
    return _loads_object(_strip_fences(text))


def parse_brace_slice(text: str, array_field: str) -> Result:
    sliced = _slice_braces(_strip_fences(text))
    if not sliced:
        return Err("no {...} span")
    return _loads_object(sliced)


def parse_closing_string(text: str, array_field: str) -> Result:
    cleaned = _strip_fences(text)
    sliced = _slice_braces(cleaned) or cleaned
    if _count_unescaped_quotes(sliced) % 2 == 0:
        return Err("quote count is even")
    last_brace = sliced.rfind("}")
    if last_brace <= 0:
        return Err("no closing brace to anchor the quote")
    return _loads_object(sliced[:last_brace] + '"' + sliced[last_brace:])


def parse_closing_brackets(text: str, array_field: str) -> Result:
    """Close whatever a truncated completion left open, dropping a dangling key or comma."""
    cleaned = _strip_fences(text)
    start = cleaned.find("{")
    if start < 0:
        return Err("no opening brace")
    body = cleaned[start:]

    stack = []
    in_string = False
    escaped = False
    for ch in body:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if not stack:
                return Err("unbalanced closing bracket")
            stack.pop()

    if not stack and not in_string:
        return Err("nothing left open")

    if in_string:
        body += '"'
    body = body.rstrip()
    # Trailing comma, or a key whose value never arrived
    body = re.sub(r',\s*$', '', body)
    body = re.sub(r',?\s*"[^"]*"\s*:\s*$', '', body)
    body = re.sub(r',\s*$', '', body)
    return _loads_object(body + "".join(reversed(stack)))


def parse_named_array(text: str, array_field: str) -> Result:
    cleaned = _strip_fences(text)
    match = re.search(r'"' + re.escape(array_field) + r'"\s*:\s*(\[[\s\S]*?\])', cleaned)
    if not match:
        return Err(f"no {array_field} array")
    try:
        items = json.loads(match.group(1))
    except json.JSONDecodeError as e:
        return Err(str(e))
    if not isinstance(items, list):
        return Err(f"{array_field} is not a list")
    return Ok({array_field: items})


RECOVERY_CHAIN: List[Tuple[str, Callable[[str, str], Result]]] = [
    ("direct", parse_direct),
    ("strip_fences", parse_without_fences),
    ("brace_slice", parse_brace_slice),
    ("close_string", parse_closing_string),
    ("close_brackets", parse_closing_brackets),
    ("named_array", parse_named_array),
]


def recover_json(text: str, array_field: str = "tweetAnalyses") -> Union[Dict[str, Any], RecoveryFailure]:
    """
    Parse ``text`` into a dict, trying each recovery stage in order.

    Args:
        text: Raw completion output
        array_field: Array field to extract directly when the envelope is broken

    Returns:
        The parsed object, or a RecoveryFailure (falsy) when every stage failed
    """
    if not isinstance(text, str) or not text.strip():
        return RecoveryFailure(stage="input", reason="empty completion", preview="")

    last_reason = ""
    for stage, attempt in RECOVERY_CHAIN:
        result = attempt(text, array_field)
        if isinstance(result, Ok):
            if stage != "direct":
                logger.info(f"Recovered malformed JSON at stage '{stage}'")
            return result.value
        last_reason = result.reason

    logger.warning(f"Could not recover JSON ({last_reason}); preview: {text[:200]!r}")
    return RecoveryFailure(stage="exhausted", reason=last_reason, preview=text[:500])
