"""Utilities for pulling text and reasoning out of Responses payloads."""

from __future__ import annotations

import json
from typing import Any, Iterable, Mapping

_REASONING_PATHS: tuple[tuple[str, ...], ...] = (
    ("reasoning",),
    ("reasoning", "output"),
    ("reasoning", "content"),
    ("reasoning_content",),
    ("reasoning_content", "output"),
    ("text",),
    ("delta", "reasoning_content"),
    ("delta", "reasoning"),
    ("delta", "content"),
    ("delta", "text"),
    ("delta",),
)

_QUERY_LIST_KEYS = ("queries", "searches")


def safe_truncate(value: Any, limit: int = 800) -> str:
    """Render *value* as text no longer than *limit* characters plus an ellipsis."""

    if not isinstance(value, str):
        try:
            value = json.dumps(value, indent=2, ensure_ascii=False)
        except (TypeError, ValueError):
            value = str(value)
    return f"{value[:limit]}…" if len(value) > limit else value


def format_tool_args(args: Any, *, inline: bool = False) -> str:
    if not args:
        return ""
    parsed: Any
    if isinstance(args, str):
        try:
            parsed = json.loads(args)
        except json.JSONDecodeError:
            if inline:
                return f" {safe_truncate(args, 120)}"
            return f"\n    {safe_truncate(args, 400)}"
    else:
        parsed = args
    if not isinstance(parsed, Mapping) or not parsed:
        return ""

    if inline:
        if len(parsed) == 1:
            (only,) = parsed.values()
            if isinstance(only, str):
                return f" → {safe_truncate(only, 100)}"
        return f" → {len(parsed)} param{'s' if len(parsed) > 1 else ''}"

    formatted = json.dumps(parsed, indent=2, ensure_ascii=False)
    indented = "\n".join(f"    {line}" for line in formatted.splitlines())
    if len(formatted) > 400:
        return f"\n{indented[:400]}…"
    return f"\n{indented}"


def extract_queries(args: Any) -> list[str]:
    """Return the distinct search queries named in tool arguments or an action."""

    parsed: Any = args
    if isinstance(args, str):
        try:
            parsed = json.loads(args)
        except json.JSONDecodeError:
            return []
    if not isinstance(parsed, Mapping):
        return []

    candidates: list[str] = []
    for key in ("query", "q"):
        value = parsed.get(key)
        if isinstance(value, str):
            candidates.append(value)
    for key in _QUERY_LIST_KEYS:
        values = parsed.get(key)
        if isinstance(values, list):
            candidates.extend(item for item in values if isinstance(item, str))

    queries: list[str] = []
    for candidate in candidates:
        trimmed = candidate.strip()
        if trimmed and trimmed not in queries:
            queries.append(trimmed)
    return queries


def extract_delta_text(payload: Mapping[str, Any]) -> str:
    delta = payload.get("delta")
    if isinstance(delta, str):
        return delta
    if isinstance(delta, Mapping) and isinstance(delta.get("text"), str):
        return delta["text"]
    if isinstance(delta, list):
        return "".join(item for item in delta if isinstance(item, str))
    text = payload.get("text")
    if isinstance(text, str):
        return text
    return ""


def _pluck_text(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(_pluck_text(item) for item in value)
    if isinstance(value, Mapping):
        for key in ("content", "text", "output", "reasoning"):
            if key in value:
                text = _pluck_text(value[key])
                if text:
                    return text
    return ""


def _nested(source: Mapping[str, Any], path: Iterable[str]) -> Any:
    value: Any = source
    for key in path:
        if not isinstance(value, Mapping):
            return None
        value = value.get(key)
    return value


def extract_reasoning_text(payload: Mapping[str, Any]) -> str:
    """Find reasoning text in the varied shapes providers use for it."""

    for path in _REASONING_PATHS:
        text = _pluck_text(_nested(payload, path))
        if text.strip():
            return text
    return ""


def response_output_text(response: Mapping[str, Any]) -> str:
    """Return the assistant text of a complete (non-streamed) response."""

    output_text = response.get("output_text")
    if isinstance(output_text, str) and output_text:
        return output_text
    if isinstance(output_text, list):
        joined = "".join(item for item in output_text if isinstance(item, str))
        if joined:
            return joined

    fragments: list[str] = []
    for item in response.get("output") or []:
        if not isinstance(item, Mapping) or item.get("type") != "message":
            continue
        for part in item.get("content") or []:
            if (
                isinstance(part, Mapping)
                and part.get("type") == "output_text"
                and isinstance(part.get("text"), str)
            ):
                fragments.append(part["text"])
    return "".join(fragments)


def response_reasoning_text(response: Mapping[str, Any]) -> str:
    """Return the reasoning summary text of a complete response."""

    segments: list[str] = []
    for item in response.get("output") or []:
        if not isinstance(item, Mapping) or item.get("type") != "reasoning":
            continue
        for key in ("summary", "content"):
            text = _pluck_text(item.get(key))
            if text.strip():
                segments.append(text.strip())
                break
    if segments:
        return "\n\n".join(segments)
    return extract_reasoning_text(response)


__all__ = [
    "extract_delta_text",
    "extract_queries",
    "extract_reasoning_text",
    "format_tool_args",
    "response_output_text",
    "response_reasoning_text",
    "safe_truncate",
]
