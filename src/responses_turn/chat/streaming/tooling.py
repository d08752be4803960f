"""Utilities for finding and executing tool calls in a finished response."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from ...errors import ToolExecutionError
from .types import ToolImplementations

logger = logging.getLogger(__name__)

_CALL_ITEM_TYPES = frozenset({"function_call", "tool_call", "custom_tool_call"})
_OUTPUT_ITEM_TYPES = frozenset(
    {"function_call_output", "tool_result", "custom_tool_call_output"}
)


@dataclass
class PendingToolCall:
    """A call the model is waiting on, normalized across payload shapes."""

    item_id: str
    call_id: str
    name: str
    raw_arguments: str
    arguments: dict[str, Any] | None = None
    error: str | None = None
    item_type: str = "function_call"

    def to_call_item(self) -> dict[str, Any]:
        if self.item_type == "custom_tool_call":
            return {
                "type": "custom_tool_call",
                "call_id": self.call_id,
                "name": self.name,
                "input": self.raw_arguments,
            }
        return {
            "type": "function_call",
            "call_id": self.call_id,
            "name": self.name,
            "arguments": self.raw_arguments,
        }

    def to_output_item(self, output: str) -> dict[str, Any]:
        output_type = (
            "custom_tool_call_output"
            if self.item_type == "custom_tool_call"
            else "function_call_output"
        )
        return {"type": output_type, "call_id": self.call_id, "output": output}


def _parse_arguments(raw: Any) -> tuple[str, dict[str, Any] | None, str | None]:
    if isinstance(raw, Mapping):
        return json.dumps(raw), dict(raw), None
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return "{}", {}, None
    if not isinstance(raw, str):
        return str(raw), None, "Tool arguments must be a JSON object"
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        return raw, None, f"Invalid JSON arguments: {exc.msg}"
    if not isinstance(parsed, dict):
        return raw, None, "Tool arguments must be a JSON object"
    return raw, parsed, None


def _from_output_item(item: Mapping[str, Any]) -> PendingToolCall | None:
    item_type = str(item.get("type") or "")
    name = item.get("name")
    if not isinstance(name, str) or not name:
        function = item.get("function")
        name = function.get("name") if isinstance(function, Mapping) else None
    if not name:
        logger.debug("Skipping tool call without a name: %s", item.get("id"))
        return None

    if item_type == "custom_tool_call":
        raw_input = item.get("input")
        raw = raw_input if isinstance(raw_input, str) else ""
        arguments: dict[str, Any] | None = {"input": raw}
        error = None
    else:
        raw_args = item.get("arguments")
        if raw_args is None and isinstance(item.get("function"), Mapping):
            raw_args = item["function"].get("arguments")
        raw, arguments, error = _parse_arguments(raw_args)

    item_id = str(item.get("id") or item.get("call_id") or "")
    call_id = str(item.get("call_id") or item.get("id") or "")
    return PendingToolCall(
        item_id=item_id,
        call_id=call_id,
        name=name,
        raw_arguments=raw,
        arguments=arguments,
        error=error,
        item_type="custom_tool_call" if item_type == "custom_tool_call" else "function_call",
    )


def collect_function_calls(response: Mapping[str, Any]) -> list[PendingToolCall]:
    """Return tool calls in *response* that do not yet have a result."""

    output = response.get("output")
    if not isinstance(output, list):
        return []

    answered: set[str] = set()
    for item in output:
        if isinstance(item, Mapping) and item.get("type") in _OUTPUT_ITEM_TYPES:
            call_id = item.get("call_id")
            if isinstance(call_id, str):
                answered.add(call_id)

    calls: list[PendingToolCall] = []
    seen: set[str] = set()
    for item in output:
        if not isinstance(item, Mapping):
            continue
        candidates: list[Mapping[str, Any]] = []
        if item.get("type") in _CALL_ITEM_TYPES:
            candidates.append(item)
        elif item.get("type") == "message" and isinstance(item.get("tool_calls"), list):
            candidates.extend(
                call for call in item["tool_calls"] if isinstance(call, Mapping)
            )
        for candidate in candidates:
            call = _from_output_item(candidate)
            if call is None or call.call_id in answered or call.call_id in seen:
                continue
            seen.add(call.call_id)
            calls.append(call)
    return calls


def collect_remote_results(response: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Return remote tool calls the provider already executed."""

    results: list[dict[str, Any]] = []
    for item in response.get("output") or []:
        if not isinstance(item, Mapping) or item.get("type") != "mcp_call":
            continue
        if item.get("output") is not None or item.get("error") is not None:
            results.append(dict(item))
    return results


def format_tool_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(result)


async def execute_tool_call(
    call: PendingToolCall, implementations: ToolImplementations
) -> str:
    """Run *call* against its local implementation and return the output text.

    Raises ``ToolExecutionError`` for every failure so the caller can turn it
    into an error result for the model.
    """

    if call.error is not None:
        raise ToolExecutionError(call.name, call.error)
    handler = implementations.get(call.name)
    if handler is None:
        raise ToolExecutionError(call.name, f"No local implementation for '{call.name}'")

    try:
        result = handler(call.arguments or {})
        if inspect.isawaitable(result):
            result = await result
    except Exception as exc:
        logger.exception("Tool '%s' raised an exception", call.name)
        raise ToolExecutionError(call.name, exc) from exc

    if isinstance(result, Mapping) and result.get("error"):
        raise ToolExecutionError(call.name, result["error"])
    return format_tool_result(result)


__all__ = [
    "PendingToolCall",
    "collect_function_calls",
    "collect_remote_results",
    "execute_tool_call",
    "format_tool_result",
]
