"""Tests for tool call collection and execution."""

from __future__ import annotations

import pytest

from responses_turn.chat.streaming.tooling import (
    PendingToolCall,
    collect_function_calls,
    collect_remote_results,
    execute_tool_call,
)
from responses_turn.errors import ToolExecutionError

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def test_collect_skips_answered_and_duplicate_calls() -> None:
    response = {
        "output": [
            {"type": "function_call", "id": "fc_1", "call_id": "call_1", "name": "a", "arguments": "{}"},
            {"type": "function_call", "id": "fc_2", "call_id": "call_2", "name": "b", "arguments": '{"x": 1}'},
            {"type": "function_call_output", "call_id": "call_1", "output": "done"},
            {"type": "function_call", "id": "fc_2", "call_id": "call_2", "name": "b", "arguments": '{"x": 1}'},
            {"type": "web_search_call", "id": "ws_1"},
        ]
    }

    calls = collect_function_calls(response)

    assert [(call.call_id, call.arguments) for call in calls] == [("call_2", {"x": 1})]


def test_collect_reads_message_tool_calls_and_custom_tools() -> None:
    response = {
        "output": [
            {
                "type": "message",
                "tool_calls": [
                    {"id": "call_7", "function": {"name": "lookup", "arguments": '{"q": "x"}'}}
                ],
            },
            {"type": "custom_tool_call", "id": "ct_1", "call_id": "call_8", "name": "shell", "input": "ls"},
        ]
    }

    calls = collect_function_calls(response)

    assert [call.name for call in calls] == ["lookup", "shell"]
    assert calls[0].arguments == {"q": "x"}
    assert calls[1].arguments == {"input": "ls"}
    assert calls[1].to_call_item() == {
        "type": "custom_tool_call",
        "call_id": "call_8",
        "name": "shell",
        "input": "ls",
    }
    assert calls[1].to_output_item("ok") == {
        "type": "custom_tool_call_output",
        "call_id": "call_8",
        "output": "ok",
    }


def test_invalid_arguments_are_recorded_on_the_call() -> None:
    (call,) = collect_function_calls(
        {"output": [{"type": "function_call", "call_id": "c", "name": "a", "arguments": "[1]"}]}
    )

    assert call.arguments is None
    assert call.error == "Tool arguments must be a JSON object"


def test_collect_remote_results() -> None:
    response = {
        "output": [
            {"type": "mcp_call", "id": "m1", "output": "42"},
            {"type": "mcp_call", "id": "m2"},
            {"type": "mcp_call", "id": "m3", "error": "denied"},
        ]
    }

    assert [item["id"] for item in collect_remote_results(response)] == ["m1", "m3"]


async def test_execute_supports_sync_and_async_handlers() -> None:
    async def async_tool(arguments: dict) -> dict:
        return {"echo": arguments["x"]}

    call = PendingToolCall("fc_1", "call_1", "async_tool", '{"x": 1}', {"x": 1})
    assert await execute_tool_call(call, {"async_tool": async_tool}) == '{"echo": 1}'

    call = PendingToolCall("fc_2", "call_2", "sync_tool", "{}", {})
    assert await execute_tool_call(call, {"sync_tool": lambda arguments: "plain"}) == "plain"


async def test_error_shaped_results_raise() -> None:
    call = PendingToolCall("fc_1", "call_1", "tool", "{}", {})

    with pytest.raises(ToolExecutionError) as excinfo:
        await execute_tool_call(call, {"tool": lambda arguments: {"error": "quota exceeded"}})

    assert excinfo.value.to_output() == {"error": "quota exceeded"}


async def test_argument_errors_raise_before_calling_the_handler() -> None:
    called: list[dict] = []
    call = PendingToolCall("fc_1", "call_1", "tool", "{bad", None, error="Invalid JSON arguments")

    with pytest.raises(ToolExecutionError, match="Invalid JSON arguments"):
        await execute_tool_call(call, {"tool": called.append})

    assert called == []
