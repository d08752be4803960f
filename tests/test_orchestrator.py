"""Tests for the multi-round turn orchestrator."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from pathlib import Path
from typing import Any, Iterable

import httpx
import pytest
from pydantic import SecretStr

from responses_turn.chat.orchestrator import (
    TurnOrchestrator,
    create_orchestrator,
    turn_result_summary,
)
from responses_turn.chat.streaming.cancellation import CancellationToken
from responses_turn.chat.streaming.runtime import BufferedOutputRuntime
from responses_turn.chat.streaming.types import ToolCallStatus, TurnStatus
from responses_turn.chat.tool_manager import ToolManager
from responses_turn.config import ServiceEndpoint, Settings
from responses_turn.errors import (
    ConfigurationError,
    NetworkError,
    ProtocolError,
    ResponseFailedError,
    ToolLoopExceededError,
)
from responses_turn.responses_client import ResponsesClient, ServerSentEvent
from responses_turn.schemas.messages import Message

pytestmark = pytest.mark.anyio


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


OPENAI = ServiceEndpoint("openai", "https://api.openai.com/v1", SecretStr("sk-test"))


class FakeResponsesClient:
    """Replays scripted rounds and records every request body."""

    def __init__(self, rounds: Iterable[Any], service: ServiceEndpoint = OPENAI) -> None:
        self._rounds = list(rounds)
        self.bodies: list[dict[str, Any]] = []
        self.service = service

    async def stream_response(self, payload, *, cancel_token=None):
        self.bodies.append(copy.deepcopy(payload))
        for item in self._rounds.pop(0):
            if isinstance(item, Exception):
                raise item
            if callable(item):
                item()
                continue
            name, data = item
            yield ServerSentEvent(data=json.dumps(data), event=name)

    async def create_response(self, payload, *, cancel_token=None):
        self.bodies.append(copy.deepcopy(payload))
        response = self._rounds.pop(0)
        if callable(response):
            response = response()
        return response


def function_call_item(call_id: str = "call_1", arguments: str = '{"city":"Paris"}') -> dict:
    return {
        "type": "function_call",
        "id": f"fc_{call_id}",
        "call_id": call_id,
        "name": "get_weather",
        "arguments": arguments,
    }


def tool_round(response_id: str | None = "resp_1", call_id: str = "call_1") -> list:
    item = function_call_item(call_id)
    response: dict[str, Any] = {"status": "completed", "output": [item]}
    if response_id is not None:
        response["id"] = response_id
    added = {key: item[key] for key in ("type", "id", "call_id", "name")}
    return [
        ("response.created", {"response": {"id": response_id}}),
        ("response.output_item.added", {"item": added}),
        ("response.function_call_arguments.delta", {"item_id": item["id"], "delta": '{"city":'}),
        ("response.function_call_arguments.delta", {"item_id": item["id"], "delta": '"Paris"}'}),
        (
            "response.function_call_arguments.done",
            {"item_id": item["id"], "arguments": item["arguments"]},
        ),
        ("response.output_item.done", {"item": item}),
        ("response.completed", {"response": response}),
    ]


def text_round(text: str, response_id: str = "resp_2") -> list:
    return [
        ("response.output_text.delta", {"delta": text[: len(text) // 2]}),
        ("response.output_text.delta", {"delta": text[len(text) // 2 :]}),
        ("response.output_text.done", {"text": text}),
        (
            "response.completed",
            {
                "response": {
                    "id": response_id,
                    "status": "completed",
                    "output": [
                        {
                            "type": "message",
                            "content": [{"type": "output_text", "text": text}],
                        }
                    ],
                }
            },
        ),
    ]


def make_orchestrator(
    settings: Settings, client: FakeResponsesClient, tools=None, **kwargs: Any
) -> TurnOrchestrator:
    return TurnOrchestrator(
        settings,
        ToolManager(settings),
        client=client,  # type: ignore[arg-type]
        tool_implementations=tools or {},
        **kwargs,
    )


USER = [Message(role="user", content="What's the weather in Paris?")]


async def test_single_round_without_tools(settings: Settings) -> None:
    client = FakeResponsesClient([text_round("Hello there!", response_id="resp_9")])
    orchestrator = make_orchestrator(settings, client)

    result = await orchestrator.run_turn(USER)

    assert result.status is TurnStatus.COMPLETED
    assert result.text == "Hello there!"
    assert result.response_id == "resp_9"
    assert result.rounds == 1
    assert result.tool_calls == []
    assert len(client.bodies) == 1
    assert client.bodies[0]["model"] == "gpt-5-mini"
    assert client.bodies[0]["input"] == [
        {"role": "user", "content": "What's the weather in Paris?"}
    ]
    assert [tool["name"] for tool in client.bodies[0]["tools"]] == ["open_meteo_forecast"]
    assert result.to_message_dict() == {
        "role": "assistant",
        "content": "Hello there!",
        "response_id": "resp_9",
    }


async def test_tool_round_chains_previous_response_id(settings: Settings) -> None:
    invocations: list[dict] = []

    async def get_weather(arguments: dict) -> dict:
        invocations.append(arguments)
        return {"city": arguments["city"], "forecast": "sunny"}

    client = FakeResponsesClient([tool_round("resp_1"), text_round("It is sunny in Paris.")])
    orchestrator = make_orchestrator(settings, client, {"get_weather": get_weather})

    result = await orchestrator.run_turn(USER)

    assert result.status is TurnStatus.COMPLETED
    assert result.text == "It is sunny in Paris."
    assert result.response_id == "resp_2"
    assert result.rounds == 2
    assert invocations == [{"city": "Paris"}]

    follow_up = client.bodies[1]
    assert follow_up["previous_response_id"] == "resp_1"
    expected_output = {
        "type": "function_call_output",
        "call_id": "call_1",
        "output": json.dumps({"city": "Paris", "forecast": "sunny"}),
    }
    assert follow_up["input"] == [expected_output]
    assert result.input_items == [
        {
            "type": "function_call",
            "call_id": "call_1",
            "name": "get_weather",
            "arguments": '{"city":"Paris"}',
        },
        expected_output,
    ]

    (state,) = result.tool_calls
    assert state.status is ToolCallStatus.COMPLETED
    assert state.history == [
        ToolCallStatus.PENDING,
        ToolCallStatus.ARGUMENTS_STREAMING,
        ToolCallStatus.ARGUMENTS_COMPLETE,
        ToolCallStatus.EXECUTING,
        ToolCallStatus.COMPLETED,
    ]
    assert "**🔧 get_weather**:" in result.reasoning


async def test_response_without_id_resends_full_input(settings: Settings) -> None:
    first = tool_round(response_id=None)
    first.insert(1, ("response.output_text.delta", {"delta": "Let me check."}))
    client = FakeResponsesClient([first, text_round("Sunny.")])
    orchestrator = make_orchestrator(
        settings, client, {"get_weather": lambda arguments: "sunny"}
    )

    result = await orchestrator.run_turn(USER)

    follow_up = client.bodies[1]
    assert "previous_response_id" not in follow_up
    assert follow_up["input"] == [
        {"role": "user", "content": "What's the weather in Paris?"},
        {
            "type": "function_call",
            "call_id": "call_1",
            "name": "get_weather",
            "arguments": '{"city":"Paris"}',
        },
        {"type": "function_call_output", "call_id": "call_1", "output": "sunny"},
    ]
    assert result.text == "Let me check.\n\nSunny."


async def test_tool_failure_is_reported_to_the_model(settings: Settings) -> None:
    def get_weather(arguments: dict) -> dict:
        raise RuntimeError("service down")

    client = FakeResponsesClient([tool_round(), text_round("Sorry, no forecast.")])
    orchestrator = make_orchestrator(settings, client, {"get_weather": get_weather})

    result = await orchestrator.run_turn(USER)

    assert result.status is TurnStatus.COMPLETED
    assert client.bodies[1]["input"] == [
        {
            "type": "function_call_output",
            "call_id": "call_1",
            "output": json.dumps({"error": "service down"}),
        }
    ]
    (state,) = result.tool_calls
    assert state.status is ToolCallStatus.FAILED
    assert "get_weather failed: service down" in result.reasoning


async def test_unknown_tool_gets_error_output(settings: Settings) -> None:
    client = FakeResponsesClient([tool_round(), text_round("I can't check that.")])
    orchestrator = make_orchestrator(settings, client)

    await orchestrator.run_turn(USER)

    output = json.loads(client.bodies[1]["input"][0]["output"])
    assert output == {"error": "No local implementation for 'get_weather'"}


async def test_tool_loop_ceiling(settings: Settings) -> None:
    client = FakeResponsesClient([tool_round("resp_1", "call_1"), tool_round("resp_2", "call_2")])
    orchestrator = make_orchestrator(
        settings, client, {"get_weather": lambda arguments: "sunny"}, tool_hop_limit=1
    )

    result = await orchestrator.run_turn(USER)

    assert result.status is TurnStatus.TOOL_LOOP_EXCEEDED
    assert isinstance(result.error, ToolLoopExceededError)
    assert result.error.limit == 1
    assert len(client.bodies) == 2
    assert "Tool execution stopped after 1 rounds" in result.reasoning
    assert turn_result_summary(result)["status"] == "tool_loop_exceeded"


async def test_cancellation_mid_stream_keeps_partial_output(settings: Settings) -> None:
    token = CancellationToken()
    script = [
        ("response.output_text.delta", {"delta": "Partial"}),
        token.cancel,
        ("response.output_text.delta", {"delta": " ignored"}),
        ("response.completed", {"response": {"id": "resp_1", "output": []}}),
    ]
    client = FakeResponsesClient([script])
    runtime = BufferedOutputRuntime()
    orchestrator = make_orchestrator(settings, client)

    result = await orchestrator.run_turn(USER, runtime=runtime, cancel_token=token)

    assert result.cancelled
    assert result.text == "Partial"
    assert runtime.get_output_text() == "Partial"
    assert len(client.bodies) == 1


async def test_cancelled_before_start_sends_nothing(settings: Settings) -> None:
    token = CancellationToken()
    token.cancel()
    client = FakeResponsesClient([])
    orchestrator = make_orchestrator(settings, client)

    result = await orchestrator.run_turn(USER, cancel_token=token)

    assert result.status is TurnStatus.CANCELLED
    assert result.rounds == 0
    assert client.bodies == []


async def test_stream_without_terminal_event_raises_protocol_error(
    settings: Settings,
) -> None:
    client = FakeResponsesClient([[("response.output_text.delta", {"delta": "Half"})]])
    orchestrator = make_orchestrator(settings, client)

    with pytest.raises(ProtocolError) as excinfo:
        await orchestrator.run_turn(USER)

    assert excinfo.value.partial is not None
    assert excinfo.value.partial.text == "Half"


async def test_failed_response_raises_with_provider_error(settings: Settings) -> None:
    failed = {
        "response": {
            "id": "resp_1",
            "status": "failed",
            "error": {"code": "server_error", "message": "boom"},
            "output": [],
        }
    }
    client = FakeResponsesClient([[("response.failed", failed)]])
    orchestrator = make_orchestrator(settings, client)

    with pytest.raises(ResponseFailedError) as excinfo:
        await orchestrator.run_turn(USER)

    assert excinfo.value.status_code == 502
    assert excinfo.value.detail == {"code": "server_error", "message": "boom"}
    assert excinfo.value.partial.response_id == "resp_1"


async def test_network_error_carries_partial_output(settings: Settings) -> None:
    script = [
        ("response.output_text.delta", {"delta": "Before the drop"}),
        NetworkError(503, "upstream unavailable"),
    ]
    client = FakeResponsesClient([script])
    orchestrator = make_orchestrator(settings, client)

    with pytest.raises(NetworkError) as excinfo:
        await orchestrator.run_turn(USER)

    assert excinfo.value.status_code == 503
    assert excinfo.value.partial.text == "Before the drop"


async def test_missing_api_key_fails_before_any_request(settings: Settings) -> None:
    client = FakeResponsesClient([], service=ServiceEndpoint("openai", OPENAI.base_url, None))
    orchestrator = make_orchestrator(settings, client)

    with pytest.raises(ConfigurationError, match="Add your OpenAI API key"):
        await orchestrator.run_turn(USER)

    assert client.bodies == []


async def test_non_streaming_turn_runs_tools(settings: Settings) -> None:
    rounds = [
        {"id": "resp_1", "status": "completed", "output": [function_call_item()]},
        {
            "id": "resp_2",
            "status": "completed",
            "output": [
                {
                    "type": "message",
                    "content": [{"type": "output_text", "text": "Sunny all week."}],
                }
            ],
        },
    ]
    client = FakeResponsesClient(rounds)
    orchestrator = make_orchestrator(
        settings, client, {"get_weather": lambda arguments: {"forecast": "sunny"}}
    )

    result = await orchestrator.run_turn(USER, stream=False)

    assert result.status is TurnStatus.COMPLETED
    assert result.text == "Sunny all week."
    assert [body["stream"] for body in client.bodies] == [False, False]
    assert client.bodies[1]["previous_response_id"] == "resp_1"


def test_create_orchestrator_wires_logging_and_stores(
    settings: Settings, tmp_path, monkeypatch: pytest.MonkeyPatch
) -> None:
    applied = []
    monkeypatch.setattr(
        "responses_turn.chat.orchestrator.configure_logging", applied.append
    )
    config = tmp_path / "logging_settings.conf"
    config.write_text("stream = debug\n", encoding="utf-8")
    settings = settings.model_copy(update={"logging_settings_path": config})

    orchestrator = create_orchestrator(settings)

    assert isinstance(orchestrator, TurnOrchestrator)
    assert applied[0].stream_level == logging.DEBUG


def test_create_orchestrator_and_tool_manager_share_store_paths(
    settings: Settings, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(
        "responses_turn.chat.orchestrator.configure_logging", lambda _: None
    )
    settings = settings.model_copy(
        update={
            "tool_preferences_path": Path("data/prefs.json"),
            "remote_servers_path": Path("data/servers.json"),
        }
    )

    wired = create_orchestrator(settings)._tool_manager
    direct = ToolManager(settings)

    assert wired._preferences._path == direct._preferences._path
    assert wired._remote_servers._path == direct._remote_servers._path


def completed_payload(text: str, response_id: str = "resp_1") -> dict:
    return {
        "id": response_id,
        "status": "completed",
        "output": [
            {"type": "message", "content": [{"type": "output_text", "text": text}]}
        ],
    }


async def test_cancellation_aborts_non_streaming_request(settings: Settings) -> None:
    finished: list[bool] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        finished.append(True)
        return httpx.Response(200, json=completed_payload("FULL ANSWER"))

    client = ResponsesClient(
        settings, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )
    orchestrator = TurnOrchestrator(settings, ToolManager(settings), client=client)
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    loop.call_later(0.05, token.cancel, "user")

    started = loop.time()
    result = await orchestrator.run_turn(USER, stream=False, cancel_token=token)

    assert result.status is TurnStatus.CANCELLED
    assert result.text == ""
    assert loop.time() - started < 1
    assert finished == []


async def test_response_arriving_after_cancellation_is_not_applied(
    settings: Settings,
) -> None:
    token = CancellationToken()

    def late_response() -> dict:
        token.cancel("user")
        return completed_payload("FULL ANSWER")

    client = FakeResponsesClient([late_response])
    orchestrator = make_orchestrator(settings, client)

    result = await orchestrator.run_turn(USER, stream=False, cancel_token=token)

    assert result.status is TurnStatus.CANCELLED
    assert result.text == ""
    assert result.response is None


async def test_every_call_in_a_round_gets_one_output(settings: Settings) -> None:
    invocations: list[str] = []

    async def get_weather(arguments: dict) -> dict:
        invocations.append(arguments["city"])
        if arguments["city"] == "Paris":
            await asyncio.sleep(0.01)
        return {"city": arguments["city"], "forecast": "sunny"}

    paris = function_call_item("call_paris", '{"city":"Paris"}')
    rome = function_call_item("call_rome", '{"city":"Rome"}')
    first = [
        (
            "response.completed",
            {"response": {"id": "resp_1", "status": "completed", "output": [paris, rome]}},
        )
    ]
    client = FakeResponsesClient([first, text_round("Sunny in both.")])
    orchestrator = make_orchestrator(settings, client, {"get_weather": get_weather})

    result = await orchestrator.run_turn(USER)

    assert result.status is TurnStatus.COMPLETED
    assert sorted(invocations) == ["Paris", "Rome"]
    follow_up = client.bodies[1]["input"]
    assert all(item["type"] == "function_call_output" for item in follow_up)
    assert sorted(item["call_id"] for item in follow_up) == ["call_paris", "call_rome"]
    outputs = {item["call_id"]: json.loads(item["output"]) for item in follow_up}
    assert outputs["call_rome"] == {"city": "Rome", "forecast": "sunny"}
    assert {state.status for state in result.tool_calls} == {ToolCallStatus.COMPLETED}
    assert len(result.tool_calls) == 2
