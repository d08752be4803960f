"""Build Responses API request bodies and headers."""

from __future__ import annotations

import re
from typing import Any, Iterable, Optional, Sequence

from ..config import ServiceEndpoint
from ..errors import ConfigurationError
from ..schemas.tools import SERVER_EXECUTED_TOOL_TYPES
from .messages import ImageResolver, InputItem, serialize_messages

DEFAULT_VERBOSITY = "medium"
DEFAULT_REASONING_EFFORT = "low"

DEFAULT_INCLUDE = (
    "code_interpreter_call.outputs",
    "web_search_call.action.sources",
)

# o1, o3-mini, o4-mini, ..., the gpt-5 family, and "*fast-reasoning" variants
_REASONING_MODEL_PATTERN = re.compile(
    r"^(?:o\d+(?:$|[-.])|gpt-5(?:$|[-.])|.*fast-reasoning)",
    re.IGNORECASE,
)


def supports_reasoning(model: str | None) -> bool:
    if not model:
        return False
    name = model.strip().rsplit("/", 1)[-1]
    return bool(_REASONING_MODEL_PATTERN.match(name))


def has_server_executed_tool(tools: Iterable[dict[str, Any]] | None) -> bool:
    return any(
        isinstance(tool, dict) and tool.get("type") in SERVER_EXECUTED_TOOL_TYPES
        for tool in tools or ()
    )


def build_request_body(
    messages: Sequence[InputItem],
    model: str,
    *,
    stream: bool = True,
    reasoning_effort: str | None = None,
    tools: Sequence[dict[str, Any]] | None = None,
    previous_response_id: str | None = None,
    service: str = "openai",
    instructions: str | None = None,
    verbosity: str | None = None,
    resolver: Optional[ImageResolver] = None,
) -> dict[str, Any]:
    """Return the JSON body for ``POST /responses``.

    The function is pure: *messages* and *tools* are copied, never mutated.
    xAI gets neither ``include`` nor, next to server-executed tools, ``text``.
    """

    body: dict[str, Any] = {
        "model": model,
        "text": {
            "format": {"type": "text"},
            "verbosity": verbosity or DEFAULT_VERBOSITY,
        },
        "input": serialize_messages(messages, service=service, resolver=resolver),
        "store": True,
        "stream": bool(stream),
    }

    if service != "xai":
        body["include"] = list(DEFAULT_INCLUDE)

    if supports_reasoning(model):
        body["reasoning"] = {
            "effort": reasoning_effort or DEFAULT_REASONING_EFFORT,
            "summary": "auto",
        }

    if instructions:
        body["instructions"] = instructions

    if tools:
        body["tools"] = [dict(tool) for tool in tools]

    if previous_response_id:
        body["previous_response_id"] = previous_response_id

    if service == "xai" and has_server_executed_tool(tools):
        body.pop("text", None)

    return body


def build_headers(service: ServiceEndpoint, *, stream: bool = True) -> dict[str, str]:
    """Return request headers, failing early when a cloud key is missing."""

    headers = {
        "Content-Type": "application/json",
        "Accept": "text/event-stream" if stream else "application/json",
    }
    api_key = service.api_key.get_secret_value() if service.api_key else ""
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    elif not service.is_local:
        raise ConfigurationError(f"Add your {service.label} API key")
    return headers


__all__ = [
    "DEFAULT_INCLUDE",
    "DEFAULT_REASONING_EFFORT",
    "DEFAULT_VERBOSITY",
    "build_headers",
    "build_request_body",
    "has_server_executed_tool",
    "supports_reasoning",
]
