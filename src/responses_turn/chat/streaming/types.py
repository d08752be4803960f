"""Type definitions for the Responses streaming subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Union

from ...errors import ResponsesTurnError

SseEvent = dict[str, str | None]

ToolImplementation = Callable[..., Union[Any, Awaitable[Any]]]
ToolImplementations = Mapping[str, ToolImplementation]


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    ARGUMENTS_STREAMING = "arguments_streaming"
    ARGUMENTS_COMPLETE = "arguments_complete"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallStatus.COMPLETED, ToolCallStatus.FAILED)


_STATUS_RANK = {
    ToolCallStatus.PENDING: 0,
    ToolCallStatus.ARGUMENTS_STREAMING: 1,
    ToolCallStatus.ARGUMENTS_COMPLETE: 2,
    ToolCallStatus.EXECUTING: 3,
    ToolCallStatus.COMPLETED: 4,
    ToolCallStatus.FAILED: 4,
}


@dataclass
class ToolCallState:
    """Lifecycle of one function call keyed by its output item id."""

    item_id: str
    name: str | None = None
    call_id: str | None = None
    argument_buffer: str = ""
    arguments: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    status: ToolCallStatus = ToolCallStatus.PENDING
    history: list[ToolCallStatus] = field(
        default_factory=lambda: [ToolCallStatus.PENDING]
    )

    def advance(self, status: ToolCallStatus) -> bool:
        """Move forward to *status*; backward or sideways moves are refused."""

        if self.status.is_terminal or status.rank <= self.status.rank:
            return False
        self.status = status
        self.history.append(status)
        return True


@dataclass(frozen=True)
class ImageFragment:
    """A discovered image as a data URL or remote URL."""

    value: str
    mime_type: str = "image/png"
    source: str | None = None

    @property
    def base64_data(self) -> str | None:
        if self.value.startswith("data:") and "," in self.value:
            return self.value.split(",", 1)[1]
        return None


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TOOL_LOOP_EXCEEDED = "tool_loop_exceeded"


@dataclass
class TurnResult:
    """Outcome of one turn, consumed by conversation persistence."""

    status: TurnStatus
    text: str = ""
    reasoning: str = ""
    images: list[ImageFragment] = field(default_factory=list)
    response_id: str | None = None
    response: dict[str, Any] | None = None
    rounds: int = 0
    tool_calls: list[ToolCallState] = field(default_factory=list)
    input_items: list[dict[str, Any]] = field(default_factory=list)
    error: ResponsesTurnError | None = None

    @property
    def cancelled(self) -> bool:
        return self.status is TurnStatus.CANCELLED

    def to_message_dict(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": "assistant", "content": self.text}
        if self.response_id is not None:
            message["response_id"] = self.response_id
        return message


__all__ = [
    "ImageFragment",
    "SseEvent",
    "ToolCallState",
    "ToolCallStatus",
    "ToolImplementation",
    "ToolImplementations",
    "TurnResult",
    "TurnStatus",
]
