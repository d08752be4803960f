"""Error taxonomy shared by the request client, tool manager and orchestrator."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover - import cycle guard for type checkers
    from .chat.streaming.types import TurnResult


class ResponsesTurnError(Exception):
    """Base class for failures surfaced by this package.

    ``partial`` carries the turn result accumulated before the failure so the
    caller can keep whatever output was already rendered.
    """

    def __init__(self, message: str, *, partial: "TurnResult | None" = None):
        super().__init__(message)
        self.partial = partial


class ConfigurationError(ResponsesTurnError):
    """Raised before any network activity when the setup is unusable."""


class NetworkError(ResponsesTurnError):
    """Wrap transport failures and non-success statuses from the provider."""

    def __init__(self, status_code: int, detail: Any, **kwargs: Any):
        super().__init__(str(detail), **kwargs)
        self.status_code = status_code
        self.detail = detail


class ResponseFailedError(NetworkError):
    """The provider finished the stream with a ``response.failed`` event."""


class ProtocolError(ResponsesTurnError):
    """The stream ended without a usable terminal payload."""


class ToolExecutionError(ResponsesTurnError):
    """A local tool raised or returned an error shape."""

    def __init__(self, tool_name: str, detail: Any):
        super().__init__(f"Tool '{tool_name}' failed: {detail}")
        self.tool_name = tool_name
        self.detail = detail

    def to_output(self) -> dict[str, Any]:
        return {"error": str(self.detail)}


class ToolLoopExceededError(ResponsesTurnError):
    """The model kept requesting tools past the configured round ceiling."""

    def __init__(self, limit: int, **kwargs: Any):
        super().__init__(
            f"Tool execution stopped after {limit} rounds", **kwargs
        )
        self.limit = limit


__all__ = [
    "ConfigurationError",
    "NetworkError",
    "ProtocolError",
    "ResponseFailedError",
    "ResponsesTurnError",
    "ToolExecutionError",
    "ToolLoopExceededError",
]
