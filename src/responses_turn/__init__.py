"""Run single conversational turns against an OpenAI-compatible Responses API."""

from .chat.orchestrator import TurnOrchestrator
from .chat.streaming import (
    BufferedOutputRuntime,
    CancellationToken,
    StreamEventProcessor,
    TurnResult,
    TurnStatus,
)
from .chat.tool_manager import ToolManager
from .config import Settings, get_settings
from .errors import (
    ConfigurationError,
    NetworkError,
    ProtocolError,
    ResponseFailedError,
    ResponsesTurnError,
    ToolExecutionError,
    ToolLoopExceededError,
)
from .responses_client import ResponsesClient

__all__ = [
    "BufferedOutputRuntime",
    "CancellationToken",
    "ConfigurationError",
    "NetworkError",
    "ProtocolError",
    "ResponseFailedError",
    "ResponsesClient",
    "ResponsesTurnError",
    "Settings",
    "StreamEventProcessor",
    "ToolExecutionError",
    "ToolLoopExceededError",
    "ToolManager",
    "TurnOrchestrator",
    "TurnResult",
    "TurnStatus",
    "get_settings",
]
