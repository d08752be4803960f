"""Responses stream processing package."""

from .cancellation import CancellationToken
from .events import StreamEventProcessor
from .runtime import BufferedOutputRuntime, OutputRuntime
from .types import ImageFragment, ToolCallStatus, TurnResult, TurnStatus

__all__ = [
    "BufferedOutputRuntime",
    "CancellationToken",
    "ImageFragment",
    "OutputRuntime",
    "StreamEventProcessor",
    "ToolCallStatus",
    "TurnResult",
    "TurnStatus",
]
