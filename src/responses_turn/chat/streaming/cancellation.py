"""Cooperative cancellation shared between a caller and a running turn."""

from __future__ import annotations

import asyncio


class CancellationToken:
    """Flag a turn for cancellation.

    The turn polls ``cancelled`` between frames and rounds, and the stream
    reader races ``wait()`` against each read so a stalled socket is closed
    as soon as ``cancel()`` is called.
    """

    __slots__ = ("_event", "reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


__all__ = ["CancellationToken"]
