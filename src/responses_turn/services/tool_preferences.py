"""Persisted enablement preferences for catalog tools.

The store maps tool keys (``namespace:name``) to booleans. Keys without a
stored value fall back to the entry's default, which the caller supplies.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class ToolPreferenceStore:
    """Manage per-tool enablement flags backed by a JSON file."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()
        self._data: dict[str, bool] | None = None

    # ------------------------------------------------------------------
    # Internal I/O
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, bool]:
        if self._data is not None:
            return self._data
        if self._path.exists():
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
                if isinstance(raw, dict):
                    self._data = {
                        str(key): value
                        for key, value in raw.items()
                        if isinstance(value, bool)
                    }
                    return self._data
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Failed to read tool preferences: %s", exc)
        self._data = {}
        return self._data

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(self._data or {}, indent=2, sort_keys=True)
        self._path.write_text(payload + "\n", encoding="utf-8")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get(self, key: str, default: bool) -> bool:
        """Return the stored flag for *key*, or *default* when unset."""
        async with self._lock:
            return self._load().get(key, default)

    async def set(self, key: str, enabled: bool) -> None:
        async with self._lock:
            data = self._load()
            data[key] = bool(enabled)
            self._save()

    async def set_many(self, values: dict[str, bool]) -> None:
        """Write several flags with a single save."""
        async with self._lock:
            data = self._load()
            for key, enabled in values.items():
                data[key] = bool(enabled)
            self._save()

    async def remove(self, key: str) -> None:
        async with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._save()

    async def get_all(self) -> dict[str, bool]:
        async with self._lock:
            return dict(self._load())


__all__ = ["ToolPreferenceStore"]
