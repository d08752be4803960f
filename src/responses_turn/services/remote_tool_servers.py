"""Service for persisting registered remote (MCP) tool servers."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Sequence

from pydantic import ValidationError

from ..errors import ConfigurationError
from ..schemas.tools import RemoteServerConfig

logger = logging.getLogger(__name__)


def load_server_configs(path: Path) -> list[RemoteServerConfig]:
    """Read server configs from *path*; a missing file yields an empty list."""

    if not path.exists():
        return []
    raw = json.loads(path.read_text(encoding="utf-8"))
    items: Sequence[Any]
    if isinstance(raw, dict):
        items = raw.get("servers") or []
    elif isinstance(raw, list):
        items = raw
    else:
        raise ValueError("Remote server file must contain a list or a 'servers' key")
    return [RemoteServerConfig.model_validate(item) for item in items]


class RemoteServerStore:
    """Manage the persisted list of remote tool servers."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()
        self._configs: list[RemoteServerConfig] = []
        self._loaded = False  # Lazy load flag

    def _load_from_disk(self) -> None:
        if self._loaded:
            return

        try:
            self._configs = load_server_configs(self._path)
        except (ValueError, ValidationError, OSError) as exc:
            logger.warning(
                "Failed to load remote tool servers from %s: %s", self._path, exc
            )
            self._configs = []

        self._loaded = True

    def _save_to_disk(self) -> None:
        payload = {
            "servers": [
                cfg.model_dump(mode="json", exclude_none=True) for cfg in self._configs
            ]
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(payload, indent=2, sort_keys=True)
        self._path.write_text(serialized + "\n", encoding="utf-8")

    async def get_configs(self) -> list[RemoteServerConfig]:
        async with self._lock:
            self._load_from_disk()
            return [cfg.model_copy(deep=True) for cfg in self._configs]

    async def add(self, config: RemoteServerConfig) -> RemoteServerConfig:
        async with self._lock:
            self._load_from_disk()
            if any(existing.label == config.label for existing in self._configs):
                raise ConfigurationError(
                    f'Server with label "{config.label}" already exists'
                )
            self._configs.append(config.model_copy(deep=True))
            self._save_to_disk()
            return config.model_copy(deep=True)

    async def remove(self, label: str) -> RemoteServerConfig:
        async with self._lock:
            self._load_from_disk()
            for index, existing in enumerate(self._configs):
                if existing.label != label:
                    continue
                del self._configs[index]
                self._save_to_disk()
                return existing

        raise ConfigurationError(f'Unknown remote tool server: "{label}"')


__all__ = ["RemoteServerStore", "load_server_configs"]
