"""Tool catalog, enablement state and per-request tool filtering."""

from __future__ import annotations

import asyncio
import copy
import ipaddress
import logging
import time
from typing import Any, Iterable, Sequence
from urllib.parse import urlparse

import httpx

from ..config import LOCAL_SERVICES, Settings, resolve_data_path
from ..errors import ConfigurationError
from ..schemas.tools import (
    ApprovalPolicy,
    BuiltinToolEntry,
    FunctionToolEntry,
    RemoteServerConfig,
    RemoteToolEntry,
    ToolCatalogEntry,
)
from ..services.remote_tool_servers import RemoteServerStore
from ..services.tool_preferences import ToolPreferenceStore

logger = logging.getLogger(__name__)

REMOTE_PING_TIMEOUT_SECONDS = 4.0
REMOTE_REFRESH_INTERVAL_SECONDS = 60.0

_SEARCH_UNDERSTANDING_FLAGS = {
    "enable_video_understanding": True,
    "enable_image_understanding": True,
}

STATIC_TOOLS: tuple[ToolCatalogEntry, ...] = (
    FunctionToolEntry(
        key="function:open_meteo_forecast",
        display_name="Weather (Open-Meteo)",
        description="Get a short weather forecast via Open-Meteo (1-7 days).",
        name="open_meteo_forecast",
        parameters={
            "type": "object",
            "properties": {
                "city": {"type": "string", "description": "City name, e.g. Detroit"},
                "days": {
                    "type": "integer",
                    "description": "Number of days of forecast to get",
                },
            },
            "required": ["city", "days"],
            "additionalProperties": False,
        },
    ),
    BuiltinToolEntry(
        key="builtin:web_search",
        display_name="Web Search",
        description="Provider-managed web searches for fresh information.",
        tool_type="web_search",
        only_services=["openai", "xai"],
    ),
    BuiltinToolEntry(
        key="builtin:code_interpreter",
        display_name="Code Interpreter",
        description="Run Python code and work with files in the provider sandbox.",
        tool_type="code_interpreter",
        extra={"container": {"type": "auto", "file_ids": []}},
        only_services=["openai", "xai"],
    ),
    BuiltinToolEntry(
        key="builtin:image_generation",
        display_name="OpenAI Images",
        description="Generate or edit images using the OpenAI image tool.",
        tool_type="image_generation",
        only_services=["openai"],
    ),
    BuiltinToolEntry(
        key="builtin:file_search",
        display_name="File Search",
        description="Search through uploaded documents using vector stores.",
        tool_type="file_search",
        extra={"vector_store_ids": []},
        only_services=["openai"],
    ),
)


def is_local_network_url(url: str) -> bool:
    """Return True when *url* points at loopback, a private range or ``.local``."""

    try:
        hostname = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    if not hostname:
        return False
    if hostname == "localhost" or hostname.endswith(".local"):
        return True
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return address.is_loopback or address.is_private


def is_code_focused_model(model: str | None) -> bool:
    return bool(model) and "codex" in model.lower()


class ToolManager:
    """Registry of available tools and their persisted enablement."""

    def __init__(
        self,
        settings: Settings,
        *,
        preferences: ToolPreferenceStore | None = None,
        remote_servers: RemoteServerStore | None = None,
        static_tools: Iterable[ToolCatalogEntry] = STATIC_TOOLS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._preferences = preferences or ToolPreferenceStore(
            resolve_data_path(settings.tool_preferences_path)
        )
        self._remote_servers = remote_servers or RemoteServerStore(
            resolve_data_path(settings.remote_servers_path)
        )
        self._static_tools = [entry.model_copy(deep=True) for entry in static_tools]
        self._http_client = http_client
        self._catalog: dict[str, ToolCatalogEntry] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()
        self._remote_status: dict[str, bool] = {}
        self._last_refresh: float | None = None

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            catalog: dict[str, ToolCatalogEntry] = {}
            # Registered servers are listed ahead of the static tools
            for config in await self._remote_servers.get_configs():
                entry = RemoteToolEntry.from_config(config)
                catalog[entry.key] = entry
            for entry in self._static_tools:
                if entry.key in catalog:
                    raise ConfigurationError(f"Duplicate tool key: {entry.key}")
                catalog[entry.key] = entry
            self._catalog = catalog
            self._loaded = True

    def _require(self, key: str) -> ToolCatalogEntry:
        entry = self._catalog.get(key)
        if entry is None:
            raise ConfigurationError(f"Unknown tool key: {key}")
        return entry

    # ------------------------------------------------------------------
    # Catalog and enablement
    # ------------------------------------------------------------------

    async def get_catalog(self) -> list[ToolCatalogEntry]:
        await self._ensure_loaded()
        return [entry.model_copy(deep=True) for entry in self._catalog.values()]

    async def get_entry(self, key: str) -> ToolCatalogEntry:
        await self._ensure_loaded()
        return self._require(key).model_copy(deep=True)

    async def is_enabled(self, key: str) -> bool:
        await self._ensure_loaded()
        entry = self._catalog.get(key)
        if entry is None:
            return False
        return await self._preferences.get(key, entry.default_enabled)

    async def set_enabled(self, key: str, enabled: bool) -> None:
        await self._ensure_loaded()
        self._require(key)
        await self._preferences.set(key, enabled)

    async def set_all_enabled(self, enabled: bool) -> None:
        await self._ensure_loaded()
        await self._preferences.set_many(
            {key: enabled for key, entry in self._catalog.items() if not entry.hidden}
        )

    # ------------------------------------------------------------------
    # Remote servers
    # ------------------------------------------------------------------

    async def register_remote_server(
        self,
        label: str,
        url: str,
        *,
        require_approval: ApprovalPolicy = "always",
        description: str | None = None,
    ) -> RemoteToolEntry:
        """Persist a remote tool server and expose it in the catalog."""

        await self._ensure_loaded()
        config = RemoteServerConfig(
            label=label,
            url=url,
            require_approval=require_approval,
            description=description,
        )
        entry = RemoteToolEntry.from_config(config)
        if entry.key in self._catalog:
            raise ConfigurationError(
                f'Server with label "{config.label}" already exists'
            )
        await self._remote_servers.add(config)

        remote_count = sum(
            1 for item in self._catalog.values() if isinstance(item, RemoteToolEntry)
        )
        items = list(self._catalog.items())
        items.insert(remote_count, (entry.key, entry))
        self._catalog = dict(items)
        self._remote_status.pop(entry.key, None)
        logger.info("Registered remote tool server '%s' at %s", label, config.url)
        return entry.model_copy(deep=True)

    async def unregister_remote_server(self, label: str) -> None:
        await self._ensure_loaded()
        key = f"mcp:{label}"
        self._require(key)
        await self._remote_servers.remove(label)
        del self._catalog[key]
        self._remote_status.pop(key, None)
        await self._preferences.remove(key)
        logger.info("Unregistered remote tool server '%s'", label)

    async def refresh_remote_availability(self, *, force: bool = False) -> None:
        """Ping enabled remote servers and cache whether they answered."""

        await self._ensure_loaded()
        now = time.monotonic()
        if (
            not force
            and self._last_refresh is not None
            and now - self._last_refresh < REMOTE_REFRESH_INTERVAL_SECONDS
        ):
            return

        remote_entries = [
            entry
            for entry in self._catalog.values()
            if isinstance(entry, RemoteToolEntry)
        ]
        enabled_entries = [
            entry for entry in remote_entries if await self.is_enabled(entry.key)
        ]
        if enabled_entries:
            results = await asyncio.gather(
                *(self._ping(entry.server_url) for entry in enabled_entries)
            )
            for entry, online in zip(enabled_entries, results):
                self._remote_status[entry.key] = online
                if not online:
                    logger.info("Remote tool server '%s' is offline", entry.server_label)
        self._last_refresh = time.monotonic()

    async def _ping(self, url: str) -> bool:
        timeout = httpx.Timeout(REMOTE_PING_TIMEOUT_SECONDS)
        try:
            if self._http_client is not None:
                await self._http_client.get(url, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    await client.get(url)
        except httpx.HTTPError as exc:
            logger.debug("Remote tool server ping failed for %s: %s", url, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Request tool set
    # ------------------------------------------------------------------

    async def get_enabled_tool_definitions(
        self,
        service: str,
        model: str | None,
        *,
        vector_store_ids: Sequence[str] = (),
    ) -> list[dict[str, Any]]:
        """Return wire-format tool definitions for one request."""

        if not self._settings.enable_function_calling:
            return []

        await self._ensure_loaded()
        is_local_service = service in LOCAL_SERVICES
        definitions: list[dict[str, Any]] = []

        for entry in self._catalog.values():
            if entry.hidden or not entry.allows_service(service):
                continue
            if is_local_service and not isinstance(entry, FunctionToolEntry):
                continue
            if isinstance(entry, RemoteToolEntry):
                if service == "xai":
                    continue
                if is_local_network_url(entry.server_url):
                    logger.debug(
                        "Skipping local remote server %s for cloud service %s",
                        entry.display_name,
                        service,
                    )
                    continue
                if self._remote_status.get(entry.key) is False:
                    continue
            if not await self._preferences.get(entry.key, entry.default_enabled):
                continue

            definitions.extend(
                self._shape_definitions(entry, service, model, vector_store_ids)
            )

        return definitions

    def _shape_definitions(
        self,
        entry: ToolCatalogEntry,
        service: str,
        model: str | None,
        vector_store_ids: Sequence[str],
    ) -> list[dict[str, Any]]:
        if not isinstance(entry, BuiltinToolEntry):
            return [copy.deepcopy(entry.definition())]

        tool_type = entry.tool_type
        if tool_type == "image_generation" and is_code_focused_model(model):
            return []

        definition = copy.deepcopy(entry.definition())
        if tool_type == "web_search" and service == "xai":
            return [
                {"type": "web_search", **_SEARCH_UNDERSTANDING_FLAGS},
                {"type": "x_search", **_SEARCH_UNDERSTANDING_FLAGS},
            ]
        if tool_type == "code_interpreter" and service == "xai":
            definition.pop("container", None)
        if tool_type == "file_search":
            if not vector_store_ids:
                logger.debug("Dropping file_search: no vector stores selected")
                return []
            definition["vector_store_ids"] = list(vector_store_ids)
        return [definition]


__all__ = [
    "STATIC_TOOLS",
    "ToolManager",
    "is_code_focused_model",
    "is_local_network_url",
]
