"""Pydantic models describing tool catalog entries and remote tool servers."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

# Tool types the provider executes itself; xAI rejects a text format next to them
SERVER_EXECUTED_TOOL_TYPES = frozenset(
    {"web_search", "x_search", "code_interpreter", "mcp"}
)

ApprovalPolicy = Literal["always", "never"]


class RemoteServerConfig(BaseModel):
    """Persisted description of a remote (MCP) tool server."""

    model_config = ConfigDict(extra="forbid")

    label: Annotated[
        str,
        Field(..., min_length=1, description="Unique server label sent to the provider"),
    ]
    url: str = Field(..., description="Server URL the provider connects to")
    require_approval: ApprovalPolicy = Field(
        default="always",
        description="Whether the provider must ask before each remote call",
    )
    description: str | None = None

    @field_validator("label", mode="before")
    @classmethod
    def _normalize_label(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        candidate = value.strip()
        parsed = urlparse(candidate)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("url must be an absolute http(s) URL")
        return candidate


class _CatalogEntryBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key: str
    display_name: str
    description: str = ""
    hidden: bool = False
    only_services: list[str] | None = None

    @property
    def default_enabled(self) -> bool:
        return False

    def allows_service(self, service: str) -> bool:
        return self.only_services is None or service in self.only_services


class FunctionToolEntry(_CatalogEntryBase):
    """A tool implemented locally and invoked by name."""

    type: Literal["function"] = "function"
    name: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    strict: bool = True

    @property
    def default_enabled(self) -> bool:
        return True

    def definition(self) -> dict[str, Any]:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "strict": self.strict,
        }


class BuiltinToolEntry(_CatalogEntryBase):
    """A tool executed server-side by the provider."""

    type: Literal["builtin"] = "builtin"
    tool_type: str
    extra: dict[str, Any] = Field(default_factory=dict)

    def definition(self) -> dict[str, Any]:
        definition: dict[str, Any] = {"type": self.tool_type}
        definition.update(self.extra)
        return definition


class RemoteToolEntry(_CatalogEntryBase):
    """A remote tool server the provider connects to on our behalf."""

    type: Literal["mcp"] = "mcp"
    server_label: str
    server_url: str
    require_approval: ApprovalPolicy = "always"

    @classmethod
    def from_config(cls, config: RemoteServerConfig) -> "RemoteToolEntry":
        return cls(
            key=f"mcp:{config.label}",
            display_name=config.label,
            description=config.description or f"Remote tools from {config.label}",
            server_label=config.label,
            server_url=config.url,
            require_approval=config.require_approval,
        )

    def definition(self) -> dict[str, Any]:
        return {
            "type": "mcp",
            "server_label": self.server_label,
            "server_url": self.server_url,
            "require_approval": self.require_approval,
        }


ToolCatalogEntry = Annotated[
    Union[FunctionToolEntry, BuiltinToolEntry, RemoteToolEntry],
    Field(discriminator="type"),
]

_ENTRY_ADAPTER: TypeAdapter[ToolCatalogEntry] = TypeAdapter(ToolCatalogEntry)


def parse_catalog_entry(data: dict[str, Any]) -> ToolCatalogEntry:
    """Validate a raw catalog entry, dispatching on its ``type`` tag."""

    return _ENTRY_ADAPTER.validate_python(data)


__all__ = [
    "ApprovalPolicy",
    "BuiltinToolEntry",
    "FunctionToolEntry",
    "RemoteServerConfig",
    "RemoteToolEntry",
    "SERVER_EXECUTED_TOOL_TYPES",
    "ToolCatalogEntry",
    "parse_catalog_entry",
]
