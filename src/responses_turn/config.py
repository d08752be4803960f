"""Application configuration using environment variables."""

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

ServiceName = Literal["openai", "xai", "lmstudio", "ollama"]

# Self-hosted services cannot run server-side tools and need no credential
LOCAL_SERVICES: frozenset[str] = frozenset({"lmstudio", "ollama"})

_SERVICE_LABELS = {
    "openai": "OpenAI",
    "xai": "xAI",
    "lmstudio": "LM Studio",
    "ollama": "Ollama",
}


@dataclass(frozen=True)
class ServiceEndpoint:
    """Resolved connection details for one completion service."""

    name: str
    base_url: str
    api_key: Optional[SecretStr] = None

    @property
    def is_local(self) -> bool:
        return self.name in LOCAL_SERVICES

    @property
    def label(self) -> str:
        return _SERVICE_LABELS.get(self.name, self.name)

    @property
    def responses_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/responses"


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    active_service: ServiceName = Field(
        default="openai",
        validation_alias=AliasChoices("RESPONSES_SERVICE", "active_service"),
    )

    openai_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_API_KEY", "openai_api_key"),
    )
    openai_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.openai.com/v1"),
        validation_alias=AliasChoices("OPENAI_BASE_URL", "openai_base_url"),
    )
    xai_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("XAI_API_KEY", "xai_api_key"),
    )
    xai_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.x.ai/v1"),
        validation_alias=AliasChoices("XAI_BASE_URL", "xai_base_url"),
    )
    lmstudio_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("LMSTUDIO_API_KEY", "lmstudio_api_key"),
    )
    lmstudio_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("http://localhost:1234/v1"),
        validation_alias=AliasChoices("LMSTUDIO_BASE_URL", "lmstudio_base_url"),
    )
    ollama_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("OLLAMA_API_KEY", "ollama_api_key"),
    )
    ollama_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("http://localhost:11434/v1"),
        validation_alias=AliasChoices("OLLAMA_BASE_URL", "ollama_base_url"),
    )

    default_model: str = Field(
        default="gpt-5-mini",
        validation_alias=AliasChoices("RESPONSES_DEFAULT_MODEL", "default_model"),
    )
    default_verbosity: Literal["low", "medium", "high"] = Field(
        default="medium",
        validation_alias=AliasChoices("RESPONSES_VERBOSITY", "default_verbosity"),
    )
    default_reasoning_effort: Literal["minimal", "low", "medium", "high"] = Field(
        default="low",
        validation_alias=AliasChoices(
            "RESPONSES_REASONING_EFFORT",
            "default_reasoning_effort",
        ),
    )
    system_prompt: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("RESPONSES_SYSTEM_PROMPT", "system_prompt"),
    )

    request_timeout: float = Field(
        default=120.0,
        validation_alias=AliasChoices("RESPONSES_TIMEOUT", "request_timeout"),
        ge=1,
    )
    stream_idle_timeout: float = Field(
        default=60.0,
        validation_alias=AliasChoices(
            "RESPONSES_STREAM_IDLE_TIMEOUT",
            "stream_idle_timeout",
        ),
        gt=0,
    )
    tool_hop_limit: int = Field(
        default=8,
        validation_alias=AliasChoices("TOOL_HOP_LIMIT", "tool_hop_limit"),
        ge=0,
    )
    enable_function_calling: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "ENABLE_FUNCTION_CALLING",
            "enable_function_calling",
        ),
    )
    check_remote_availability: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "CHECK_REMOTE_TOOL_AVAILABILITY",
            "check_remote_availability",
        ),
    )

    tool_preferences_path: Path = Field(
        default_factory=lambda: Path("data/tool_preferences.json"),
        validation_alias=AliasChoices(
            "TOOL_PREFERENCES_PATH",
            "tool_preferences_path",
        ),
    )
    remote_servers_path: Path = Field(
        default_factory=lambda: Path("data/remote_tool_servers.json"),
        validation_alias=AliasChoices(
            "REMOTE_TOOL_SERVERS_PATH",
            "remote_servers_path",
        ),
    )
    logging_settings_path: Path = Field(
        default_factory=lambda: PROJECT_ROOT / "logging_settings.conf",
        validation_alias=AliasChoices(
            "LOGGING_SETTINGS_PATH",
            "logging_settings_path",
        ),
    )

    def resolve_service(self, name: str | None = None) -> ServiceEndpoint:
        """Return connection details for *name* (defaults to the active service)."""

        service = (name or self.active_service).strip().lower()
        if service not in _SERVICE_LABELS:
            raise ConfigurationError(f"Unknown service: {service}")
        base_url = getattr(self, f"{service}_base_url")
        api_key = getattr(self, f"{service}_api_key")
        return ServiceEndpoint(
            name=service,
            base_url=str(base_url).rstrip("/"),
            api_key=api_key,
        )


def resolve_data_path(path: Path) -> Path:
    """Anchor a relative store path at the project root."""

    path = Path(path).expanduser()
    return path if path.is_absolute() else PROJECT_ROOT / path


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = [
    "LOCAL_SERVICES",
    "PROJECT_ROOT",
    "ServiceEndpoint",
    "ServiceName",
    "Settings",
    "get_settings",
    "resolve_data_path",
]
