"""Helpers for parsing the simple logging settings file."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

_LEVEL_MAP: dict[str, int | None] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "off": None,
}

_DEFAULT_KEYS = ("terminal", "stream", "tools")
_DEFAULT_LEVEL = "info"

# Package loggers controlled by each settings key
_LOGGER_NAMES = {
    "stream": ("responses_turn.chat.streaming", "responses_turn.responses_client"),
    "tools": (
        "responses_turn.chat.tool_manager",
        "responses_turn.chat.streaming.tooling",
        "responses_turn.services",
    ),
}


@dataclass(frozen=True)
class LoggingSettings:
    terminal_level: int | None
    stream_level: int | None
    tools_level: int | None


def _normalize_level(value: str) -> str:
    return value.strip().lower()


def _resolve_level(value: str) -> int | None:
    return _LEVEL_MAP.get(_normalize_level(value), _LEVEL_MAP[_DEFAULT_LEVEL])


def parse_logging_settings(path: Path) -> LoggingSettings:
    """Parse the human-readable logging settings file.

    Lines look like ``stream = debug``; unknown keys, comments and malformed
    lines are ignored, and missing keys fall back to ``info``.
    """

    levels: dict[str, int | None] = {
        key: _LEVEL_MAP[_DEFAULT_LEVEL] for key in _DEFAULT_KEYS
    }

    if path.exists():
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, value = (part.strip() for part in line.split("=", 1))
            normalized_key = key.lower()
            if normalized_key in _DEFAULT_KEYS:
                levels[normalized_key] = _resolve_level(value)

    return LoggingSettings(
        terminal_level=levels["terminal"],
        stream_level=levels["stream"],
        tools_level=levels["tools"],
    )


def configure_logging(settings: LoggingSettings) -> None:
    """Apply parsed levels to the package loggers and a console handler."""

    package_logger = logging.getLogger("responses_turn")
    if settings.terminal_level is None:
        package_logger.disabled = True
        return

    package_logger.disabled = False
    package_logger.setLevel(settings.terminal_level)
    if not any(
        isinstance(handler, logging.StreamHandler)
        for handler in package_logger.handlers
    ):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        package_logger.addHandler(console_handler)

    for key, level in (("stream", settings.stream_level), ("tools", settings.tools_level)):
        for name in _LOGGER_NAMES[key]:
            child = logging.getLogger(name)
            if level is None:
                child.disabled = True
            else:
                child.disabled = False
                child.setLevel(level)

    # httpx logs every request at INFO; keep it quiet unless debugging
    quiet_level = (
        logging.DEBUG if settings.stream_level == logging.DEBUG else logging.WARNING
    )
    logging.getLogger("httpx").setLevel(quiet_level)
    logging.getLogger("httpcore").setLevel(quiet_level)


__all__ = ["LoggingSettings", "configure_logging", "parse_logging_settings"]
