"""Message serialization helpers for Responses API requests."""

from __future__ import annotations

import re
from copy import deepcopy
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

from ..schemas.messages import Attachment, Message

IMAGE_PLACEHOLDER_PATTERN = re.compile(r"\[\[IMAGE:\s*([^\]]+)\]\]")

# Looks up gallery/cached images by file name when no attachment matches
ImageResolver = Callable[[str], Optional[str]]

InputItem = Union[Message, Mapping[str, Any]]


def _text_part_type(role: str) -> str:
    if role == "assistant":
        return "output_text"
    return "input_text"


def _image_part_type(role: str) -> str:
    return "output_image" if role == "assistant" else "input_image"


def _append_text_part(parts: list[dict[str, Any]], role: str, segment: str) -> None:
    normalized = segment.replace("\r", "").strip()
    if normalized:
        parts.append({"type": _text_part_type(role), "text": normalized})


def _resolve_image_url(
    filename: str,
    attachments: Sequence[Attachment],
    resolver: ImageResolver | None,
) -> str | None:
    name = filename.strip()
    if not name:
        return None
    for attachment in attachments:
        if attachment.name == name and attachment.source_url():
            return attachment.source_url()
    if resolver is not None:
        return resolver(name)
    return None


def parse_image_placeholders(text: str) -> list[str]:
    """Return the file names referenced by ``[[IMAGE: name]]`` markers."""

    return [match.group(1).strip() for match in IMAGE_PLACEHOLDER_PATTERN.finditer(text)]


def build_user_content(
    message: Message, resolver: ImageResolver | None = None
) -> str | list[dict[str, Any]]:
    """Expand attachments and image placeholders into inline content parts.

    Plain text is returned unchanged when no image part results.
    """

    raw = message.content if isinstance(message.content, str) else ""
    attachments = list(message.attachments or [])
    if not attachments and not IMAGE_PLACEHOLDER_PATTERN.search(raw):
        return raw

    parts: list[dict[str, Any]] = []
    used: set[str] = set()
    last_index = 0

    for match in IMAGE_PLACEHOLDER_PATTERN.finditer(raw):
        _append_text_part(parts, message.role, raw[last_index : match.start()])
        filename = match.group(1).strip()
        url = _resolve_image_url(filename, attachments, resolver)
        if url:
            parts.append({"type": _image_part_type(message.role), "image_url": url})
            used.add(filename)
        else:
            _append_text_part(parts, message.role, match.group(0))
        last_index = match.end()
    _append_text_part(parts, message.role, raw[last_index:])

    for attachment in attachments:
        url = attachment.source_url()
        key = attachment.name or url
        if not url or key in used:
            continue
        parts.append({"type": _image_part_type(message.role), "image_url": url})
        used.add(key or "")

    if not any("_image" in part["type"] for part in parts):
        return raw
    return parts


def serialize_message(
    message: Message,
    *,
    service: str | None = None,
    resolver: ImageResolver | None = None,
) -> dict[str, Any]:
    role = message.role
    # xAI rejects the developer role
    if role == "developer" and service == "xai":
        role = "system"

    payload: dict[str, Any] = {"role": role}
    if isinstance(message.content, str):
        if message.role == "user":
            payload["content"] = build_user_content(message, resolver)
        else:
            payload["content"] = message.content
    else:
        payload["content"] = [
            deepcopy(part) for part in message.content if isinstance(part, Mapping)
        ]
    return payload


def serialize_messages(
    messages: Iterable[InputItem],
    *,
    service: str | None = None,
    resolver: ImageResolver | None = None,
) -> list[dict[str, Any]]:
    """Convert messages and raw input items into the request ``input`` list."""

    serialized: list[dict[str, Any]] = []
    for item in messages:
        if isinstance(item, Message):
            serialized.append(serialize_message(item, service=service, resolver=resolver))
        elif isinstance(item, Mapping):
            serialized.append(deepcopy(dict(item)))
    return serialized


__all__ = [
    "IMAGE_PLACEHOLDER_PATTERN",
    "ImageResolver",
    "InputItem",
    "build_user_content",
    "parse_image_placeholders",
    "serialize_message",
    "serialize_messages",
]
