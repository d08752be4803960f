"""Discovery of generated images inside arbitrarily shaped event payloads."""

from __future__ import annotations

import re
from typing import Any, Mapping

from .types import ImageFragment

MAX_SEARCH_DEPTH = 12
DEFAULT_IMAGE_MIME = "image/png"

# Field names whose string values may hold image data or an image URL
IMAGE_FIELDS = frozenset(
    {
        "b64_json",
        "base64",
        "image_base64",
        "image_base64_json",
        "image_base64_data",
        "partial_image_b64",
        "image_data",
        "image",
        "image_url",
        "data",
        "data_url",
        "url",
        "result",
        "content",
    }
)

_MIME_FIELDS = ("mime_type", "media_type", "content_type")
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=\s]+$")
_MIN_BASE64_LENGTH = 120


def looks_like_base64(value: str) -> bool:
    compact = "".join(value.split())
    if len(compact) < _MIN_BASE64_LENGTH or len(compact) % 4:
        return False
    return bool(_BASE64_RE.match(compact))


def coerce_image_data_url(value: str, mime_type: str = DEFAULT_IMAGE_MIME) -> str | None:
    """Return a data URL or remote URL for *value*, or None if it is not an image."""

    candidate = value.strip()
    if not candidate:
        return None
    if candidate.startswith("data:image/"):
        return candidate
    if candidate.startswith(("http://", "https://")):
        return candidate
    if looks_like_base64(candidate):
        return f"data:{mime_type};base64,{''.join(candidate.split())}"
    return None


def _mime_from_data_url(value: str) -> str | None:
    if value.startswith("data:") and ";" in value:
        return value[5 : value.index(";")] or None
    return None


def _extract_mime(container: Mapping[str, Any]) -> str | None:
    for key in _MIME_FIELDS:
        value = container.get(key)
        if isinstance(value, str) and value.startswith("image/"):
            return value
    output_format = container.get("output_format")
    if isinstance(output_format, str) and output_format.isalpha():
        fmt = output_format.lower()
        return f"image/{'jpeg' if fmt == 'jpg' else fmt}"
    return None


def collect_image_candidates(
    payload: Any,
    *,
    source: str | None = None,
    max_depth: int = MAX_SEARCH_DEPTH,
) -> list[ImageFragment]:
    """Walk *payload* and return every distinct image it carries.

    Only strings under recognized field names are considered; other mappings
    and sequences are descended into up to *max_depth* levels, and objects are
    visited at most once so self-referential structures terminate.
    """

    found: list[ImageFragment] = []
    seen_values: set[str] = set()
    visited: set[int] = set()

    def _walk(value: Any, depth: int, mime: str, is_candidate: bool) -> None:
        if depth > max_depth:
            return
        if isinstance(value, str):
            if not is_candidate:
                return
            url = coerce_image_data_url(value, mime)
            if url and url not in seen_values:
                seen_values.add(url)
                found.append(
                    ImageFragment(
                        value=url,
                        mime_type=_mime_from_data_url(url) or mime,
                        source=source,
                    )
                )
            return
        if isinstance(value, Mapping):
            if id(value) in visited:
                return
            visited.add(id(value))
            local_mime = _extract_mime(value) or mime
            for key, child in value.items():
                _walk(child, depth + 1, local_mime, key in IMAGE_FIELDS)
            return
        if isinstance(value, (list, tuple)):
            if id(value) in visited:
                return
            visited.add(id(value))
            for item in value:
                _walk(item, depth + 1, mime, is_candidate)

    _walk(payload, 0, DEFAULT_IMAGE_MIME, False)
    return found


__all__ = [
    "IMAGE_FIELDS",
    "MAX_SEARCH_DEPTH",
    "coerce_image_data_url",
    "collect_image_candidates",
    "looks_like_base64",
]
