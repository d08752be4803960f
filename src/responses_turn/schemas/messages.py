"""Pydantic models for conversation messages."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class Attachment(BaseModel):
    """Image or file reference attached to a user message."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: Optional[str] = None
    mime_type: str = "image/png"
    data_url: Optional[str] = None
    url: Optional[str] = None
    file_id: Optional[str] = None

    def source_url(self) -> Optional[str]:
        return self.data_url or self.url


class Message(BaseModel):
    """Represents a single conversation message. Messages are immutable once sent."""

    role: Literal["user", "assistant", "system", "developer", "tool"]
    content: Union[str, List[Dict[str, Any]]] = ""
    attachments: Optional[List[Attachment]] = None
    id: str = Field(default_factory=lambda: uuid4().hex)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    response_id: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


__all__ = ["Attachment", "Message"]
