from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

_DEFAULT_CHAT_TITLE = "New Chat"
_IMAGE_PLACEHOLDER = "[Image]"


def generate_chat_id() -> str:
    return f"chat_{uuid.uuid4().hex}"


class Message(BaseModel):
    role: Literal["user", "assistant"]
    # Plain text, or a list of parts ({"type": "text"|"image_url"|"file", ...}).
    content: Union[str, List[Dict[str, Any]]]

    @property
    def text(self) -> str:
        """Plain-text view of the content (first text part for multi-part content)."""
        if isinstance(self.content, str):
            return self.content
        for part in self.content:
            if part.get("type") == "text":
                return part.get("text", "")
        return _IMAGE_PLACEHOLDER

    @property
    def has_image(self) -> bool:
        return isinstance(self.content, list) and any(
            part.get("type") == "image_url" for part in self.content
        )


class Overlay(BaseModel):
    """Side annotation attached to a chat. Unknown keys are carried through untouched."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    position: Optional[Dict[str, float]] = None
    quoted_text: str = Field(default="", alias="quotedText")
    request: Optional[str] = None
    response: Optional[str] = None
    minimized: bool = False


class ChatRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = _DEFAULT_CHAT_TITLE
    messages: List[Message] = []
    model: Optional[str] = None
    created_at: Optional[float] = Field(default=None, alias="createdAt")
    updated_at: Optional[float] = Field(default=None, alias="updatedAt")
    owner_id: Optional[str] = Field(default=None, alias="ownerId")
    overlays: List[Overlay] = []
    folder_id: Optional[str] = Field(default=None, alias="folderId")
    smart_title: bool = Field(default=False, alias="smartTitle")

    @property
    def sort_key(self) -> float:
        """Ordering key: ``updated_at``, falling back to ``created_at``."""
        if self.updated_at is not None:
            return self.updated_at
        return self.created_at or 0.0

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ChatFolder(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: f"folder_{uuid.uuid4().hex}")
    name: str
    chat_ids: List[str] = Field(default=[], alias="chatIds")
    expanded: bool = True
    updated_at: float = Field(default_factory=time.time, alias="updatedAt")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def provisional_title(messages: List[Message], max_len: int = 30) -> str:
    """Title derived from the first user message, truncated to ``max_len`` characters."""
    first_user = next((m for m in messages if m.role == "user"), None)
    if first_user is None:
        return _DEFAULT_CHAT_TITLE
    text = first_user.text if first_user.text != _IMAGE_PLACEHOLDER else "Image conversation"
    text = text.strip()
    if not text:
        return _DEFAULT_CHAT_TITLE
    return text[:max_len] + "..." if len(text) > max_len else text


@dataclass
class ExchangeResult:
    """Outcome of one ConversationController.send round trip."""

    chat_id: str
    reply: Optional[Message] = None
    displayed: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.reply is not None
