"""Conversation message types.

Messages form a tagged union: each kind carries only the fields it needs and a
``type`` discriminator. Instances are frozen; the conversation log assigns the
integer ``id`` when a message is appended.
"""

from __future__ import annotations

import base64
import mimetypes
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, ClassVar, Dict, List, Literal, Union

__all__ = [
    "MessageType",
    "ToolCall",
    "Attachment",
    "UserMessage",
    "AssistantMessage",
    "ToolMessage",
    "SystemMessage",
    "Message",
    "IMAGE_SUFFIXES",
]

MessageType = Literal["user", "assistant", "tool", "system"]
AttachmentKind = Literal["text", "image"]
IMAGE_SUFFIXES: frozenset[str] = frozenset({".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp"})
UNASSIGNED_ID = -1


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A tool invocation requested by the model.

    ``arguments`` is the raw JSON text assembled from streamed fragments; it is
    parsed only by the tool layer.
    """

    id: str
    name: str
    arguments: str = ""

    def to_chat_param(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments or "{}"},
        }


@dataclass(slots=True, frozen=True)
class Attachment:
    """File content attached to a user message."""

    path: str
    content: str
    kind: AttachmentKind = "text"
    mime_type: str | None = None

    @classmethod
    def from_path(cls, path: Path | str, *, encoding: str = "utf-8") -> "Attachment":
        """Load *path* as a text or base64 image attachment."""

        resolved = Path(path).expanduser()
        if resolved.suffix.lower() in IMAGE_SUFFIXES:
            mime_type = mimetypes.guess_type(resolved.name)[0] or "image/png"
            encoded = base64.b64encode(resolved.read_bytes()).decode("ascii")
            return cls(path=str(path), content=encoded, kind="image", mime_type=mime_type)
        text = resolved.read_text(encoding=encoding, errors="replace")
        return cls(path=str(path), content=text)

    def data_url(self) -> str:
        return f"data:{self.mime_type or 'image/png'};base64,{self.content}"


@dataclass(slots=True, frozen=True)
class UserMessage:
    content: str
    attachments: tuple[Attachment, ...] = ()
    id: int = UNASSIGNED_ID
    timestamp: datetime = field(default_factory=_utcnow)
    type: ClassVar[MessageType] = "user"

    def rendered_text(self) -> str:
        """Return the text sent to the model, with text attachments prepended."""

        blocks = [f"--- {item.path} ---\n{item.content}" for item in self.attachments if item.kind == "text"]
        if not blocks:
            return self.content
        return "\n\n".join([*blocks, self.content])

    def token_text(self) -> str:
        return self.rendered_text()

    def to_chat_param(self) -> Dict[str, Any]:
        images = [item for item in self.attachments if item.kind == "image"]
        if not images:
            return {"role": "user", "content": self.rendered_text()}
        parts: List[Dict[str, Any]] = [{"type": "text", "text": self.rendered_text()}]
        for image in images:
            parts.append({"type": "image_url", "image_url": {"url": image.data_url()}})
        return {"role": "user", "content": parts}


@dataclass(slots=True, frozen=True)
class AssistantMessage:
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    reasoning: str | None = None
    id: int = UNASSIGNED_ID
    timestamp: datetime = field(default_factory=_utcnow)
    type: ClassVar[MessageType] = "assistant"

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def token_text(self) -> str:
        pieces = [self.content]
        for call in self.tool_calls:
            pieces.append(call.name)
            pieces.append(call.arguments)
        return "\n".join(piece for piece in pieces if piece)

    def to_chat_param(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": "assistant", "content": self.content or None}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_chat_param() for call in self.tool_calls]
        elif not self.content:
            payload["content"] = ""
        return payload


@dataclass(slots=True, frozen=True)
class ToolMessage:
    tool_call_id: str
    name: str
    content: str
    is_error: bool = False
    id: int = UNASSIGNED_ID
    timestamp: datetime = field(default_factory=_utcnow)
    type: ClassVar[MessageType] = "tool"

    def token_text(self) -> str:
        return self.content

    def to_chat_param(self) -> Dict[str, Any]:
        return {"role": "tool", "tool_call_id": self.tool_call_id, "content": self.content}


@dataclass(slots=True, frozen=True)
class SystemMessage:
    content: str
    id: int = UNASSIGNED_ID
    timestamp: datetime = field(default_factory=_utcnow)
    type: ClassVar[MessageType] = "system"

    def token_text(self) -> str:
        return self.content

    def to_chat_param(self) -> Dict[str, Any]:
        return {"role": "system", "content": self.content}


Message = Union[UserMessage, AssistantMessage, ToolMessage, SystemMessage]
