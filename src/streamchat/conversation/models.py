"""Conversation data model: messages, their versions, and content blocks."""

from __future__ import annotations

import time
import uuid
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from streamchat.core.types import Role, ToolState, VersionStatus


def now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex[:16]}"


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TextBlock(_Model):
    kind: Literal["text"] = "text"
    index: int
    text: str = ""


class ToolBlock(_Model):
    kind: Literal["tool"] = "tool"
    index: int
    tool_id: str
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    raw_input: str = ""
    state: ToolState = ToolState.INPUT_STREAMING
    output: Optional[str] = None
    error: Optional[str] = None


ContentBlock = Annotated[Union[TextBlock, ToolBlock], Field(discriminator="kind")]


class MessageVersion(_Model):
    id: str
    status: VersionStatus = VersionStatus.STREAMING
    blocks: list[ContentBlock] = Field(default_factory=list)
    error: Optional[str] = None
    created_at: int = Field(default_factory=now_ms)

    @property
    def text(self) -> str:
        """All text blocks joined, in index order."""
        return "".join(b.text for b in self.blocks if isinstance(b, TextBlock))


class Message(_Model):
    key: str
    role: Role
    versions: list[MessageVersion] = Field(default_factory=list)
    selected: int = 0
    created_at: int = Field(default_factory=now_ms)

    @property
    def current(self) -> MessageVersion:
        return self.versions[self.selected]

    @property
    def streaming_version(self) -> MessageVersion | None:
        return next((v for v in self.versions if v.status is VersionStatus.STREAMING), None)


class Conversation(_Model):
    id: str
    title: str = "New conversation"
    mode: str = "chat"
    messages: list[Message] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    def message(self, key: str) -> Message | None:
        return next((m for m in self.messages if m.key == key), None)

    def touch(self) -> None:
        self.updated_at = now_ms()


class ConversationSummary(_Model):
    id: str
    title: str
    mode: str
    created_at: int
    updated_at: int
