"""Request and response bodies of the HTTP API."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateConversationRequest(_Body):
    title: Optional[str] = None
    mode: str = "chat"
    content: Optional[str] = Field(default=None, description="optional first user input")


class UpdateConversationRequest(_Body):
    title: Optional[str] = None
    mode: Optional[str] = None


class SubmitMessageRequest(_Body):
    content: str = Field(min_length=1)
    replace: bool = False


class RetryRequest(_Body):
    replace: bool = False


class SelectVersionRequest(_Body):
    index: int = Field(ge=0)


class SubmitResponse(_Body):
    request_id: str
    conversation_id: str
    message_key: str
    version_id: str
    user_message_key: Optional[str] = None
    stream_url: str
    abort_url: str


class AbortResponse(_Body):
    success: bool
    message: str


class HealthResponse(_Body):
    status: str
    services: dict[str, dict]
