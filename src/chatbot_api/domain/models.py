"""Domain models for the chat application."""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model serialized with camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Role(str, Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Message(CamelModel):
    """Message model."""

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class Conversation(CamelModel):
    """Conversation model.

    Messages keep the order in which they were appended; timestamps are
    informational only.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    user_id: str
    title: str = Field(min_length=1, max_length=100)
    model: str
    messages: List[Message] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ConversationPage(CamelModel):
    """A page of conversations, newest first."""

    items: List[Conversation] = []
    total: int = 0
    has_more: bool = False


class Usage(CamelModel):
    """Token accounting as reported by a backend."""

    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


class TextChunk(CamelModel):
    """One incremental unit of generated text."""

    type: Literal["text-chunk"] = "text-chunk"
    content: str
    conversation_id: Optional[str] = None


class Finished(CamelModel):
    """Terminal event for a successful generation."""

    type: Literal["conversation-finished"] = "conversation-finished"
    conversation_id: Optional[str] = None
    usage: Usage = Field(default_factory=Usage)
    finish_reason: str = "unknown"


class ErrorEvent(CamelModel):
    """Terminal event for a failed generation."""

    type: Literal["error"] = "error"
    conversation_id: Optional[str] = None
    message: str


StreamEvent = Union[TextChunk, Finished, ErrorEvent]


class GenerationResult(CamelModel):
    """Aggregate of a buffered generation."""

    content: str
    usage: Usage = Field(default_factory=Usage)
    finish_reason: str = "unknown"
