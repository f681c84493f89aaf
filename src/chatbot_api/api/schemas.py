"""Request bodies accepted by the HTTP API."""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import ConfigDict, Field

from ..domain.models import CamelModel, Message, Role
from ..services.router import DEFAULT_MODEL


class ChatRequest(CamelModel):
    """One generation turn."""

    messages: List[Message]
    conversation_id: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=4000)
    stream: bool = True
    system_prompt: Optional[str] = None


class CreateConversationRequest(CamelModel):
    title: str = Field(min_length=1, max_length=100)
    model: str = DEFAULT_MODEL
    system_prompt: Optional[str] = None


class StoredMessage(CamelModel):
    """A message as supplied for a bulk replace; timestamp defaults to now."""

    role: Role
    content: str
    timestamp: Optional[datetime] = None


class UpdateConversationRequest(CamelModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    messages: Optional[List[StoredMessage]] = None


class AddMessageRequest(CamelModel):
    role: Literal["user", "assistant"]
    content: str


class SavedModel(CamelModel):
    """Model selection persisted by the client in the ``selectedModel`` cookie."""

    model_config = ConfigDict(extra="ignore")

    id: str
