"""Base repository interface."""

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Tuple

from ..domain.errors import NotFoundError
from ..domain.models import Conversation, ConversationPage, Message, Role

MAX_PAGE_SIZE = 100


class ConversationRepository(ABC):
    """Abstract per-user conversation store.

    Every operation is scoped to a user; a conversation id that belongs to
    another user behaves exactly like a missing one.
    """

    #: False for the store used when no backing service is configured.
    configured: bool = True

    @abstractmethod
    async def create_conversation(
        self, user_id: str, title: str, model: str, system_prompt: Optional[str] = None
    ) -> Conversation:
        """Create a new conversation, optionally seeded with a system message."""
        pass

    @abstractmethod
    async def get_conversation(self, user_id: str, conversation_id: str) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        pass

    @abstractmethod
    async def append_message(self, user_id: str, conversation_id: str, message: Message) -> Conversation:
        """Append a message to a conversation."""
        pass

    @abstractmethod
    async def replace_conversation(
        self,
        user_id: str,
        conversation_id: str,
        title: Optional[str] = None,
        messages: Optional[List[Message]] = None,
    ) -> Conversation:
        """Overwrite the title and/or the full message list."""
        pass

    @abstractmethod
    async def delete_conversation(self, user_id: str, conversation_id: str) -> bool:
        """Delete a conversation.

        Raises NotFoundError if it does not exist. Returns False when the
        store could not act on the request.
        """
        pass

    @abstractmethod
    async def list_conversations(self, user_id: str, limit: int = 20, offset: int = 0) -> ConversationPage:
        """List a user's conversations newest first."""
        pass

    async def delete_conversations(self, user_id: str, conversation_ids: Iterable[str]) -> int:
        """Delete several conversations one by one. Not atomic across ids."""
        deleted = 0
        for conversation_id in conversation_ids:
            try:
                if await self.delete_conversation(user_id, conversation_id):
                    deleted += 1
            except NotFoundError:
                continue
        return deleted


def new_conversation(
    user_id: str, title: str, model: str, system_prompt: Optional[str] = None
) -> Conversation:
    """Build a fresh conversation record, seeded with the system prompt if given."""
    messages = [Message(role=Role.SYSTEM, content=system_prompt)] if system_prompt else []
    return Conversation(user_id=user_id, title=title, model=model, messages=messages)


def clamp_page(limit: int, offset: int) -> Tuple[int, int]:
    """Bound pagination parameters to what the store serves."""
    return max(1, min(limit, MAX_PAGE_SIZE)), max(offset, 0)
