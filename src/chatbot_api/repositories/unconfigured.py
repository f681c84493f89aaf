"""Repository used when no conversation store is configured."""

from typing import List, Optional

import structlog

from ..domain.errors import NotFoundError
from ..domain.models import Conversation, ConversationPage, Message
from .base import ConversationRepository, new_conversation

logger = structlog.get_logger()


class UnconfiguredRepository(ConversationRepository):
    """Accepts every call and persists nothing.

    Chat keeps working without a store; history simply is not kept.
    """

    configured = False

    def __init__(self) -> None:
        logger.warning("conversation_store_unconfigured")

    async def create_conversation(
        self, user_id: str, title: str, model: str, system_prompt: Optional[str] = None
    ) -> Conversation:
        return new_conversation(user_id, title, model, system_prompt)

    async def get_conversation(self, user_id: str, conversation_id: str) -> Optional[Conversation]:
        return None

    async def append_message(self, user_id: str, conversation_id: str, message: Message) -> Conversation:
        raise NotFoundError()

    async def replace_conversation(
        self,
        user_id: str,
        conversation_id: str,
        title: Optional[str] = None,
        messages: Optional[List[Message]] = None,
    ) -> Conversation:
        raise NotFoundError()

    async def delete_conversation(self, user_id: str, conversation_id: str) -> bool:
        return False

    async def list_conversations(self, user_id: str, limit: int = 20, offset: int = 0) -> ConversationPage:
        return ConversationPage()
