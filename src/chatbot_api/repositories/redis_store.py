"""Redis repository implementation.

Layout, per user:

    conversation:{user_id}:{conversation_id}  JSON record, sliding TTL
    conversations:{user_id}                   sorted set id -> last write (ms)

Record and index entry are written together. Appends and replacements are
read-modify-write over the whole record, guarded by WATCH so a concurrent
writer forces a retry instead of being silently overwritten.
"""

import functools
from datetime import datetime
from typing import Any, Callable, List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError
from redis import asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from ..domain.errors import ConcurrentUpdateError, NotFoundError, StoreCorruptionError
from ..domain.models import Conversation, ConversationPage, Message, utcnow
from .base import ConversationRepository, clamp_page, new_conversation

logger = structlog.get_logger()

DEFAULT_TTL_SECONDS = 30 * 24 * 60 * 60


def conversation_key(user_id: str, conversation_id: str) -> str:
    return f"conversation:{user_id}:{conversation_id}"


def index_key(user_id: str) -> str:
    return f"conversations:{user_id}"


def _score(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _degrades_to(fallback: Callable[..., Any]):
    """Answer with ``fallback(*args)`` instead of failing when Redis is unreachable."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except (RedisConnectionError, RedisTimeoutError) as e:
                logger.warning("conversation_store_unavailable", operation=func.__name__, error=str(e))
                return fallback(*args, **kwargs)

        return wrapper

    return decorator


def _not_found(*args, **kwargs):
    raise NotFoundError()


class RedisRepository(ConversationRepository):
    """Conversation store backed by Redis."""

    def __init__(
        self,
        client: aioredis.Redis,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        write_retries: int = 5,
    ) -> None:
        """Initialize with a client created with ``decode_responses=True``."""
        self.redis = client
        self.ttl_seconds = ttl_seconds
        self.write_retries = write_retries

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisRepository":
        """Create a repository with a lazily-connecting client."""
        client = aioredis.from_url(url, decode_responses=True)
        logger.info("conversation_store_configured", ttl_seconds=kwargs.get("ttl_seconds", DEFAULT_TTL_SECONDS))
        return cls(client, **kwargs)

    async def close(self) -> None:
        await self.redis.aclose()

    def _decode(self, raw: str, key: str) -> Conversation:
        try:
            return Conversation.model_validate_json(raw)
        except PydanticValidationError as e:
            logger.error("conversation_corrupted", key=key, error=str(e))
            raise StoreCorruptionError(details=e.errors(include_url=False)) from e

    @staticmethod
    def _encode(conversation: Conversation) -> str:
        return conversation.model_dump_json(by_alias=True)

    @_degrades_to(new_conversation)
    async def create_conversation(
        self, user_id: str, title: str, model: str, system_prompt: Optional[str] = None
    ) -> Conversation:
        """Create a new conversation."""
        conversation = new_conversation(user_id, title, model, system_prompt)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(
                conversation_key(user_id, conversation.id),
                self._encode(conversation),
                ex=self.ttl_seconds,
            )
            pipe.zadd(index_key(user_id), {conversation.id: _score(conversation.created_at)})
            pipe.expire(index_key(user_id), self.ttl_seconds)
            await pipe.execute()
        logger.info("conversation_created", user_id=user_id, conversation_id=conversation.id)
        return conversation

    @_degrades_to(lambda *args, **kwargs: None)
    async def get_conversation(self, user_id: str, conversation_id: str) -> Optional[Conversation]:
        """Retrieve a conversation by ID."""
        key = conversation_key(user_id, conversation_id)
        raw = await self.redis.get(key)
        if raw is None:
            logger.warning("conversation_not_found", user_id=user_id, conversation_id=conversation_id)
            return None
        return self._decode(raw, key)

    async def _update(
        self, user_id: str, conversation_id: str, mutate: Callable[[Conversation], None]
    ) -> Conversation:
        key = conversation_key(user_id, conversation_id)
        index = index_key(user_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            for attempt in range(1, self.write_retries + 1):
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        logger.warning(
                            "conversation_not_found", user_id=user_id, conversation_id=conversation_id
                        )
                        raise NotFoundError()

                    conversation = self._decode(raw, key)
                    mutate(conversation)
                    conversation.updated_at = utcnow()

                    pipe.multi()
                    pipe.set(key, self._encode(conversation), ex=self.ttl_seconds)
                    pipe.zadd(index, {conversation_id: _score(conversation.updated_at)})
                    pipe.expire(index, self.ttl_seconds)
                    await pipe.execute()
                    return conversation
                except WatchError:
                    logger.warning(
                        "conversation_write_conflict",
                        user_id=user_id,
                        conversation_id=conversation_id,
                        attempt=attempt,
                    )

        logger.error(
            "conversation_write_retries_exhausted",
            user_id=user_id,
            conversation_id=conversation_id,
            retries=self.write_retries,
        )
        raise ConcurrentUpdateError()

    @_degrades_to(_not_found)
    async def append_message(self, user_id: str, conversation_id: str, message: Message) -> Conversation:
        """Append a message to a conversation."""
        conversation = await self._update(
            user_id, conversation_id, lambda conversation: conversation.messages.append(message)
        )
        logger.info(
            "message_added",
            user_id=user_id,
            conversation_id=conversation_id,
            message_role=message.role.value,
            message_count=len(conversation.messages),
        )
        return conversation

    @_degrades_to(_not_found)
    async def replace_conversation(
        self,
        user_id: str,
        conversation_id: str,
        title: Optional[str] = None,
        messages: Optional[List[Message]] = None,
    ) -> Conversation:
        """Overwrite the title and/or the full message list."""

        def mutate(conversation: Conversation) -> None:
            if title is not None:
                conversation.title = title
            if messages is not None:
                conversation.messages = list(messages)

        conversation = await self._update(user_id, conversation_id, mutate)
        logger.info(
            "conversation_replaced",
            user_id=user_id,
            conversation_id=conversation_id,
            title_changed=title is not None,
            messages_replaced=messages is not None,
        )
        return conversation

    @_degrades_to(lambda *args, **kwargs: False)
    async def delete_conversation(self, user_id: str, conversation_id: str) -> bool:
        """Delete a conversation and its index entry."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(conversation_key(user_id, conversation_id))
            pipe.zrem(index_key(user_id), conversation_id)
            deleted, _ = await pipe.execute()
        if not deleted:
            logger.warning("conversation_not_found", user_id=user_id, conversation_id=conversation_id)
            raise NotFoundError()
        logger.info("conversation_deleted", user_id=user_id, conversation_id=conversation_id)
        return True

    @_degrades_to(lambda *args, **kwargs: 0)
    async def delete_conversations(self, user_id: str, conversation_ids) -> int:
        """Delete several conversations one by one."""
        return await super().delete_conversations(user_id, conversation_ids)

    @_degrades_to(lambda *args, **kwargs: ConversationPage())
    async def list_conversations(self, user_id: str, limit: int = 20, offset: int = 0) -> ConversationPage:
        """List conversations newest first.

        Index entries whose record has expired are removed as they are met,
        and the page is topped up from further down the index. ``total`` is
        read after the page, so a concurrent write can make it disagree with
        the page contents.
        """
        limit, offset = clamp_page(limit, offset)
        index = index_key(user_id)

        items: List[Conversation] = []
        position = offset
        while len(items) < limit:
            conversation_ids = await self.redis.zrevrange(
                index, position, position + limit - len(items) - 1
            )
            if not conversation_ids:
                break
            records = await self.redis.mget(
                [conversation_key(user_id, conversation_id) for conversation_id in conversation_ids]
            )

            expired = []
            for conversation_id, raw in zip(conversation_ids, records):
                if raw is None:
                    expired.append(conversation_id)
                    continue
                try:
                    items.append(self._decode(raw, conversation_key(user_id, conversation_id)))
                except StoreCorruptionError:
                    continue

            if expired:
                # Records outlived by their index entries
                await self.redis.zrem(index, *expired)
                logger.info("conversation_index_pruned", user_id=user_id, pruned=len(expired))
            # Later entries shift up into the pruned slots
            position += len(conversation_ids) - len(expired)

        total = await self.redis.zcard(index)
        return ConversationPage(items=items, total=total, has_more=position < total)
