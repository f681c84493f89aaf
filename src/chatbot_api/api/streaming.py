"""Serializes stream events to the newline-delimited wire format."""

import json
from typing import Any, AsyncIterator, Dict

from ..domain.models import ErrorEvent, Finished, StreamEvent, TextChunk


def event_payload(event: StreamEvent) -> Dict[str, Any]:
    """JSON object for one event, tagged by ``type``."""
    if isinstance(event, TextChunk):
        return {"type": event.type, "content": event.content, "conversationId": event.conversation_id}
    if isinstance(event, Finished):
        return {
            "type": event.type,
            "conversationId": event.conversation_id,
            "usage": event.usage.model_dump(by_alias=True),
            "finishReason": event.finish_reason,
        }
    if isinstance(event, ErrorEvent):
        return {"type": event.type, "conversationId": event.conversation_id, "error": event.message}
    raise TypeError(f"Unknown stream event: {event!r}")


def encode_event(event: StreamEvent) -> str:
    return f"data: {json.dumps(event_payload(event))}\n"


async def encode_stream(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    """Lines to write to the response, one per event."""
    async for event in events:
        yield encode_event(event)
