"""Generation orchestrator.

Drives a backend and turns its output into a finite sequence of stream
events:

    IDLE -> STREAMING -> FINISHED | FAILED

Every delta the backend produces becomes exactly one ``TextChunk``, in the
order it was produced. A run ends with exactly one terminal event,
``Finished`` or ``ErrorEvent``, and nothing is emitted after it. If the
consumer stops iterating early, the backend stream is closed and no terminal
event is produced.

Buffered generation runs the same pipeline and concatenates the chunks.
"""

import asyncio
from contextlib import aclosing
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional, Sequence

import structlog

from ..domain.errors import ProviderError
from ..domain.models import (
    ErrorEvent,
    Finished,
    GenerationResult,
    Message,
    StreamEvent,
    TextChunk,
    Usage,
)
from .backends import ChatBackend, Completion, TextDelta
from .router import BackendHandle

logger = structlog.get_logger()

GENERATION_FAILED = "Failed to generate response"
GENERATION_TIMED_OUT = "Generation exceeded the time budget"


class GenerationState(str, Enum):
    """Lifecycle of one streaming run."""

    IDLE = "idle"
    STREAMING = "streaming"
    FINISHED = "finished"
    FAILED = "failed"


class GenerationOrchestrator:
    """Runs chat generations against provider backends."""

    def __init__(
        self,
        backend_factory: Callable[[BackendHandle], ChatBackend],
        timeout: Optional[float] = 60.0,
    ) -> None:
        """Initialize with a way to build backends and an overall time budget in seconds."""
        self.backend_factory = backend_factory
        self.timeout = timeout

    async def stream_generate(
        self,
        handle: BackendHandle,
        messages: Sequence[Message],
        temperature: float,
        max_tokens: int,
        conversation_id: Optional[str] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream events for one generation."""
        state = GenerationState.IDLE
        loop = asyncio.get_running_loop()
        deadline = None if self.timeout is None else loop.time() + self.timeout
        chunk_count = 0

        try:
            backend = self.backend_factory(handle)
            outputs = backend.stream(messages, temperature, max_tokens)
        except Exception as e:
            logger.error(
                "backend_init_error",
                provider=handle.provider.value,
                model=handle.model_id,
                error=str(e),
            )
            yield ErrorEvent(conversation_id=conversation_id, message=GENERATION_FAILED)
            return

        state = GenerationState.STREAMING
        logger.info(
            "generation_started",
            provider=handle.provider.value,
            model=handle.model_id,
            conversation_id=conversation_id,
        )
        terminal: Optional[StreamEvent] = None

        try:
            async with aclosing(outputs):
                while terminal is None:
                    if deadline is not None and loop.time() >= deadline:
                        raise TimeoutError()
                    try:
                        # Steps run in this task so backend context survives between them
                        async with asyncio.timeout_at(deadline):
                            output = await anext(outputs)
                    except StopAsyncIteration:
                        terminal = Finished(conversation_id=conversation_id)
                        state = GenerationState.FINISHED
                        break

                    if isinstance(output, TextDelta):
                        chunk_count += 1
                        yield TextChunk(content=output.text, conversation_id=conversation_id)
                    elif isinstance(output, Completion):
                        terminal = Finished(
                            conversation_id=conversation_id,
                            usage=output.usage,
                            finish_reason=output.finish_reason or "unknown",
                        )
                        state = GenerationState.FINISHED
        except TimeoutError:
            state = GenerationState.FAILED
            logger.warning(
                "generation_timeout",
                model=handle.model_id,
                conversation_id=conversation_id,
                timeout=self.timeout,
                chunks=chunk_count,
            )
            yield ErrorEvent(conversation_id=conversation_id, message=GENERATION_TIMED_OUT)
            return
        except Exception as e:
            state = GenerationState.FAILED
            logger.error(
                "generation_error",
                provider=handle.provider.value,
                model=handle.model_id,
                conversation_id=conversation_id,
                chunks=chunk_count,
                error=str(e),
            )
            yield ErrorEvent(conversation_id=conversation_id, message=GENERATION_FAILED)
            return
        finally:
            if state is GenerationState.STREAMING:
                # Consumer went away before a terminal event
                logger.info(
                    "generation_cancelled",
                    model=handle.model_id,
                    conversation_id=conversation_id,
                    chunks=chunk_count,
                )

        logger.info(
            "generation_finished",
            model=handle.model_id,
            conversation_id=conversation_id,
            chunks=chunk_count,
            finish_reason=terminal.finish_reason,
        )
        yield terminal

    async def generate(
        self,
        handle: BackendHandle,
        messages: Sequence[Message],
        temperature: float,
        max_tokens: int,
        conversation_id: Optional[str] = None,
    ) -> GenerationResult:
        """Run a generation to completion and return the full text.

        Raises ProviderError rather than returning partial output.
        """
        parts: List[str] = []
        usage = Usage()
        finish_reason = "unknown"

        events = self.stream_generate(handle, messages, temperature, max_tokens, conversation_id)
        async with aclosing(events):
            async for event in events:
                if isinstance(event, TextChunk):
                    parts.append(event.content)
                elif isinstance(event, Finished):
                    usage = event.usage
                    finish_reason = event.finish_reason
                elif isinstance(event, ErrorEvent):
                    raise ProviderError(event.message)

        return GenerationResult(content="".join(parts), usage=usage, finish_reason=finish_reason)
