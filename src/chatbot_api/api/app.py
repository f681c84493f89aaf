"""
FastAPI Application Module

A chat API that puts several LLM providers behind one interface and keeps
per-user conversation history.

Key Features:
- Streamed and buffered chat completions across OpenAI, Anthropic, Google,
  Groq and xAI models
- Conversation storage in Redis with sliding retention, degrading to a
  no-op store when Redis is not configured or unreachable
- Structured logging and metrics
- CORS and OpenTelemetry support

Chat and storage are independent: clients persist an exchange through the
conversation endpoints after a chat turn completes.
"""

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import ValidationError as PydanticValidationError
from structlog import get_logger

from ..config import Settings, get_settings
from ..domain.errors import ChatbotError, NotFoundError, ValidationError
from ..domain.models import Finished, Message, StreamEvent, utcnow
from ..repositories.base import ConversationRepository
from ..repositories.redis_store import RedisRepository
from ..repositories.unconfigured import UnconfiguredRepository
from ..services.backends import BackendFactory
from ..services.normalizer import SYSTEM_PROMPTS, normalize
from ..services.orchestrator import GenerationOrchestrator
from ..services.router import DEFAULT_MODEL, DEFAULT_MODELS, resolve
from .auth import get_current_user_id, require_user_id
from .schemas import (
    AddMessageRequest,
    ChatRequest,
    CreateConversationRequest,
    SavedModel,
    UpdateConversationRequest,
)
from .streaming import encode_stream

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

# Core operational metrics for monitoring
REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total error responses", registry=CUSTOM_REGISTRY)
PROCESSING_TIME = Counter("processing_time_seconds", "Total processing time", registry=CUSTOM_REGISTRY)
STREAM_EVENTS = Counter(
    "stream_events_total", "Stream events emitted by type", ["type"], registry=CUSTOM_REGISTRY
)
TOKENS_USED = Counter("tokens_used_total", "Tokens reported by backends", registry=CUSTOM_REGISTRY)

logger = get_logger()

SELECTED_MODEL_COOKIE = "selectedModel"


def build_repository(settings: Settings) -> ConversationRepository:
    """Redis-backed store when configured, otherwise one that keeps nothing"""
    if settings.REDIS_URL:
        return RedisRepository.from_url(
            settings.REDIS_URL,
            ttl_seconds=settings.CONVERSATION_TTL_SECONDS,
            write_retries=settings.STORE_WRITE_RETRIES,
        )
    return UnconfiguredRepository()


# Core service instances
settings = get_settings()
repository = build_repository(settings)
orchestrator = GenerationOrchestrator(
    BackendFactory(settings), timeout=settings.GENERATION_TIMEOUT_SECONDS
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles app startup/shutdown and resource management"""
    logger.info("application_startup_complete", store_configured=repository.configured)

    yield

    if isinstance(repository, RedisRepository):
        await repository.close()
    logger.info("application_shutdown_complete")


def get_repository() -> ConversationRepository:
    """Returns the conversation storage instance"""
    return repository


def get_orchestrator() -> GenerationOrchestrator:
    """Returns the generation orchestrator"""
    return orchestrator


app = FastAPI(
    title="Chatbot API",
    description="Multi-provider chat completions with per-user conversation history",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


def ok(**data: Any) -> Dict[str, Any]:
    """Success envelope"""
    return {"success": True, "data": jsonable_encoder(data, by_alias=True)}


def failure(status_code: int, error: str, details: Any = None) -> JSONResponse:
    """Failure envelope"""
    ERRORS.inc()
    body: Dict[str, Any] = {"success": False, "error": error}
    if details is not None:
        body["details"] = jsonable_encoder(details)
    return JSONResponse(status_code=status_code, content=body)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Tracks requests and their processing time"""
    logger.info("request_started", method=request.method, path=request.url.path)
    REQUESTS.inc()
    started = time.perf_counter()
    try:
        return await call_next(request)
    except Exception as e:
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise
    finally:
        PROCESSING_TIME.inc(time.perf_counter() - started)


@app.exception_handler(ChatbotError)
async def chatbot_error_handler(request: Request, exc: ChatbotError) -> JSONResponse:
    """Renders domain errors with their status code"""
    return failure(exc.status_code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Reports malformed requests as 400 with field-level detail"""
    logger.warning("request_validation_failed", path=request.url.path, errors=len(exc.errors()))
    return failure(400, ValidationError.public_message, exc.errors())


def select_model(request: Request, requested: Optional[str]) -> str:
    """Requested model, else the client's saved selection, else the default"""
    if requested:
        return requested
    saved = request.cookies.get(SELECTED_MODEL_COOKIE)
    if saved:
        try:
            return SavedModel.model_validate_json(saved).id
        except PydanticValidationError as e:
            logger.warning("saved_model_parse_error", error=str(e))
    return DEFAULT_MODEL


async def observe_stream(
    events: AsyncIterator[StreamEvent], user_id: Optional[str], model: str
) -> AsyncIterator[StreamEvent]:
    """Counts events and logs conversation metrics when a run finishes"""
    async for event in events:
        STREAM_EVENTS.labels(type=event.type).inc()
        if isinstance(event, Finished):
            tokens_used = event.usage.total_tokens or 0
            TOKENS_USED.inc(tokens_used)
            logger.info(
                "conversation_completed",
                conversation_id=event.conversation_id,
                user_id=user_id,
                model=model,
                tokens_used=tokens_used,
                finish_reason=event.finish_reason,
            )
        yield event


@app.post("/chat")
async def chat(
    body: ChatRequest,
    request: Request,
    user_id: Optional[str] = Depends(get_current_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """
    Runs one generation turn.
    Streams newline-delimited events unless ``stream`` is false.
    """
    selected_model = select_model(request, body.model)
    handle = resolve(selected_model)
    messages = normalize(body.messages, body.system_prompt)
    temperature = settings.DEFAULT_TEMPERATURE if body.temperature is None else body.temperature
    max_tokens = body.max_tokens or settings.DEFAULT_MAX_TOKENS

    logger.info(
        "chat_requested",
        user_id=user_id,
        conversation_id=body.conversation_id,
        model=selected_model,
        provider=handle.provider.value,
        stream=body.stream,
        message_count=len(body.messages),
    )

    if body.stream:
        events = orchestrator.stream_generate(
            handle, messages, temperature, max_tokens, body.conversation_id
        )
        return StreamingResponse(
            encode_stream(observe_stream(events, user_id, selected_model)),
            media_type="text/plain; charset=utf-8",
        )

    result = await orchestrator.generate(
        handle, messages, temperature, max_tokens, body.conversation_id
    )
    TOKENS_USED.inc(result.usage.total_tokens or 0)
    return ok(
        message={"role": "assistant", "content": result.content},
        conversationId=body.conversation_id,
        model=selected_model,
        usage=result.usage,
    )


@app.get("/chat")
async def chat_info():
    """Describes the chat capability"""
    return ok(
        message="Chatbot API is running",
        availableModels={provider.value: model for provider, model in DEFAULT_MODELS.items()},
        systemPrompts=list(SYSTEM_PROMPTS),
        endpoints={
            "chat": "/chat",
            "conversations": "/conversations",
            "metrics": "/metrics",
        },
    )


@app.get("/conversations")
async def list_conversations(
    limit: int = 20,
    offset: int = 0,
    user_id: str = Depends(require_user_id),
    repository: ConversationRepository = Depends(get_repository),
):
    """Gets the user's conversations newest first"""
    try:
        page = await repository.list_conversations(user_id, limit=limit, offset=offset)
        return ok(conversations=page.items, total=page.total, hasMore=page.has_more)
    except ChatbotError:
        raise
    except Exception as e:
        logger.error("list_conversations_error", user_id=user_id, error=str(e))
        raise ChatbotError("Failed to retrieve conversations")


@app.post("/conversations")
async def create_conversation(
    body: CreateConversationRequest,
    user_id: str = Depends(require_user_id),
    repository: ConversationRepository = Depends(get_repository),
):
    """Starts a new conversation"""
    try:
        conversation = await repository.create_conversation(
            user_id, body.title, body.model, body.system_prompt
        )
        return ok(conversation=conversation)
    except ChatbotError:
        raise
    except Exception as e:
        logger.error("create_conversation_error", user_id=user_id, error=str(e))
        raise ChatbotError("Failed to create conversation")


@app.delete("/conversations")
async def delete_conversations(
    ids: str = "",
    user_id: str = Depends(require_user_id),
    repository: ConversationRepository = Depends(get_repository),
):
    """Deletes several conversations given as ``ids=a,b,c``"""
    conversation_ids = [conversation_id.strip() for conversation_id in ids.split(",") if conversation_id.strip()]
    if not conversation_ids:
        raise ValidationError("No conversation IDs provided")
    try:
        deleted_count = await repository.delete_conversations(user_id, dict.fromkeys(conversation_ids))
        return ok(deletedCount=deleted_count)
    except ChatbotError:
        raise
    except Exception as e:
        logger.error("delete_conversations_error", user_id=user_id, error=str(e))
        raise ChatbotError("Failed to delete conversations")


@app.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    user_id: str = Depends(require_user_id),
    repository: ConversationRepository = Depends(get_repository),
):
    """Retrieves a specific conversation by its ID"""
    try:
        conversation = await repository.get_conversation(user_id, conversation_id)
    except ChatbotError:
        raise
    except Exception as e:
        logger.error("get_conversation_error", conversation_id=conversation_id, error=str(e))
        raise ChatbotError("Failed to retrieve conversation")
    if conversation is None:
        raise NotFoundError()
    return ok(conversation=conversation)


@app.put("/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    body: UpdateConversationRequest,
    user_id: str = Depends(require_user_id),
    repository: ConversationRepository = Depends(get_repository),
):
    """Replaces the title and/or the whole message list"""
    messages = None
    if body.messages is not None:
        messages = [
            Message(role=message.role, content=message.content, timestamp=message.timestamp or utcnow())
            for message in body.messages
        ]
    try:
        conversation = await repository.replace_conversation(
            user_id, conversation_id, title=body.title, messages=messages
        )
        return ok(conversation=conversation)
    except ChatbotError:
        raise
    except Exception as e:
        logger.error("update_conversation_error", conversation_id=conversation_id, error=str(e))
        raise ChatbotError("Failed to update conversation")


@app.patch("/conversations/{conversation_id}")
async def add_message(
    conversation_id: str,
    body: AddMessageRequest,
    user_id: str = Depends(require_user_id),
    repository: ConversationRepository = Depends(get_repository),
):
    """Appends one message to a conversation"""
    message = Message(role=body.role, content=body.content)
    try:
        conversation = await repository.append_message(user_id, conversation_id, message)
        return ok(conversation=conversation, addedMessage=message)
    except ChatbotError:
        raise
    except Exception as e:
        logger.error("add_message_error", conversation_id=conversation_id, error=str(e))
        raise ChatbotError("Failed to add message")


@app.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    user_id: str = Depends(require_user_id),
    repository: ConversationRepository = Depends(get_repository),
):
    """Deletes one conversation"""
    try:
        deleted = await repository.delete_conversation(user_id, conversation_id)
    except ChatbotError:
        raise
    except Exception as e:
        logger.error("delete_conversation_error", conversation_id=conversation_id, error=str(e))
        raise ChatbotError("Failed to delete conversation")
    return ok(deleted=deleted)


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")
