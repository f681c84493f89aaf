"""Provider integrations exposing a uniform incremental generation interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple, Union

import google.generativeai as genai
import structlog
from google.api_core import exceptions
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from ..config import Settings
from ..domain.errors import ProviderError
from ..domain.models import Message, Role, Usage
from .router import BackendHandle, Provider

logger = structlog.get_logger()


@dataclass
class TextDelta:
    """A piece of text produced by the backend."""

    text: str


@dataclass
class Completion:
    """End-of-generation accounting reported by the backend."""

    usage: Usage = field(default_factory=Usage)
    finish_reason: Optional[str] = None


BackendOutput = Union[TextDelta, Completion]


class ChatBackend(ABC):
    """A model behind one provider API."""

    provider: Provider

    def __init__(self, model_id: str, api_key: Optional[str] = None) -> None:
        self.model_id = model_id
        self.api_key = api_key or None

    @abstractmethod
    def stream(
        self, messages: Sequence[Message], temperature: float, max_tokens: int
    ) -> AsyncIterator[BackendOutput]:
        """Yield text deltas in emission order, then at most one Completion."""


def _message_text(content: Any) -> str:
    """Flatten LangChain chunk content, which may be a list of typed blocks."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _to_langchain(messages: Sequence[Message]) -> List[BaseMessage]:
    converted: List[BaseMessage] = []
    for message in messages:
        if message.role is Role.SYSTEM:
            converted.append(SystemMessage(content=message.content))
        elif message.role is Role.ASSISTANT:
            converted.append(AIMessage(content=message.content))
        else:
            converted.append(HumanMessage(content=message.content))
    return converted


class LangChainBackend(ChatBackend):
    """Backend driven through a LangChain chat model's async stream."""

    @abstractmethod
    def _chat_model(self, temperature: float, max_tokens: int) -> BaseChatModel:
        """Build the chat model for one request."""

    async def stream(
        self, messages: Sequence[Message], temperature: float, max_tokens: int
    ) -> AsyncIterator[BackendOutput]:
        model = self._chat_model(temperature, max_tokens)
        totals: Dict[str, int] = {}
        finish_reason = None

        async for chunk in model.astream(_to_langchain(messages)):
            text = _message_text(chunk.content)
            if text:
                yield TextDelta(text)

            # Providers split usage across chunks (input first, output last)
            usage_metadata = getattr(chunk, "usage_metadata", None)
            if usage_metadata:
                for key in ("input_tokens", "output_tokens", "total_tokens"):
                    totals[key] = totals.get(key, 0) + (usage_metadata.get(key) or 0)

            metadata = chunk.response_metadata or {}
            reason = metadata.get("finish_reason") or metadata.get("stop_reason")
            if reason:
                finish_reason = reason

        usage = Usage()
        if totals:
            usage = Usage(
                prompt_tokens=totals.get("input_tokens"),
                completion_tokens=totals.get("output_tokens"),
                total_tokens=totals.get("total_tokens"),
            )
        yield Completion(usage=usage, finish_reason=finish_reason)


class OpenAIBackend(LangChainBackend):
    """OpenAI chat completions."""

    provider = Provider.OPENAI

    def __init__(self, model_id: str, api_key: Optional[str] = None, base_url: Optional[str] = None):
        super().__init__(model_id, api_key)
        self.base_url = base_url

    def _chat_model(self, temperature: float, max_tokens: int) -> BaseChatModel:
        from langchain_openai import ChatOpenAI

        kwargs: Dict[str, Any] = {
            "model": self.model_id,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream_usage": True,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.base_url:
            kwargs["base_url"] = self.base_url
        return ChatOpenAI(**kwargs)


class OpenAICompatibleBackend(OpenAIBackend):
    """Providers speaking the OpenAI wire protocol at their own base URL."""

    def __init__(self, provider: Provider, model_id: str, api_key: Optional[str], base_url: str):
        super().__init__(model_id, api_key, base_url)
        self.provider = provider


class AnthropicBackend(LangChainBackend):
    """Anthropic messages API."""

    provider = Provider.ANTHROPIC

    def _chat_model(self, temperature: float, max_tokens: int) -> BaseChatModel:
        from langchain_anthropic import ChatAnthropic

        kwargs: Dict[str, Any] = {
            "model": self.model_id,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        return ChatAnthropic(**kwargs)


def _split_system(messages: Sequence[Message]) -> Tuple[Optional[str], List[Dict[str, Any]]]:
    """Gemini takes system text separately and calls the assistant role "model"."""
    system_parts = []
    contents = []
    for message in messages:
        if message.role is Role.SYSTEM:
            system_parts.append(message.content)
        else:
            role = "model" if message.role is Role.ASSISTANT else "user"
            contents.append({"role": role, "parts": [message.content]})
    system = "\n\n".join(system_parts) or None
    return system, contents


def _gemini_chunk_text(chunk: Any) -> str:
    if not chunk.candidates:
        return ""
    content = chunk.candidates[0].content
    return "".join(getattr(part, "text", "") for part in content.parts)


class GeminiBackend(ChatBackend):
    """Google Gemini through the generativeai SDK.

    The SDK holds its credentials process-wide; they are set once by
    ``BackendFactory``.
    """

    provider = Provider.GOOGLE

    async def stream(
        self, messages: Sequence[Message], temperature: float, max_tokens: int
    ) -> AsyncIterator[BackendOutput]:
        system, contents = _split_system(messages)
        model = genai.GenerativeModel(self.model_id, system_instruction=system)
        config = genai.GenerationConfig(temperature=temperature, max_output_tokens=max_tokens)

        usage = Usage()
        finish_reason = None
        try:
            response = await model.generate_content_async(
                contents, generation_config=config, stream=True
            )
            async for chunk in response:
                text = _gemini_chunk_text(chunk)
                if text:
                    yield TextDelta(text)

                metadata = getattr(chunk, "usage_metadata", None)
                if metadata and metadata.total_token_count:
                    usage = Usage(
                        prompt_tokens=metadata.prompt_token_count,
                        completion_tokens=metadata.candidates_token_count,
                        total_tokens=metadata.total_token_count,
                    )
                if chunk.candidates and chunk.candidates[0].finish_reason:
                    finish_reason = chunk.candidates[0].finish_reason.name
        except exceptions.ResourceExhausted as e:
            logger.warning("gemini_quota_exhausted", model=self.model_id)
            raise ProviderError("Gemini quota exhausted") from e

        yield Completion(usage=usage, finish_reason=finish_reason)


class BackendFactory:
    """Builds the backend for a resolved handle using configured credentials."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        if settings.GEMINI_API_KEY:
            genai.configure(api_key=settings.GEMINI_API_KEY)
            logger.info("gemini_configured")

    def __call__(self, handle: BackendHandle) -> ChatBackend:
        settings = self.settings
        if handle.provider is Provider.ANTHROPIC:
            return AnthropicBackend(handle.model_id, settings.ANTHROPIC_API_KEY)
        if handle.provider is Provider.GOOGLE:
            return GeminiBackend(handle.model_id)
        if handle.provider is Provider.GROQ:
            return OpenAICompatibleBackend(
                Provider.GROQ, handle.model_id, settings.GROQ_API_KEY, settings.GROQ_BASE_URL
            )
        if handle.provider is Provider.XAI:
            return OpenAICompatibleBackend(
                Provider.XAI, handle.model_id, settings.XAI_API_KEY, settings.XAI_BASE_URL
            )
        return OpenAIBackend(handle.model_id, settings.OPENAI_API_KEY)
