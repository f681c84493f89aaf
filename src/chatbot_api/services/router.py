"""Model identifier to backend resolution."""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Tuple


class Provider(str, Enum):
    """Backend families that can serve a chat completion."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    GROQ = "groq"
    XAI = "xai"


DEFAULT_MODELS: Dict[Provider, str] = {
    Provider.OPENAI: "gpt-4o-mini",
    Provider.ANTHROPIC: "claude-3-haiku-20240307",
    Provider.GOOGLE: "gemini-1.5-flash",
    Provider.GROQ: "llama-3.1-8b-instant",
    Provider.XAI: "grok-beta",
}

DEFAULT_PROVIDER = Provider.OPENAI
DEFAULT_MODEL = DEFAULT_MODELS[DEFAULT_PROVIDER]


@dataclass(frozen=True)
class BackendHandle:
    """A resolved backend: which provider, and the model id to ask it for."""

    provider: Provider
    model_id: str


@dataclass(frozen=True)
class RoutingRule:
    """Predicate over a model identifier and the provider it selects."""

    name: str
    matches: Callable[[str], bool]
    provider: Provider


def _prefix_or_substring(prefix: str, marker: str) -> Callable[[str], bool]:
    return lambda model_id: model_id.startswith(prefix) or marker in model_id


def _any_substring(*markers: str) -> Callable[[str], bool]:
    return lambda model_id: any(marker in model_id for marker in markers)


# Order matters: ambiguous ids go to the first matching rule.
ROUTING_RULES: Tuple[RoutingRule, ...] = (
    RoutingRule("openai", _prefix_or_substring("gpt-", "openai"), Provider.OPENAI),
    RoutingRule("anthropic", _prefix_or_substring("claude-", "anthropic"), Provider.ANTHROPIC),
    RoutingRule("google", _prefix_or_substring("gemini-", "google"), Provider.GOOGLE),
    RoutingRule("groq", _any_substring("llama", "groq"), Provider.GROQ),
    RoutingRule("xai", _any_substring("grok", "xai"), Provider.XAI),
)


def resolve(model_id: str) -> BackendHandle:
    """Map a model identifier to a backend. Unknown ids fall back to the default model."""
    for rule in ROUTING_RULES:
        if rule.matches(model_id):
            return BackendHandle(provider=rule.provider, model_id=model_id)
    return BackendHandle(provider=DEFAULT_PROVIDER, model_id=DEFAULT_MODEL)
