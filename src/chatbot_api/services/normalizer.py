"""Builds the message sequence sent to a backend."""

from typing import Dict, List, Optional, Sequence

from ..domain.errors import ValidationError
from ..domain.models import Message, Role

# Chatbot personalities; only the default one is applied automatically
SYSTEM_PROMPTS: Dict[str, str] = {
    "default": (
        "You are a helpful, harmless, and honest AI assistant. Provide accurate, "
        "detailed, and well-structured responses to user queries."
    ),
    "creative": (
        "You are a creative and imaginative AI assistant. Help users with creative "
        "tasks, brainstorming, and innovative solutions."
    ),
    "technical": (
        "You are a technical AI assistant specializing in programming, engineering, "
        "and technical problem-solving. Provide precise, detailed technical guidance."
    ),
    "analytical": (
        "You are an analytical AI assistant focused on data analysis, research, and "
        "logical reasoning. Provide thorough, evidence-based responses."
    ),
    "casual": (
        "You are a friendly and casual AI assistant. Engage in natural, conversational "
        "dialogue while being helpful and informative."
    ),
}

DEFAULT_SYSTEM_PROMPT = SYSTEM_PROMPTS["default"]


def normalize(history: Sequence[Message], system_prompt: Optional[str] = None) -> List[Message]:
    """Prepend one system message to the caller's history.

    The history is passed through untouched: no deduplication and no
    reordering, even if it already contains system messages.
    """
    if not history:
        raise ValidationError(
            details=[{"loc": ["messages"], "msg": "At least one message is required"}]
        )
    system_message = Message(role=Role.SYSTEM, content=system_prompt or DEFAULT_SYSTEM_PROMPT)
    return [system_message, *history]
