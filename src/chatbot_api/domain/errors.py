"""Error taxonomy shared by the services, repositories and the HTTP layer."""

from typing import Any, Optional


class ChatbotError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Any = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.details = details


class ValidationError(ChatbotError):
    """Malformed or out-of-range input."""

    status_code = 400
    public_message = "Invalid request format"


class AuthError(ChatbotError):
    """No resolvable user identity."""

    status_code = 401
    public_message = "Unauthorized"


class NotFoundError(ChatbotError):
    """Conversation id absent for this user."""

    status_code = 404
    public_message = "Conversation not found"


class ProviderError(ChatbotError):
    """Backend failed before producing a usable result."""

    public_message = "Failed to generate response"


class StoreCorruptionError(ChatbotError):
    """Stored conversation data does not match the record schema."""

    public_message = "Stored conversation is corrupted"


class ConcurrentUpdateError(ChatbotError):
    """Conditional write lost against concurrent writers too many times."""

    public_message = "Conversation was modified concurrently"
