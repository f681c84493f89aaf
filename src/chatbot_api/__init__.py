"""Multi-provider chat-completion API with per-user conversation storage."""
