"""Per-document conversation history."""

from .service import ConversationManager

__all__ = ["ConversationManager"]
