"""
Chat session lifecycle against the realtime database.
"""

from .sessions import (
    ChatService,
    ChatSessionInactive,
    ChatSessionNotFound,
    MessageRateLimited,
)

__all__ = [
    "ChatService",
    "ChatSessionInactive",
    "ChatSessionNotFound",
    "MessageRateLimited",
]
