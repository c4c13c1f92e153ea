"""Conversation memory."""
from shopassist.memory.manager import ConversationManager, Turn

__all__ = ["ConversationManager", "Turn"]
