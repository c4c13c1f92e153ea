"""Conversation memory manager for the shop assistant.

Keeps a short, bounded history of (query, response) turns per conversation
in process memory. Conversations expire after a period of inactivity.
"""
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

import structlog

from shopassist import config

logger = structlog.get_logger()


@dataclass
class Turn:
    query: str
    response: str
    created_at: float


@dataclass
class ConversationMemory:
    """Working set of one conversation."""

    conversation_id: str
    turns: Deque[Turn]
    last_touched: float
    created_at: float = field(default=0.0)


class ConversationManager:
    """Manages per-conversation turn history."""

    def __init__(
        self,
        max_turns: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the conversation manager.

        Args:
            max_turns: Turns kept per conversation (default from config)
            ttl_seconds: Inactivity before a conversation expires (default from config)
            clock: Time source, injectable for tests
        """
        self.max_turns = max_turns or config.MEMORY_MAX_TURNS
        self.ttl_seconds = ttl_seconds or config.MEMORY_TTL_SECONDS
        self._clock = clock
        self._conversations: Dict[str, ConversationMemory] = {}
        self._lock = threading.Lock()

    def _get_live(self, conversation_id: str, now: float) -> Optional[ConversationMemory]:
        memory = self._conversations.get(conversation_id)
        if memory is None:
            return None
        if now - memory.last_touched > self.ttl_seconds:
            del self._conversations[conversation_id]
            logger.info("conversation_expired", conversation_id=conversation_id)
            return None
        return memory

    def has_conversation(self, conversation_id: str) -> bool:
        with self._lock:
            return self._get_live(conversation_id, self._clock()) is not None

    def get_recent_turns(self, conversation_id: str, limit: Optional[int] = None) -> List[Turn]:
        """Get the most recent turns, oldest first.

        Args:
            conversation_id: Conversation to read
            limit: Maximum number of turns (defaults to max_turns)

        Returns:
            Turns in chronological order; empty for unknown or expired ids
        """
        with self._lock:
            memory = self._get_live(conversation_id, self._clock())
            if memory is None:
                return []
            turns = list(memory.turns)
        limit = limit or self.max_turns
        return turns[-limit:]

    def add_turn(self, conversation_id: str, query: str, response: str) -> None:
        """Append a turn, creating the conversation on first use."""
        with self._lock:
            now = self._clock()
            memory = self._get_live(conversation_id, now)
            if memory is None:
                memory = ConversationMemory(
                    conversation_id=conversation_id,
                    turns=deque(maxlen=self.max_turns),
                    last_touched=now,
                    created_at=now,
                )
                self._conversations[conversation_id] = memory
                logger.info("conversation_created", conversation_id=conversation_id)
            memory.turns.append(Turn(query=query, response=response, created_at=now))
            memory.last_touched = now
            turn_count = len(memory.turns)

        logger.debug(
            "conversation_turn_added",
            conversation_id=conversation_id,
            turns=turn_count,
        )

    def format_conversation_history(self, conversation_id: str) -> List[Dict[str, str]]:
        """Format recent turns as chat messages for the LLM.

        Returns:
            List of message dictionaries with 'role' and 'content' keys
        """
        history: List[Dict[str, str]] = []
        for turn in self.get_recent_turns(conversation_id):
            history.append({"role": "user", "content": turn.query})
            history.append({"role": "assistant", "content": turn.response})
        return history

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._lock:
            deleted = self._conversations.pop(conversation_id, None) is not None
        if deleted:
            logger.info("conversation_deleted", conversation_id=conversation_id)
        return deleted

    def expire_stale(self) -> int:
        """Drop every conversation past its inactivity timeout.

        Returns:
            Number of conversations removed
        """
        with self._lock:
            now = self._clock()
            stale = [
                cid for cid, memory in self._conversations.items()
                if now - memory.last_touched > self.ttl_seconds
            ]
            for cid in stale:
                del self._conversations[cid]
        if stale:
            logger.info("conversations_expired", count=len(stale))
        return len(stale)

    def count(self) -> int:
        with self._lock:
            return len(self._conversations)
