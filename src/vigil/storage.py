"""
Conversation history storage.

The classifier reads the most recent turns of a session as context;
the orchestrator appends the user and assistant turns for every message.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Literal

from vigil.core.ledger import utc_now

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class ConversationTurn:
    """One message in a session."""

    role: Role
    content: str
    timestamp: str = field(default_factory=utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }


class ConversationStore(ABC):
    """Stores conversation turns per session."""

    @abstractmethod
    async def add_turn(self, session_id: str, turn: ConversationTurn) -> None:
        ...

    @abstractmethod
    async def recent_turns(self, session_id: str, limit: int) -> list[ConversationTurn]:
        """Return up to ``limit`` turns, oldest first."""
        ...


class InMemoryConversationStore(ConversationStore):
    """Keeps a bounded window of turns for each session."""

    def __init__(self, max_turns_per_session: int = 200) -> None:
        self._max_turns = max_turns_per_session
        self._turns: dict[str, deque[ConversationTurn]] = defaultdict(
            lambda: deque(maxlen=self._max_turns)
        )
        self._lock = asyncio.Lock()

    async def add_turn(self, session_id: str, turn: ConversationTurn) -> None:
        async with self._lock:
            self._turns[session_id].append(turn)

    async def recent_turns(self, session_id: str, limit: int) -> list[ConversationTurn]:
        if limit <= 0:
            return []
        async with self._lock:
            turns = list(self._turns.get(session_id, ()))
        return turns[-limit:]
