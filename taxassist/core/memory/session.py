"""In-memory conversation state keyed by conversation id.

Each conversation owns its own slot; nothing is shared between ids. The
durable copy lives in the HistoryStore; this map only saves a read on
every turn while the process is up.
"""

from __future__ import annotations

import structlog

from taxassist.core.types import Turn

logger = structlog.get_logger()


class SessionState:
    """Mapping of conversation id -> current history."""

    def __init__(self) -> None:
        self._histories: dict[str, list[Turn]] = {}

    def get(self, conversation_id: str) -> list[Turn]:
        """Copy of the in-memory history ([] if the id is unknown)."""
        return list(self._histories.get(conversation_id, []))

    def set(self, conversation_id: str, history: list[Turn]) -> None:
        self._histories[conversation_id] = list(history)

    def clear(self, conversation_id: str) -> None:
        """Forget a conversation's in-memory history."""
        if self._histories.pop(conversation_id, None) is not None:
            logger.info("session_cleared", conversation_id=conversation_id)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._histories

    @property
    def session_count(self) -> int:
        """Number of conversations held in memory."""
        return len(self._histories)
