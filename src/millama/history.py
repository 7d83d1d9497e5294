from __future__ import annotations

from collections import deque
from collections.abc import Iterable

from .model import Message


class HistoryStore:
    """Bounded, per-user message history (oldest evicted first)."""

    def __init__(self, *, limit: int) -> None:
        if limit < 1:
            raise ValueError("history limit must be at least 1")
        self._limit = limit
        self._by_user: dict[int, deque[Message]] = {}

    @property
    def limit(self) -> int:
        return self._limit

    def _history(self, user_id: int) -> deque[Message]:
        history = self._by_user.get(user_id)
        if history is None:
            history = deque(maxlen=self._limit)
            self._by_user[user_id] = history
        return history

    def append(self, user_id: int, message: Message) -> None:
        self._history(user_id).append(message)

    def extend(self, user_id: int, messages: Iterable[Message]) -> None:
        self._history(user_id).extend(messages)

    def snapshot(self, user_id: int) -> tuple[Message, ...]:
        history = self._by_user.get(user_id)
        if history is None:
            return ()
        return tuple(history)

