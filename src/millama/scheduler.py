from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import anyio

from .logging import get_logger
from .model import DebounceTrigger

if TYPE_CHECKING:
    from anyio.abc import TaskGroup
else:
    TaskGroup = object

logger = get_logger(__name__)


@dataclass(slots=True)
class _PendingTimer:
    generation: int
    deadline: float
    cancel_scope: anyio.CancelScope | None = None


class DebounceScheduler:
    """Per-user timers that coalesce message bursts into a single trigger.

    Each `arm` replaces the user's pending timer, so a trigger fires
    `debounce_s` after the last message of a burst. Timers of different
    users are independent.
    """

    def __init__(
        self,
        *,
        task_group: TaskGroup,
        debounce_s: float,
        fire: Callable[[DebounceTrigger], Awaitable[None]],
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._task_group = task_group
        self._debounce_s = max(0.0, debounce_s)
        self._fire = fire
        self._clock = clock
        self._sleep = sleep
        self._pending: dict[int, _PendingTimer] = {}
        self._generations: dict[int, int] = {}

    @property
    def debounce_s(self) -> float:
        return self._debounce_s

    def deadline(self, user_id: int) -> float | None:
        pending = self._pending.get(user_id)
        return pending.deadline if pending is not None else None

    def is_pending(self, user_id: int) -> bool:
        return user_id in self._pending

    def arm(self, user_id: int) -> float:
        self.cancel(user_id)
        generation = self._generations.get(user_id, 0) + 1
        self._generations[user_id] = generation
        pending = _PendingTimer(
            generation=generation, deadline=self._clock() + self._debounce_s
        )
        self._pending[user_id] = pending
        logger.debug(
            "debounce.armed",
            user_id=user_id,
            generation=generation,
            debounce_s=self._debounce_s,
        )
        self._task_group.start_soon(self._run_timer, user_id, pending)
        return pending.deadline

    def cancel(self, user_id: int) -> None:
        pending = self._pending.pop(user_id, None)
        if pending is None:
            return
        if pending.cancel_scope is not None:
            pending.cancel_scope.cancel()
        logger.debug(
            "debounce.cancelled", user_id=user_id, generation=pending.generation
        )

    def cancel_all(self) -> None:
        for user_id in list(self._pending):
            self.cancel(user_id)

    async def _run_timer(self, user_id: int, pending: _PendingTimer) -> None:
        with anyio.CancelScope() as scope:
            pending.cancel_scope = scope
            if self._pending.get(user_id) is not pending:
                return
            await self._sleep(max(0.0, pending.deadline - self._clock()))
        if scope.cancelled_caught or self._pending.get(user_id) is not pending:
            return
        self._pending.pop(user_id, None)
        trigger = DebounceTrigger(
            user_id=user_id,
            arm_generation=pending.generation,
            fired_at=self._clock(),
        )
        logger.debug(
            "debounce.fired", user_id=user_id, generation=pending.generation
        )
        await self._fire(trigger)
