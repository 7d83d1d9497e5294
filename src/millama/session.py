"""Per-user draft lifecycle: debounce trigger -> draft -> approval -> send."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol

import anyio

from .gateway import ApprovalGateway
from .history import HistoryStore
from .llm import DraftGenerator
from .logging import get_logger
from .model import (
    DebounceTrigger,
    Decision,
    DecisionOutcome,
    Draft,
    DraftFailure,
    Message,
    ModelParams,
    SendFailure,
    SessionState,
    TrackedUser,
    TransportFailure,
    make_session_token,
    parse_session_token,
)
from .scheduler import DebounceScheduler

if TYPE_CHECKING:
    from anyio.abc import TaskGroup
else:
    TaskGroup = object

logger = get_logger(__name__)

MAX_SEND_ATTEMPTS = 2


class MessageSender(Protocol):
    async def send_message(self, user_id: int, text: str) -> None: ...


def compose_system_prompt(
    user_prompt: str,
    *,
    base_prompt: str | None = None,
    guidance: str | None = None,
) -> str:
    parts: list[str] = []
    if base_prompt:
        parts.append(base_prompt)
    parts.append(user_prompt)
    prompt = "\n\n".join(parts)
    if guidance:
        prompt = f"{prompt}\n\nAdditional guidance: {guidance}"
    return prompt


@dataclass(frozen=True, slots=True)
class _Cycle:
    generation: int
    snapshot: tuple[Message, ...]
    guidance: str | None = None


@dataclass(slots=True)
class DraftSession:
    user: TrackedUser
    state: SessionState = SessionState.IDLE
    generation_id: int = 0
    pending_messages_since_last_draft: int = 0
    current_draft_text: str | None = None
    debounce_deadline: float | None = None
    session_token: str | None = None
    draft_snapshot: tuple[Message, ...] = ()
    in_flight_generation: int | None = None
    queued_cycle: _Cycle | None = field(default=None, repr=False)
    send_attempts: int = 0

    @property
    def in_flight(self) -> bool:
        return self.in_flight_generation is not None


TransitionHook = Callable[[DraftSession, SessionState, SessionState], None]


class DraftSessionManager:
    """Registry of tracked users and the state machine driving their drafts.

    Sessions are created once, at construction, and only ever mutated through
    this class. State changes happen synchronously between awaits, so every
    decision about a user's cycle is atomic with respect to other tasks on the
    same event loop; the awaits that follow only notify collaborators.
    """

    def __init__(
        self,
        *,
        users: Iterable[TrackedUser],
        history: HistoryStore,
        draft_client: DraftGenerator,
        gateway: ApprovalGateway,
        sender: MessageSender,
        model_params: ModelParams,
        task_group: TaskGroup,
        debounce_s: float,
        base_system_prompt: str | None = None,
        self_user_id: int = 0,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
        on_transition: TransitionHook | None = None,
    ) -> None:
        self._sessions: dict[int, DraftSession] = {}
        for user in users:
            if user.id in self._sessions:
                raise ValueError(f"duplicate tracked user id {user.id}")
            self._sessions[user.id] = DraftSession(user=user)
        self._history = history
        self._draft_client = draft_client
        self._gateway = gateway
        self._sender = sender
        self._model_params = model_params
        self._task_group = task_group
        self._base_system_prompt = base_system_prompt
        self._self_user_id = self_user_id
        self._wall_clock = wall_clock
        self._on_transition = on_transition
        self._scheduler = DebounceScheduler(
            task_group=task_group,
            debounce_s=debounce_s,
            fire=self.handle_trigger,
            clock=clock,
            sleep=sleep,
        )

    @property
    def sessions(self) -> Mapping[int, DraftSession]:
        return MappingProxyType(self._sessions)

    def session(self, user_id: int) -> DraftSession | None:
        return self._sessions.get(user_id)

    def is_tracked(self, user_id: int) -> bool:
        return user_id in self._sessions

    def close(self) -> None:
        self._scheduler.cancel_all()

    def _transition(self, session: DraftSession, state: SessionState) -> None:
        previous = session.state
        session.state = state
        logger.debug(
            "session.transition",
            user_id=session.user.id,
            generation=session.generation_id,
            previous=previous.value,
            state=state.value,
        )
        if self._on_transition is not None:
            self._on_transition(session, previous, state)

    async def _notify(
        self, method: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any
    ) -> Any:
        try:
            return await method(*args, **kwargs)
        except Exception as exc:
            logger.error(
                "gateway.call_failed",
                method=getattr(method, "__name__", repr(method)),
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

    def handle_message(self, user_id: int, message: Message) -> bool:
        session = self._sessions.get(user_id)
        if session is None:
            logger.debug("message.untracked", user_id=user_id)
            return False
        self._history.append(user_id, message)
        if not message.is_incoming:
            logger.debug("message.outgoing_recorded", user_id=user_id)
            return True
        session.pending_messages_since_last_draft += 1
        session.debounce_deadline = self._scheduler.arm(user_id)
        logger.debug(
            "message.incoming",
            user_id=user_id,
            pending=session.pending_messages_since_last_draft,
            state=session.state.value,
        )
        return True

    def handle_incoming(
        self, user_id: int, text: str, timestamp: float | None = None
    ) -> bool:
        message = Message(
            sender_id=user_id,
            text=text,
            timestamp=self._wall_clock() if timestamp is None else timestamp,
            direction="incoming",
        )
        return self.handle_message(user_id, message)

    async def handle_trigger(self, trigger: DebounceTrigger) -> None:
        session = self._sessions.get(trigger.user_id)
        if session is None:
            return
        session.debounce_deadline = None
        snapshot = self._history.snapshot(trigger.user_id)
        logger.info(
            "draft.triggered",
            user_id=trigger.user_id,
            user=session.user.name,
            history_len=len(snapshot),
            arm_generation=trigger.arm_generation,
        )
        await self._open_cycle(session, snapshot, guidance=None)

    async def retry(self, user_id: int) -> bool:
        session = self._sessions.get(user_id)
        if session is None:
            return False
        if session.state is not SessionState.IDLE:
            logger.info("draft.retry_ignored", user_id=user_id, state=session.state.value)
            return False
        self._scheduler.cancel(user_id)
        session.debounce_deadline = None
        logger.info("draft.retry", user_id=user_id)
        return await self._open_cycle(
            session, self._history.snapshot(user_id), guidance=None
        )

    async def _open_cycle(
        self,
        session: DraftSession,
        snapshot: tuple[Message, ...],
        *,
        guidance: str | None,
    ) -> bool:
        session.generation_id += 1
        generation = session.generation_id
        superseded_token: str | None = None
        if session.state is SessionState.AWAITING_APPROVAL:
            superseded_token = session.session_token
            self._supersede(session)

        started = False
        if not snapshot:
            logger.warning(
                "draft.empty_history", user_id=session.user.id, generation=generation
            )
            if not session.in_flight and session.state is not SessionState.SENT:
                self._transition(session, SessionState.IDLE)
        elif session.in_flight or session.state is SessionState.SENT:
            # Held until the draft call or the approved send resolves.
            session.queued_cycle = _Cycle(generation, snapshot, guidance)
            logger.info(
                "draft.queued",
                user_id=session.user.id,
                generation=generation,
                in_flight_generation=session.in_flight_generation,
                state=session.state.value,
            )
            started = True
        else:
            self._start(session, _Cycle(generation, snapshot, guidance))
            started = True

        if superseded_token is not None:
            await self._notify(
                self._gateway.withdraw_draft, session.user, superseded_token
            )
        return started

    def _supersede(self, session: DraftSession) -> None:
        logger.info(
            "draft.superseded",
            user_id=session.user.id,
            token=session.session_token,
        )
        session.current_draft_text = None
        session.session_token = None
        session.send_attempts = 0
        self._transition(session, SessionState.SUPERSEDED)
        self._transition(session, SessionState.IDLE)

    def _start(self, session: DraftSession, cycle: _Cycle) -> None:
        session.in_flight_generation = cycle.generation
        session.pending_messages_since_last_draft = 0
        session.current_draft_text = None
        session.session_token = None
        session.draft_snapshot = cycle.snapshot
        session.send_attempts = 0
        self._transition(session, SessionState.DRAFTING)
        self._task_group.start_soon(self._run_draft, session, cycle)

    async def _run_draft(self, session: DraftSession, cycle: _Cycle) -> None:
        user = session.user
        system_prompt = compose_system_prompt(
            user.system_prompt,
            base_prompt=self._base_system_prompt,
            guidance=cycle.guidance,
        )
        logger.debug(
            "draft.request",
            user_id=user.id,
            generation=cycle.generation,
            history_len=len(cycle.snapshot),
            rephrase=cycle.guidance is not None,
        )
        try:
            result: Draft | DraftFailure = await self._draft_client.generate(
                system_prompt, cycle.snapshot, self._model_params
            )
        except Exception as exc:
            logger.exception(
                "draft.client_crashed", user_id=user.id, generation=cycle.generation
            )
            result = TransportFailure(message=f"{exc.__class__.__name__}: {exc}")

        session.in_flight_generation = None
        queued, session.queued_cycle = session.queued_cycle, None

        if cycle.generation != session.generation_id:
            logger.info(
                "draft.discarded_stale",
                user_id=user.id,
                generation=cycle.generation,
                current_generation=session.generation_id,
            )
            if queued is not None:
                self._start(session, queued)
            elif session.state is SessionState.DRAFTING:
                self._transition(session, SessionState.IDLE)
            return

        if isinstance(result, DraftFailure):
            logger.warning(
                "draft.failed",
                user_id=user.id,
                generation=cycle.generation,
                kind=result.kind,
                error=result.message,
            )
            self._transition(session, SessionState.IDLE)
            await self._notify(self._gateway.notify_failure, user, result)
            return

        token = make_session_token(user.id, cycle.generation)
        session.current_draft_text = result.text
        session.session_token = token
        self._transition(session, SessionState.AWAITING_APPROVAL)
        logger.info(
            "draft.ready", user_id=user.id, user=user.name, generation=cycle.generation
        )
        delivered = await self._notify(
            self._gateway.present_draft, user, result.text, token
        )
        if session.generation_id != cycle.generation:
            # Superseded while the draft was being presented.
            await self._notify(self._gateway.withdraw_draft, user, token)
            return
        if not delivered and session.session_token == token:
            logger.error("draft.present_failed", user_id=user.id, generation=cycle.generation)
            session.current_draft_text = None
            session.session_token = None
            self._transition(session, SessionState.IDLE)

    async def decide(self, decision: Decision) -> DecisionOutcome:
        parsed = parse_session_token(decision.session_token)
        session = self._sessions.get(parsed[0]) if parsed is not None else None
        if (
            session is None
            or session.state is not SessionState.AWAITING_APPROVAL
            or session.session_token != decision.session_token
        ):
            logger.info(
                "decision.stale",
                token=decision.session_token,
                decision=decision.kind,
            )
            return DecisionOutcome.STALE

        if decision.kind == "approve":
            return await self._approve(session)
        if decision.kind == "reject":
            return await self._reject(session)
        return await self._rephrase(session, decision.guidance)

    async def _approve(self, session: DraftSession) -> DecisionOutcome:
        user = session.user
        token = session.session_token
        text = session.current_draft_text
        assert token is not None and text is not None
        session.session_token = None
        session.send_attempts += 1
        self._transition(session, SessionState.SENT)
        logger.info("draft.approved", user_id=user.id, attempt=session.send_attempts)
        try:
            await self._sender.send_message(user.id, text)
        except Exception as exc:
            error = (
                str(exc)
                if isinstance(exc, SendFailure)
                else f"{exc.__class__.__name__}: {exc}"
            )
            queued, session.queued_cycle = session.queued_cycle, None
            superseded = queued is not None
            can_retry = not superseded and session.send_attempts < MAX_SEND_ATTEMPTS
            logger.error(
                "draft.send_failed",
                user_id=user.id,
                error=error,
                error_type=exc.__class__.__name__,
                can_retry=can_retry,
                superseded=superseded,
            )
            if can_retry:
                session.session_token = token
                self._transition(session, SessionState.AWAITING_APPROVAL)
            else:
                session.current_draft_text = None
                session.send_attempts = 0
                self._transition(session, SessionState.IDLE)
                if queued is not None:
                    self._start_held(session, queued)
            await self._notify(
                self._gateway.notify_send_failed,
                user,
                token,
                error,
                can_retry=can_retry,
                superseded=superseded,
            )
            return DecisionOutcome.FAILED

        self._history.append(
            user.id,
            Message(
                sender_id=self._self_user_id,
                text=text,
                timestamp=self._wall_clock(),
                direction="outgoing",
            ),
        )
        session.current_draft_text = None
        session.send_attempts = 0
        self._transition(session, SessionState.IDLE)
        queued, session.queued_cycle = session.queued_cycle, None
        if queued is not None:
            self._start_held(session, queued)
        logger.info("draft.sent", user_id=user.id, user=user.name)
        await self._notify(self._gateway.notify_sent, user, token, text)
        return DecisionOutcome.APPLIED

    def _start_held(self, session: DraftSession, cycle: _Cycle) -> None:
        """Start a cycle that waited on a send, with the history as it is now."""
        snapshot = self._history.snapshot(session.user.id)
        self._start(session, _Cycle(cycle.generation, snapshot, cycle.guidance))

    async def _reject(self, session: DraftSession) -> DecisionOutcome:
        token = session.session_token
        assert token is not None
        session.current_draft_text = None
        session.session_token = None
        session.send_attempts = 0
        self._transition(session, SessionState.REJECTED)
        self._transition(session, SessionState.IDLE)
        logger.info("draft.rejected", user_id=session.user.id)
        await self._notify(self._gateway.notify_rejected, session.user, token)
        return DecisionOutcome.APPLIED

    async def _rephrase(
        self, session: DraftSession, guidance: str | None
    ) -> DecisionOutcome:
        guidance = (guidance or "").strip()
        if not guidance:
            return DecisionOutcome.FAILED
        logger.info("draft.rephrase", user_id=session.user.id)
        await self._open_cycle(session, session.draft_snapshot, guidance=guidance)
        return DecisionOutcome.APPLIED
