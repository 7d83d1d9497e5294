"""Operator-facing approval surface.

`ApprovalGateway` is what the session state machine talks to.
`TelegramApprovalGateway` implements it with the Bot API: drafts are posted
to the operator chat with inline buttons, and button presses (plus rephrase
guidance typed by the operator) are fed back as decisions.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

import anyio

from .logging import get_logger
from .model import Decision, DecisionOutcome, DraftFailure, TrackedUser
from .telegram.api_models import CallbackQuery, Message, Update
from .telegram.client import BotClient, TelegramRetryAfter
from .telegram.render import (
    draft_keyboard,
    parse_callback_data,
    render_draft,
    render_failure,
    render_rejected,
    render_rephrase_prompt,
    render_rephrasing,
    render_send_failed,
    render_sent,
    render_withdrawn,
    resend_keyboard,
    retry_keyboard,
)

logger = get_logger(__name__)

_ALLOWED_UPDATES = ["message", "callback_query"]


class ApprovalGateway(Protocol):
    async def present_draft(
        self, user: TrackedUser, draft_text: str, session_token: str
    ) -> bool: ...

    async def withdraw_draft(self, user: TrackedUser, session_token: str) -> None: ...

    async def notify_failure(self, user: TrackedUser, failure: DraftFailure) -> None: ...

    async def notify_sent(
        self, user: TrackedUser, session_token: str, text: str
    ) -> None: ...

    async def notify_rejected(self, user: TrackedUser, session_token: str) -> None: ...

    async def notify_send_failed(
        self,
        user: TrackedUser,
        session_token: str,
        error: str,
        *,
        can_retry: bool,
        superseded: bool = False,
    ) -> None: ...


class DecisionHandler(Protocol):
    async def decide(self, decision: Decision) -> DecisionOutcome: ...

    async def retry(self, user_id: int) -> bool: ...


@dataclass(slots=True)
class _PresentedDraft:
    user: TrackedUser
    text: str
    message_id: int


class TelegramApprovalGateway:
    def __init__(
        self,
        bot: BotClient,
        *,
        chat_id: int,
        poll_timeout_s: int = 50,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._bot = bot
        self._chat_id = chat_id
        self._poll_timeout_s = poll_timeout_s
        self._sleep = sleep
        self._presented: dict[str, _PresentedDraft] = {}
        self._rephrasing: set[str] = set()
        self._rephrase_users: set[int] = set()
        self._awaiting_guidance: str | None = None

    @property
    def chat_id(self) -> int:
        return self._chat_id

    @property
    def awaiting_guidance(self) -> str | None:
        return self._awaiting_guidance

    async def present_draft(
        self, user: TrackedUser, draft_text: str, session_token: str
    ) -> bool:
        rephrased = user.id in self._rephrase_users
        self._rephrase_users.discard(user.id)
        result = await self._bot.send_message(
            self._chat_id,
            render_draft(user, draft_text, rephrased=rephrased),
            reply_markup=draft_keyboard(session_token),
        )
        if not isinstance(result, dict) or "message_id" not in result:
            logger.error("gateway.present_failed", user_id=user.id, token=session_token)
            return False
        self._presented[session_token] = _PresentedDraft(
            user=user, text=draft_text, message_id=int(result["message_id"])
        )
        logger.debug(
            "gateway.presented",
            user_id=user.id,
            token=session_token,
            message_id=result["message_id"],
        )
        return True

    async def _edit(self, session_token: str, text: str, **kwargs) -> None:
        presented = self._presented.get(session_token)
        if presented is None:
            return
        await self._bot.edit_message_text(
            self._chat_id, presented.message_id, text, **kwargs
        )

    async def withdraw_draft(self, user: TrackedUser, session_token: str) -> None:
        if session_token in self._rephrasing:
            self._rephrasing.discard(session_token)
            await self._edit(session_token, render_rephrasing(user))
        else:
            await self._edit(session_token, render_withdrawn(user))
        if self._awaiting_guidance == session_token:
            self._awaiting_guidance = None
        self._presented.pop(session_token, None)

    async def notify_failure(self, user: TrackedUser, failure: DraftFailure) -> None:
        self._rephrase_users.discard(user.id)
        await self._bot.send_message(
            self._chat_id,
            render_failure(user, failure),
            reply_markup=retry_keyboard(user.id),
        )

    async def notify_sent(
        self, user: TrackedUser, session_token: str, text: str
    ) -> None:
        await self._edit(session_token, render_sent(user, text))
        self._forget(session_token)

    async def notify_rejected(self, user: TrackedUser, session_token: str) -> None:
        await self._edit(session_token, render_rejected(user))
        self._forget(session_token)

    async def notify_send_failed(
        self,
        user: TrackedUser,
        session_token: str,
        error: str,
        *,
        can_retry: bool,
        superseded: bool = False,
    ) -> None:
        presented = self._presented.get(session_token)
        text = presented.text if presented is not None else ""
        if can_retry:
            await self._edit(
                session_token,
                render_send_failed(user, text, error, can_retry=True),
                reply_markup=resend_keyboard(session_token),
            )
            return
        await self._edit(
            session_token,
            render_send_failed(
                user, text, error, can_retry=False, superseded=superseded
            ),
        )
        self._forget(session_token)

    def _forget(self, session_token: str) -> None:
        self._presented.pop(session_token, None)
        self._rephrasing.discard(session_token)
        if self._awaiting_guidance == session_token:
            self._awaiting_guidance = None

    async def handle_update(self, update: Update, handler: DecisionHandler) -> None:
        if update.callback_query is not None:
            await self._handle_callback(update.callback_query, handler)
            return
        if update.message is not None:
            await self._handle_message(update.message, handler)

    async def _handle_update_logged(
        self, update: Update, handler: DecisionHandler
    ) -> None:
        try:
            await self.handle_update(update, handler)
        except TelegramRetryAfter as exc:
            logger.warning(
                "gateway.update.rate_limited",
                update_id=update.update_id,
                retry_after=exc.retry_after,
            )
        except Exception:
            logger.exception("gateway.update.failed", update_id=update.update_id)

    async def _answer(self, query: CallbackQuery, text: str | None = None) -> None:
        await self._bot.answer_callback_query(query.id, text=text)

    async def _handle_callback(
        self, query: CallbackQuery, handler: DecisionHandler
    ) -> None:
        chat_id = query.message.chat.id if query.message is not None else None
        if chat_id != self._chat_id:
            logger.info("gateway.callback.foreign_chat", chat_id=chat_id)
            await self._answer(query)
            return
        parsed = parse_callback_data(query.data)
        if parsed is None:
            logger.info("gateway.callback.unknown", data=query.data)
            await self._answer(query)
            return

        logger.debug("gateway.callback", action=parsed.action, value=parsed.value)
        if parsed.action == "retry":
            try:
                user_id = int(parsed.value)
            except ValueError:
                await self._answer(query)
                return
            started = await handler.retry(user_id)
            await self._answer(
                query, "drafting again" if started else "nothing to retry right now"
            )
            return

        token = parsed.value
        if parsed.action == "rephrase":
            presented = self._presented.get(token)
            if presented is None:
                await self._answer(query, "this draft is no longer current")
                return
            self._awaiting_guidance = token
            await self._answer(query, "send rephrase guidance")
            await self._edit(token, render_rephrase_prompt(presented.user))
            return

        outcome = await handler.decide(Decision(session_token=token, kind=parsed.action))
        if outcome is DecisionOutcome.STALE:
            logger.info("gateway.callback.stale", token=token, action=parsed.action)
            await self._answer(query, "this draft is no longer current")
        elif outcome is DecisionOutcome.FAILED:
            await self._answer(query, "sending failed")
        elif parsed.action == "approve":
            await self._answer(query, "sent")
        else:
            await self._answer(query, "rejected")

    async def _handle_message(self, message: Message, handler: DecisionHandler) -> None:
        if message.chat.id != self._chat_id:
            return
        text = (message.text or "").strip()
        if not text:
            return
        token = self._awaiting_guidance
        if token is None:
            logger.debug("gateway.message.ignored", reason="no_pending_rephrase")
            return
        self._awaiting_guidance = None
        presented = self._presented.get(token)
        self._rephrasing.add(token)
        if presented is not None:
            self._rephrase_users.add(presented.user.id)
        logger.info("gateway.rephrase_guidance", token=token)
        outcome = await handler.decide(
            Decision(session_token=token, kind="rephrase", guidance=text)
        )
        if outcome is not DecisionOutcome.APPLIED:
            self._rephrasing.discard(token)
            if presented is not None:
                self._rephrase_users.discard(presented.user.id)
            await self._bot.send_message(
                self._chat_id, "That draft is no longer current; guidance ignored."
            )

    async def drain_backlog(self) -> int | None:
        offset: int | None = None
        drained = 0
        while True:
            updates = await self._bot.get_updates(
                offset=offset, timeout_s=0, allowed_updates=_ALLOWED_UPDATES
            )
            if updates is None:
                logger.info("gateway.backlog.failed")
                return offset
            if not updates:
                if drained:
                    logger.info("gateway.backlog.drained", count=drained)
                return offset
            offset = updates[-1].update_id + 1
            drained += len(updates)

    async def run(self, handler: DecisionHandler) -> None:
        offset = await self.drain_backlog()
        logger.info("gateway.polling", chat_id=self._chat_id)
        async with anyio.create_task_group() as tg:
            while True:
                try:
                    updates = await self._bot.get_updates(
                        offset=offset,
                        timeout_s=self._poll_timeout_s,
                        allowed_updates=_ALLOWED_UPDATES,
                    )
                except TelegramRetryAfter as exc:
                    await self._sleep(exc.retry_after)
                    continue
                if updates is None:
                    await self._sleep(2)
                    continue
                for update in updates:
                    offset = update.update_id + 1
                    tg.start_soon(self._handle_update_logged, update, handler)
