"""Telethon-backed messaging transport for the operator's own account."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable
from typing import Any

from telethon import TelegramClient, events
from telethon.errors import RPCError

from .history import HistoryStore
from .logging import get_logger
from .model import Message, SendFailure

logger = get_logger(__name__)

MessageCallback = Callable[[int, Message], Any]

_SENT_IDS_KEPT = 256


def message_from_telethon(msg: Any, *, user_id: int, self_user_id: int) -> Message | None:
    text = msg.message or ""
    if not text.strip():
        return None
    outgoing = bool(msg.out)
    date = msg.date
    return Message(
        sender_id=self_user_id if outgoing else user_id,
        text=text,
        timestamp=date.timestamp() if date is not None else 0.0,
        direction="outgoing" if outgoing else "incoming",
    )


class UserbotTransport:
    """Inbound events, history backfill and the send capability.

    Login and the session file are left to Telethon's own `start()` flow.
    """

    def __init__(
        self,
        client: TelegramClient,
        *,
        tracked_ids: Iterable[int],
        self_user_id: int = 0,
    ) -> None:
        self._client = client
        self._tracked_ids = frozenset(tracked_ids)
        self._self_user_id = self_user_id
        self._sent_ids: deque[int] = deque(maxlen=_SENT_IDS_KEPT)
        self._callback: MessageCallback | None = None

    @property
    def self_user_id(self) -> int:
        return self._self_user_id

    async def start(self) -> int:
        await self._client.start()
        me = await self._client.get_me()
        self._self_user_id = int(me.id)
        logger.info("userbot.started", self_user_id=self._self_user_id)
        return self._self_user_id

    async def backfill(self, history: HistoryStore) -> None:
        for user_id in sorted(self._tracked_ids):
            collected: list[Message] = []
            try:
                async for msg in self._client.iter_messages(user_id, limit=history.limit):
                    message = message_from_telethon(
                        msg, user_id=user_id, self_user_id=self._self_user_id
                    )
                    if message is not None:
                        collected.append(message)
            except (RPCError, ValueError) as exc:
                logger.warning(
                    "userbot.backfill_failed",
                    user_id=user_id,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                continue
            collected.reverse()
            history.extend(user_id, collected)
            logger.debug("userbot.backfilled", user_id=user_id, count=len(collected))

    def subscribe(self, callback: MessageCallback) -> None:
        self._callback = callback
        self._client.add_event_handler(
            self.on_new_message, events.NewMessage(chats=list(self._tracked_ids))
        )

    async def on_new_message(self, event: Any) -> None:
        msg = event.message
        user_id = event.chat_id
        if user_id not in self._tracked_ids or self._callback is None:
            return
        if msg.out and msg.id in self._sent_ids:
            return
        message = message_from_telethon(
            msg, user_id=user_id, self_user_id=self._self_user_id
        )
        if message is None:
            return
        self._callback(user_id, message)

    async def send_message(self, user_id: int, text: str) -> None:
        try:
            sent = await self._client.send_message(user_id, text)
        except (RPCError, ValueError, OSError) as exc:
            raise SendFailure(f"{exc.__class__.__name__}: {exc}") from exc
        self._sent_ids.append(sent.id)

    async def run_until_disconnected(self) -> None:
        await self._client.run_until_disconnected()
