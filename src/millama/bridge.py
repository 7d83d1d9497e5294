from __future__ import annotations

import anyio
from telethon import TelegramClient as TelethonClient

from .config import MillamaSettings
from .gateway import TelegramApprovalGateway
from .history import HistoryStore
from .llm import DraftClient
from .logging import get_logger
from .session import DraftSessionManager
from .telegram.client import TelegramClient
from .userbot import UserbotTransport

logger = get_logger(__name__)


async def run_main_loop(settings: MillamaSettings) -> None:
    users = settings.tracked_users()
    if not users:
        logger.warning("startup.no_tracked_users")

    telethon = TelethonClient(
        settings.settings.session_file,
        settings.telegram.api_id,
        settings.telegram.api_hash,
    )
    userbot = UserbotTransport(telethon, tracked_ids=[user.id for user in users])
    self_user_id = await userbot.start()

    history = HistoryStore(limit=settings.settings.history_limit)
    await userbot.backfill(history)

    bot = TelegramClient(settings.telegram.bot_token)
    draft_client = DraftClient(
        settings.ai.api_key,
        api_url=settings.ai.api_url,
        timeout_s=settings.ai.timeout_s,
    )
    operator_chat_id = settings.telegram.operator_chat_id or self_user_id
    gateway = TelegramApprovalGateway(bot, chat_id=operator_chat_id)

    try:
        async with anyio.create_task_group() as tg:
            manager = DraftSessionManager(
                users=users,
                history=history,
                draft_client=draft_client,
                gateway=gateway,
                sender=userbot,
                model_params=settings.ai.model_params(),
                task_group=tg,
                debounce_s=settings.settings.debounce_seconds,
                base_system_prompt=settings.ai.base_system_prompt,
                self_user_id=self_user_id,
            )
            userbot.subscribe(manager.handle_message)
            logger.info(
                "startup.ready",
                tracked_users=len(users),
                operator_chat_id=operator_chat_id,
                debounce_s=settings.settings.debounce_seconds,
                history_limit=settings.settings.history_limit,
                model=settings.ai.model,
            )
            tg.start_soon(gateway.run, manager)
            await userbot.run_until_disconnected()
            logger.info("shutdown.userbot_disconnected")
            manager.close()
            tg.cancel_scope.cancel()
    finally:
        await draft_client.close()
        await bot.close()
        if telethon.is_connected():
            await telethon.disconnect()
