from __future__ import annotations

from .client import BotClient, TelegramClient, TelegramRetryAfter

__all__ = [
    "BotClient",
    "TelegramClient",
    "TelegramRetryAfter",
]
