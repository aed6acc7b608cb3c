"""
Telegram Notification Sink
==========================
Delivers lifecycle messages (submitted, confirmed, expired, take-profit,
stop-loss, price alerts) to the owner's Telegram chat.

The owner id is the Telegram chat id. Delivery is fire-and-forget: a
failed send is logged and never reaches the caller, so a notification
problem cannot interrupt the monitoring loop.
"""

from typing import Optional, Protocol

from telegram import Bot
from telegram.error import TelegramError

from config.settings import Settings
from src.shared.system.logging import Logger


class NotificationSink(Protocol):
    async def notify(self, owner_id: str, text: str) -> None: ...


class LogNotifier:
    """Sink that only writes to the log (Telegram disabled or in tests)."""

    async def notify(self, owner_id: str, text: str) -> None:
        Logger.info(f"[TG] ({owner_id}) {text}")


class TelegramNotifier:
    """Sends messages through the Bot API."""

    def __init__(self, token: str = None, bot: Optional[Bot] = None):
        self.token = token if token is not None else Settings.TELEGRAM_BOT_TOKEN
        self.bot = bot
        if self.bot is None and self.token:
            self.bot = Bot(token=self.token)

        self.enabled = self.bot is not None and Settings.TELEGRAM_ENABLED
        if not self.enabled:
            Logger.warning("[TG] No token. Telegram notifications disabled.")

    async def notify(self, owner_id: str, text: str) -> None:
        if not self.enabled:
            Logger.info(f"[TG] ({owner_id}) {text}")
            return
        try:
            await self.bot.send_message(chat_id=owner_id, text=text)
        except TelegramError as e:
            Logger.warning(f"[TG] Send to {owner_id} failed: {e}")


def build_notifier() -> NotificationSink:
    """Telegram when configured, the log otherwise."""
    if Settings.TELEGRAM_BOT_TOKEN and Settings.TELEGRAM_ENABLED:
        return TelegramNotifier()
    return LogNotifier()
