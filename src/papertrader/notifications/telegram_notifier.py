# file: papertrader/notifications/telegram_notifier.py

import asyncio

from telegram import Bot
from telegram.error import TelegramError

from papertrader.utils.logger import setup_logger

logger = setup_logger(__name__)


class TelegramNotifier:
    """
    Thin wrapper for sending Telegram messages.
    Without token/chat_id, or when sending fails, the message is only
    logged and the caller carries on.

    Each send opens and shuts down its own Bot inside one event loop:
    the Bot's HTTP connection pool is bound to the loop it was
    initialised in and cannot be reused by a later asyncio.run().
    """

    def __init__(self, token: str, chat_id: str):
        self.token = token
        self.chat_id = chat_id
        self.enabled = bool(token and chat_id)

        if not self.enabled:
            logger.info("Telegram token or chat_id empty. Notifications go to the log only.")

    async def _send_message(self, text: str) -> None:
        async with Bot(token=self.token) as bot:
            await bot.send_message(chat_id=self.chat_id, text=text)

    def send(self, text: str) -> bool:
        if not self.enabled:
            logger.info(f"[TELEGRAM MOCK] {text}")
            return False

        try:
            asyncio.run(self._send_message(text))
            return True
        except (TelegramError, RuntimeError) as e:
            logger.error(f"Error sending Telegram message: {e}")
            return False

    def send_system_alert(self, level: str, component: str, message: str) -> bool:
        """Only ERROR/CRITICAL alerts are forwarded."""
        if level.upper() not in ("ERROR", "CRITICAL"):
            return False
        return self.send(
            f"🚨 Paper Trader alert\n"
            f"• Level: {level.upper()}\n"
            f"• Component: {component}\n"
            f"• Message: {message}"
        )
