# notifier.py
"""Шлюзы уведомлений: send(contact, text) -> bool."""
import logging

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError

logger = logging.getLogger(__name__)


class TelegramGateway:
    """contact — Telegram chat id участника комнаты."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send(self, contact: str, text: str) -> bool:
        try:
            chat_id = int(contact)
        except (TypeError, ValueError):
            logger.warning("contact %r is not a Telegram chat id", contact)
            return False
        try:
            await self.bot.send_message(chat_id, text, parse_mode="HTML")
        except TelegramAPIError as e:
            logger.warning("Telegram send to %s failed: %s", chat_id, e)
            return False
        return True

    async def close(self):
        await self.bot.session.close()


class LogGateway:
    """Без BOT_TOKEN: просто пишем сообщение в лог."""

    async def send(self, contact: str, text: str) -> bool:
        logger.info("notify %s: %s", contact, text)
        return True

    async def close(self):
        pass
