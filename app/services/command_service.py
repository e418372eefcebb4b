import asyncio
import re
from typing import Awaitable, Callable, Optional

from app.logging_config import get_logger
from app.services import messages
from app.services.analytics_service import AnalyticsService
from app.services.max_service import MaxService

logger = get_logger("commands")

BROADCAST_PAUSE_SECONDS = 0.1


def is_command(text: Optional[str]) -> bool:
    return bool(text) and text.startswith("/")


class CommandService:
    """Slash commands. Commands work even when the bot is disabled for the chat."""

    def __init__(
        self,
        max_service: MaxService,
        analytics: AnalyticsService,
        *,
        admin_user_id: Optional[str] = None,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_service = max_service
        self.analytics = analytics
        self.admin_user_id = admin_user_id
        self.sleep_func = sleep_func

    async def handle(self, chat_id: str, user_id: Optional[str], text: str) -> bool:
        """Run the command; False if the text is not a known command."""
        command = text.split(" ")[0].lower()
        if command == "/start":
            await self._start(chat_id)
        elif command == "/stop":
            await self._stop(chat_id, user_id)
        elif command == "/help":
            await self._reply(chat_id, messages.HELP)
        elif command == "/stats":
            await self._stats(chat_id, user_id)
        elif command == "/broadcast":
            await self._broadcast(chat_id, user_id, text)
        else:
            return False
        return True

    async def _reply(self, chat_id: str, text: str) -> None:
        await self.max_service.send_message(text, chat_id=chat_id)

    def _is_admin(self, user_id: Optional[str]) -> bool:
        # без ADMIN_USER_ID админ-команды открыты всем
        return not self.admin_user_id or str(user_id) == str(self.admin_user_id)

    async def _start(self, chat_id: str) -> None:
        was_disabled = self.analytics.is_bot_disabled(chat_id)
        if was_disabled:
            self.analytics.enable_bot(chat_id)
        text = messages.BOT_ENABLED if was_disabled else messages.GREETING
        await self.max_service.send_message_with_buttons(text, messages.MAIN_MENU, chat_id=chat_id)

    async def _stop(self, chat_id: str, user_id: Optional[str]) -> None:
        self.analytics.disable_bot(chat_id, user_id)
        await self._reply(chat_id, messages.BOT_DISABLED)

    async def _stats(self, chat_id: str, user_id: Optional[str]) -> None:
        if not self._is_admin(user_id):
            await self._reply(chat_id, messages.ADMIN_ONLY)
            return
        await self._reply(chat_id, self.analytics.format_statistics())

    async def _broadcast(self, chat_id: str, user_id: Optional[str], text: str) -> None:
        if not self._is_admin(user_id):
            await self._reply(chat_id, messages.ADMIN_ONLY)
            return

        broadcast_text = re.sub(r"^/broadcast\s*", "", text, flags=re.IGNORECASE).strip()
        if not broadcast_text:
            await self._reply(chat_id, messages.BROADCAST_USAGE)
            return

        chat_ids = self.analytics.active_chat_ids(exclude=chat_id)
        if not chat_ids:
            await self._reply(chat_id, messages.BROADCAST_NO_RECIPIENTS)
            return

        await self._reply(chat_id, f"Рассылка запущена...\nПолучателей: {len(chat_ids)}")
        sent = 0
        errors = 0
        for target_chat_id in chat_ids:
            try:
                await self.max_service.send_message(broadcast_text, chat_id=target_chat_id)
                sent += 1
                await self.sleep_func(BROADCAST_PAUSE_SECONDS)
            except Exception as exc:
                errors += 1
                logger.error(
                    "Broadcast delivery failed",
                    extra={"context": {"chat_id": target_chat_id, "error": str(exc)}},
                )

        logger.info("Broadcast finished", extra={"context": {"sent": sent, "errors": errors}})
        await self._reply(chat_id, f"Рассылка завершена!\n\nОтправлено: {sent}\nОшибок: {errors}")
