"""MAX long-poll loop.

Updates of one batch run concurrently, but every update holds its chat's
lock, so the same chat is always processed in arrival order.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import httpx
from pydantic import ValidationError

from app.logging_config import get_logger
from app.schemas.max import MaxUpdate, MaxUpdatesResponse
from app.services.analytics_service import AnalyticsService
from app.services.command_service import CommandService, is_command
from app.services.dialogue_service import DialogueService
from app.services.max_service import MaxService
from app.services.session_store import ChatLocks

logger = get_logger("bot")


class BotPoller:
    def __init__(
        self,
        max_service: MaxService,
        dialogue: DialogueService,
        commands: CommandService,
        analytics: AnalyticsService,
        locks: Optional[ChatLocks] = None,
        *,
        poll_timeout: int = 30,
        error_backoff_seconds: float = 5.0,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_service = max_service
        self.dialogue = dialogue
        self.commands = commands
        self.analytics = analytics
        self.locks = locks or ChatLocks()
        self.poll_timeout = poll_timeout
        self.error_backoff_seconds = error_backoff_seconds
        self.sleep_func = sleep_func
        self.marker: Optional[int] = None
        self.bot_user_id: Optional[str] = None
        self.running = False

    async def init(self) -> dict:
        me = await self.max_service.get_me()
        if me.get("user_id") is not None:
            self.bot_user_id = str(me["user_id"])
        logger.info("MAX bot initialized", extra={"context": {"name": me.get("name"), "user_id": self.bot_user_id}})
        return me

    async def process_update(self, raw: dict) -> None:
        """Handle one update. Errors are logged so the loop never stops on a bad update."""
        try:
            update = MaxUpdate.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Malformed MAX update skipped", extra={"context": {"error": str(exc)}})
            return

        try:
            async with self.locks.hold(update.chat_key):
                await self._dispatch(update)
        except Exception as exc:
            logger.error(
                "Update processing failed",
                extra={"context": {"update_type": update.update_type, "chat_id": update.chat_key, "error": str(exc)}},
            )

    async def _dispatch(self, update: MaxUpdate) -> None:
        if update.update_type == "bot_started":
            await self._on_bot_started(update)
        elif update.update_type == "message_created":
            await self._on_message_created(update)
        elif update.update_type == "message_callback":
            await self._on_message_callback(update)
        else:
            logger.info("Unsupported update type", extra={"context": {"update_type": update.update_type}})

    async def _on_bot_started(self, update: MaxUpdate) -> None:
        chat_id = update.chat_key
        if not chat_id:
            logger.warning("bot_started without chat_id")
            return
        user_id = str(update.user.user_id) if update.user else None
        user_name = update.user.display_name if update.user else None
        await self.dialogue.handle_bot_started(chat_id, user_id, user_name)

    async def _on_message_created(self, update: MaxUpdate) -> None:
        message = update.message
        if message is None:
            return
        chat_id = update.chat_key
        if not chat_id:
            logger.warning("message_created without chat_id")
            return

        sender = message.sender
        user_id = str(sender.user_id) if sender else None
        if self.bot_user_id and user_id == self.bot_user_id:
            return

        text = (message.body.text if message.body else None) or ""
        if is_command(text) and await self.commands.handle(chat_id, user_id, text):
            return

        await self.dialogue.handle_message(chat_id, user_id, text, sender.display_name if sender else None)

    async def _on_message_callback(self, update: MaxUpdate) -> None:
        callback = update.callback
        if callback is None:
            logger.warning("message_callback without callback data")
            return
        chat_id = update.chat_key
        if not chat_id:
            return
        if self.analytics.is_bot_disabled(chat_id):
            logger.info("Bot disabled for chat, callback skipped", extra={"context": {"chat_id": chat_id}})
            return
        user_id = str(callback.user.user_id) if callback.user else None
        await self.dialogue.handle_callback(callback.callback_id, callback.payload, chat_id, user_id)

    async def process_batch(self, updates: list[dict]) -> None:
        if updates:
            await asyncio.gather(*(self.process_update(raw) for raw in updates))

    async def poll_once(self) -> int:
        result = MaxUpdatesResponse.model_validate(
            await self.max_service.get_updates(self.marker, timeout=self.poll_timeout)
        )
        await self.process_batch(result.updates)
        if result.marker:
            self.marker = result.marker
        return len(result.updates)

    async def run(self) -> None:
        self.running = True
        logger.info("Long polling started")
        while self.running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except httpx.TimeoutException:
                # пустой long poll
                continue
            except Exception as exc:
                logger.error("Polling failed", extra={"context": {"error": str(exc)}})
                await self.sleep_func(self.error_backoff_seconds)

    def stop(self) -> None:
        self.running = False
