"""Chat dialogue: main menu, catalog buttons and the step-by-step order form.

Callers serialize events per chat (see ChatLocks); nothing here is safe to
run twice concurrently for the same chat.
"""

import asyncio
from typing import Awaitable, Callable, Optional

import httpx

from app.logging_config import ChatLoggerAdapter, get_logger
from app.services import messages
from app.services.amo_chat_service import AmoChatService
from app.services.analytics_service import AnalyticsService
from app.services.background import BackgroundTaskRunner
from app.services.catalog_service import CatalogService, Product
from app.services.crm_resolver import CrmResolver
from app.services.max_service import MaxApiError, MaxService
from app.services.order_format import session_summary
from app.services.order_session import OrderSessionService
from app.services.order_submission import OrderSubmission
from app.services.order_token import OrderTokenCodec
from app.services.product_image_service import ProductImageError, ProductImageService
from app.services.state_machine import PHONE_STEPS, InvalidTransitionError, OrderStep, is_valid_phone

logger = get_logger("dialogue")

# пауза между карточками, MAX ограничивает частоту отправки
PRODUCT_SEND_DELAY_SECONDS = 0.5

CallbackHandler = Callable[[str, Optional[str], Optional[str], Optional[str]], Awaitable[None]]

STEP_QUESTIONS = {
    OrderStep.DATE: (messages.ORDER_ASK_DATE, messages.ORDER_CANCEL),
    OrderStep.TIME: (messages.ORDER_ASK_TIME, messages.ORDER_TIME),
    OrderStep.EXACT_TIME: (messages.ORDER_ASK_EXACT_TIME, messages.ORDER_CANCEL),
    OrderStep.ADDRESS: (messages.ORDER_ASK_ADDRESS, messages.ORDER_ADDRESS),
    OrderStep.CARD_TEXT: (messages.ORDER_ASK_CARD_TEXT, messages.ORDER_SKIP_CARD),
    OrderStep.YOUR_NAME: (messages.ORDER_ASK_YOUR_NAME, messages.ORDER_CANCEL),
    OrderStep.YOUR_PHONE: (messages.ORDER_ASK_YOUR_PHONE, messages.ORDER_CANCEL),
    OrderStep.RECIPIENT_NAME: (messages.ORDER_ASK_RECIPIENT_NAME, messages.ORDER_CANCEL),
    OrderStep.RECIPIENT_PHONE: (messages.ORDER_ASK_RECIPIENT_PHONE, messages.ORDER_CANCEL),
}


def parse_callback_payload(payload: Optional[str]) -> tuple[str, Optional[str], Optional[str]]:
    """"action:value:param" -> (action, value, param)."""
    parts = (payload or "").split(":")
    action = parts[0]
    value = parts[1] if len(parts) > 1 and parts[1] else None
    param = parts[2] if len(parts) > 2 and parts[2] else None
    return action, value, param


class DialogueService:
    def __init__(
        self,
        *,
        max_service: MaxService,
        sessions: OrderSessionService,
        submission: OrderSubmission,
        resolver: CrmResolver,
        amo_chat: AmoChatService,
        analytics: AnalyticsService,
        catalog: CatalogService,
        tokens: OrderTokenCodec,
        background: BackgroundTaskRunner,
        images: Optional[ProductImageService] = None,
        sleep_func: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_service = max_service
        self.sessions = sessions
        self.submission = submission
        self.resolver = resolver
        self.amo_chat = amo_chat
        self.analytics = analytics
        self.catalog = catalog
        self.tokens = tokens
        self.background = background
        self.images = images or ProductImageService()
        self.sleep_func = sleep_func
        self._callback_handlers: dict[str, CallbackHandler] = {
            "menu": self._on_menu,
            "category": self._on_category,
            "more": self._on_more,
            "order": self._on_order_start,
            "order_time": self._on_order_time,
            "order_skip": self._on_order_skip,
            "order_ask_address": self._on_order_ask_address,
            "order_confirm": self._on_order_confirm,
            "order_cancel": self._on_order_cancel,
            "contact_manager": self._on_contact_manager,
            "back": self._on_back,
        }

    @staticmethod
    def _log(chat_id: Optional[str], user_id: Optional[str]) -> ChatLoggerAdapter:
        return ChatLoggerAdapter(logger, {"chat_id": chat_id, "user_id": user_id})

    async def _send_error(self, chat_id: str) -> None:
        try:
            await self.max_service.send_message(messages.ERROR, chat_id=chat_id)
        except Exception as exc:
            logger.error("Error message not delivered", extra={"context": {"chat_id": chat_id, "error": str(exc)}})

    # Входящие события

    async def handle_bot_started(self, chat_id: str, user_id: Optional[str], user_name: Optional[str] = None) -> None:
        if not chat_id or self.analytics.is_bot_disabled(chat_id):
            return

        if user_id and self.amo_chat.is_configured():
            self.background.submit(self.amo_chat.get_or_create_chat(chat_id, user_id, user_name), name="amo_chat")
        if user_id and self.resolver.amo.is_configured():
            self.background.submit(self.resolver.ensure_open_deal(user_id, user_name), name="ensure_open_deal")

        try:
            await self.max_service.send_message_with_buttons(messages.GREETING, messages.MAIN_MENU, chat_id=chat_id)
        except MaxApiError as exc:
            self._log(chat_id, user_id).warning("Greeting with buttons failed", context={"error": str(exc)})
            await self.max_service.send_message(messages.GREETING, chat_id=chat_id)
        self.analytics.log_message(chat_id, user_id, messages.GREETING, is_bot_response=True)

    async def handle_message(
        self, chat_id: str, user_id: Optional[str], text: str, user_name: Optional[str] = None
    ) -> None:
        if not chat_id or not text:
            return
        log = self._log(chat_id, user_id)
        if self.analytics.is_bot_disabled(chat_id):
            log.info("Bot disabled for chat, message skipped")
            return

        self.analytics.log_message(chat_id, user_id, text)
        if user_id and self.amo_chat.is_configured():
            self.background.submit(
                self.amo_chat.send_message_to_amo(chat_id, user_id, text, user_name), name="amo_relay"
            )
        await self.max_service.send_typing_action(chat_id)

        try:
            if self.sessions.has_active(chat_id):
                await self.handle_order_input(chat_id, text)
            else:
                await self.show_main_menu(chat_id)
                self.analytics.log_message(chat_id, user_id, messages.GREETING, is_bot_response=True)
        except Exception as exc:
            log.error("Message handling failed", context={"error": str(exc)})
            await self._send_error(chat_id)

    async def handle_order_input(self, chat_id: str, text: str) -> None:
        session = self.sessions.get(chat_id)
        if session is None:
            return

        step = session.step
        if step in PHONE_STEPS and not is_valid_phone(text):
            await self.max_service.send_message_with_buttons(
                messages.ORDER_INVALID_PHONE, messages.ORDER_CANCEL, chat_id=chat_id
            )
            return

        if step == OrderStep.EXACT_TIME:
            self.sessions.save_exact_time(chat_id, text)
        elif step != OrderStep.CONFIRM:
            # на CONFIRM свободный текст только повторяет сводку
            self.sessions.save_answer(chat_id, text)

        await self.send_next_question(chat_id)

    async def send_next_question(self, chat_id: str) -> bool:
        session = self.sessions.get(chat_id)
        if session is None:
            return False

        if session.step == OrderStep.CONFIRM:
            text = f"{session_summary(session.to_order())}\n\n{messages.ORDER_CONFIRM}"
            buttons = messages.ORDER_CONFIRM_BUTTONS
        else:
            text, buttons = STEP_QUESTIONS[session.step]

        await self.max_service.send_message_with_buttons(text, buttons, chat_id=chat_id)
        return True

    async def handle_callback(
        self,
        callback_id: Optional[str],
        payload: Optional[str],
        chat_id: str,
        user_id: Optional[str],
    ) -> None:
        log = self._log(chat_id, user_id)
        if callback_id:
            try:
                await self.max_service.answer_callback(callback_id)
            except Exception as exc:
                log.warning("Callback answer failed", context={"error": str(exc)})

        action, value, param = parse_callback_payload(payload)
        handler = self._callback_handlers.get(action)
        if handler is None:
            log.warning("Unknown callback action", context={"payload": payload})
            return

        log.info("Callback", context={"action": action, "value": value})
        try:
            await handler(chat_id, user_id, value, param)
        except InvalidTransitionError as exc:
            # кнопка из старого сообщения: повторяем текущий вопрос
            log.info("Stale order button", context={"error": str(exc)})
            await self.send_next_question(chat_id)
        except Exception as exc:
            log.error("Callback handling failed", context={"action": action, "error": str(exc)})
            await self._send_error(chat_id)

    # Меню и каталог

    async def show_main_menu(self, chat_id: str) -> None:
        await self.max_service.send_message_with_buttons(messages.GREETING, messages.MAIN_MENU, chat_id=chat_id)

    async def show_categories(self, chat_id: str) -> None:
        await self.max_service.send_message_with_buttons(
            messages.CATEGORIES, messages.category_buttons(self.catalog.categories()), chat_id=chat_id
        )

    async def send_product_card(self, chat_id: str, product: Product) -> bool:
        """Photo with caption; plain text caption when the photo cannot be sent."""
        try:
            image = await self.images.download(product)
            await self.max_service.send_image(
                image, filename=f"{product.id}.jpg", caption=product.caption, chat_id=chat_id
            )
            return True
        except (ProductImageError, MaxApiError, httpx.HTTPError) as exc:
            logger.warning(
                "Product photo not sent, sending text card",
                extra={"context": {"chat_id": chat_id, "product_id": product.id, "error": str(exc)}},
            )

        try:
            await self.max_service.send_message(product.caption, chat_id=chat_id)
            return True
        except (MaxApiError, httpx.HTTPError) as exc:
            logger.error(
                "Product card not sent",
                extra={"context": {"chat_id": chat_id, "product_id": product.id, "error": str(exc)}},
            )
            return False

    async def show_category(self, chat_id: str, user_id: Optional[str], key: Optional[str], offset: int = 0) -> None:
        page = self.catalog.page(key, offset)
        if page is None:
            logger.warning("Unknown catalog category", extra={"context": {"category": key}})
            await self.show_categories(chat_id)
            return

        category = page.category
        if not category.product_ids:
            await self.max_service.send_message_with_buttons(
                messages.NO_PRODUCTS, messages.category_buttons(self.catalog.categories()), chat_id=chat_id
            )
            return

        await self.max_service.send_message(category.header, chat_id=chat_id)
        sent = 0
        for product in page.products:
            if sent:
                await self.sleep_func(PRODUCT_SEND_DELAY_SECONDS)
            if await self.send_product_card(chat_id, product):
                sent += 1
        if sent == 0:
            await self.max_service.send_message(messages.PRODUCTS_UNAVAILABLE, chat_id=chat_id)

        order_url = self.tokens.chat_order_url(chat_id, user_id or "", {"category": category.key})
        text = messages.products_shown(page.offset + sent, page.total) if page.has_more else messages.NO_MORE_PRODUCTS
        await self.max_service.send_message_with_buttons(
            text, messages.after_products_buttons(category.key, page.next_offset, order_url), chat_id=chat_id
        )

    async def _on_menu(self, chat_id, user_id, value, param) -> None:
        if value == "catalog":
            await self.show_categories(chat_id)
        else:
            await self.show_main_menu(chat_id)

    async def _on_back(self, chat_id, user_id, value, param) -> None:
        if value == "catalog":
            await self.show_categories(chat_id)
        else:
            await self.show_main_menu(chat_id)

    async def _on_category(self, chat_id, user_id, value, param) -> None:
        await self.show_category(chat_id, user_id, value)

    async def _on_more(self, chat_id, user_id, value, param) -> None:
        try:
            offset = int(param or 0)
        except ValueError:
            offset = 0
        await self.show_category(chat_id, user_id, value, offset)

    # Форма заказа

    async def _on_order_start(self, chat_id, user_id, value, param) -> None:
        self.sessions.start(chat_id)
        await self.max_service.send_message(messages.ORDER_START, chat_id=chat_id)
        await self.send_next_question(chat_id)

    async def _on_order_time(self, chat_id, user_id, value, param) -> None:
        if not self.sessions.has_active(chat_id) or not value:
            return
        if value == "exact":
            self.sessions.request_exact_time(chat_id)
        else:
            self.sessions.choose_time_slot(chat_id, value)
        await self.send_next_question(chat_id)

    async def _on_order_skip(self, chat_id, user_id, value, param) -> None:
        if not self.sessions.has_active(chat_id):
            return
        if value == OrderStep.CARD_TEXT.value:
            self.sessions.skip_card_text(chat_id)
        await self.send_next_question(chat_id)

    async def _on_order_ask_address(self, chat_id, user_id, value, param) -> None:
        if not self.sessions.has_active(chat_id):
            return
        self.sessions.ask_recipient_for_address(chat_id)
        await self.send_next_question(chat_id)

    async def _on_order_confirm(self, chat_id, user_id, value, param) -> None:
        session = self.sessions.get(chat_id)
        if session is None:
            return
        if session.step != OrderStep.CONFIRM:
            await self.send_next_question(chat_id)
            return

        order = session.to_order()
        self.sessions.complete(chat_id)
        await self.submission.submit_chat_order(order, chat_id, user_id or "")

    async def _on_order_cancel(self, chat_id, user_id, value, param) -> None:
        self.sessions.cancel(chat_id)
        await self.max_service.send_message_with_buttons(messages.ORDER_CANCELLED, messages.MAIN_MENU, chat_id=chat_id)

    async def _on_contact_manager(self, chat_id, user_id, value, param) -> None:
        await self.max_service.send_message_with_buttons(messages.CONTACT_MANAGER, messages.MAIN_MENU, chat_id=chat_id)
        self.analytics.mark_transferred_to_manager(chat_id, user_id)
        if user_id and self.resolver.amo.is_configured():
            self.background.submit(self.resolver.create_contact_manager_task(user_id), name="contact_manager_task")
