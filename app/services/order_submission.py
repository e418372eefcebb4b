"""Side effects of a completed order, whatever form it came from.

Order of effects: customer acknowledgement, admin notification, CRM. Each
one is isolated, a failure is logged and the next effect still runs. The
only exception is the CRM-form origin, where updating the deal is the
whole point and its failure is reported back to the caller.
"""

from typing import Optional

from app.logging_config import ChatLoggerAdapter, get_logger
from app.schemas.order import CompletedOrder, WebOrderRequest
from app.services import messages
from app.services.amo_chat_service import AmoChatService
from app.services.crm_resolver import CrmResolver
from app.services.geocode_service import GeocodeService
from app.services.max_service import MaxService
from app.services.order_format import (
    chat_order_for_manager,
    crm_form_order_for_manager,
    order_for_amo_chat,
    web_order_ack,
    web_order_for_manager,
)
from app.services.order_session import ASK_RECIPIENT_ADDRESS, NO_CARD_TEXT
from app.services.order_token import ChatOrderToken, CrmOrderToken, TokenData

logger = get_logger("order_submission")

REQUIRED_FIELDS = ["date", "time", "yourName", "yourPhone"]
PICKUP_REQUIRED_FIELDS = REQUIRED_FIELDS + ["branch"]


class OrderValidationError(Exception):
    pass


def validate_web_order(request: WebOrderRequest) -> None:
    """Raise OrderValidationError with a customer-facing message."""
    order_type = request.order_type or "delivery"
    required = PICKUP_REQUIRED_FIELDS if order_type == "pickup" else REQUIRED_FIELDS
    values = request.model_dump(by_alias=True)
    missing = [name for name in required if not values.get(name)]
    if missing:
        raise OrderValidationError(f"Заполните обязательные поля: {', '.join(missing)}")

    if order_type == "delivery" and not request.ask_recipient_address and not request.address:
        raise OrderValidationError("Укажите адрес доставки")


def order_from_web_form(request: WebOrderRequest, product_info=None) -> CompletedOrder:
    """Normalize a validated web form into a CompletedOrder.

    Pickup: the branch becomes the address and the customer is the recipient.
    """
    is_pickup = request.order_type == "pickup"
    if is_pickup:
        address = request.branch
    elif request.ask_recipient_address:
        address = ASK_RECIPIENT_ADDRESS
    else:
        address = request.address

    return CompletedOrder(
        order_type="pickup" if is_pickup else "delivery",
        date=request.date or "",
        time=request.time or "",
        address=address,
        card_text=request.card_text or NO_CARD_TEXT,
        your_name=request.your_name or "",
        your_phone=request.your_phone or "",
        recipient_name=request.your_name if is_pickup else request.recipient_name,
        recipient_phone=request.your_phone if is_pickup else request.recipient_phone,
        product_info=product_info,
    )


class OrderSubmission:
    def __init__(
        self,
        max_service: MaxService,
        resolver: CrmResolver,
        amo_chat: AmoChatService,
        geocode: GeocodeService,
        *,
        admin_user_id: Optional[str] = None,
    ):
        self.max_service = max_service
        self.resolver = resolver
        self.amo_chat = amo_chat
        self.geocode = geocode
        self.admin_user_id = admin_user_id

    async def resolve_branch(self, order: CompletedOrder) -> Optional[int]:
        if order.is_pickup or not order.address or order.address == ASK_RECIPIENT_ADDRESS:
            return None
        try:
            return await self.geocode.resolve_branch(order.address)
        except Exception as exc:
            logger.error("Branch resolution failed", extra={"context": {"error": str(exc)}})
            return None

    async def notify_admin(self, text: str) -> None:
        if not self.admin_user_id:
            return
        try:
            await self.max_service.send_message(text, user_id=self.admin_user_id)
        except Exception as exc:
            logger.error("Admin notification failed", extra={"context": {"error": str(exc)}})

    async def _acknowledge(self, chat_id: str, text: str) -> None:
        try:
            await self.max_service.send_message_with_buttons(text, messages.MAIN_MENU, chat_id=chat_id)
        except Exception as exc:
            logger.error(
                "Order acknowledgement not delivered",
                extra={"context": {"chat_id": chat_id, "error": str(exc)}},
            )

    async def _sync_chat_order_to_crm(
        self, order: CompletedOrder, chat_id: str, user_id: str, source: str
    ) -> None:
        log = ChatLoggerAdapter(logger, {"chat_id": chat_id, "user_id": user_id})
        # заказ уходит в тот же чат amoCRM от имени клиента, чтобы попасть в его сделку
        try:
            await self.amo_chat.send_message_to_amo(
                chat_id, user_id, order_for_amo_chat(order, source), order.your_name, order.your_phone
            )
        except Exception as exc:
            log.error("amoCRM chat relay of order failed", context={"error": str(exc)})

        branch_id = await self.resolve_branch(order)

        try:
            update = await self.resolver.update_deal_from_order(order, user_id, branch_id)
        except Exception as exc:
            log.error("amoCRM deal update failed", context={"error": str(exc)})
            return
        if update is not None:
            log.with_deal(update.deal.get("id")).info("Order synced to amoCRM deal", context={"source": source})

    async def submit_chat_order(self, order: CompletedOrder, chat_id: str, user_id: str) -> None:
        logger.info("Chat order submitted", extra={"context": {"chat_id": chat_id, "user_id": user_id}})
        await self._acknowledge(chat_id, messages.ORDER_SUCCESS)
        await self.notify_admin(chat_order_for_manager(order, chat_id, user_id))
        await self._sync_chat_order_to_crm(order, chat_id, user_id, source="чат-бот")

    async def submit_web_order(self, order: CompletedOrder, token: ChatOrderToken) -> None:
        logger.info(
            "Web order submitted",
            extra={"context": {"chat_id": token.chat_id, "user_id": token.user_id, "order_type": order.order_type}},
        )
        await self._acknowledge(token.chat_id, web_order_ack(order))
        await self.notify_admin(web_order_for_manager(order, token.chat_id, token.user_id))
        await self._sync_chat_order_to_crm(order, token.chat_id, token.user_id, source="веб-форма")

    async def submit_crm_order(self, order: CompletedOrder, token: CrmOrderToken) -> None:
        """No chat is known for a CRM link: update the deal by id, errors propagate."""
        logger.info("CRM form order submitted", extra={"context": {"lead_id": token.deal_id}})
        branch_id = await self.resolve_branch(order)
        await self.resolver.update_deal_by_id(order, token.deal_id, branch_id)
        await self.notify_admin(crm_form_order_for_manager(order, token.deal_id))

    async def submit(self, order: CompletedOrder, token: TokenData) -> None:
        if isinstance(token, CrmOrderToken):
            await self.submit_crm_order(order, token)
        else:
            await self.submit_web_order(order, token)
