from app.schemas.amo import AmoChatEvent, AmoLeadWebhook
from app.schemas.max import MaxUpdate
from app.schemas.order import CompletedOrder, WebOrderRequest, WebOrderResponse

__all__ = [
    "AmoChatEvent",
    "AmoLeadWebhook",
    "CompletedOrder",
    "MaxUpdate",
    "WebOrderRequest",
    "WebOrderResponse",
]
