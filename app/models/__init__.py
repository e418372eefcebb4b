from app.models.chat import ChatConversation, ChatMessage, DisabledChat

__all__ = [
    "ChatConversation",
    "ChatMessage",
    "DisabledChat",
]
