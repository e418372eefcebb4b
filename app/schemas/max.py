from typing import Optional

from pydantic import BaseModel, ConfigDict


class MaxUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    name: Optional[str] = None
    is_bot: bool = False

    @property
    def display_name(self) -> Optional[str]:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) or None


class MaxRecipient(BaseModel):
    model_config = ConfigDict(extra="ignore")

    chat_id: Optional[int] = None
    chat_type: Optional[str] = None
    user_id: Optional[int] = None


class MaxMessageBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    mid: Optional[str] = None
    seq: Optional[int] = None
    text: Optional[str] = None


class MaxMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sender: Optional[MaxUser] = None
    recipient: Optional[MaxRecipient] = None
    body: Optional[MaxMessageBody] = None
    timestamp: Optional[int] = None


class MaxCallback(BaseModel):
    model_config = ConfigDict(extra="ignore")

    callback_id: str
    payload: Optional[str] = None
    user: Optional[MaxUser] = None
    timestamp: Optional[int] = None


class MaxUpdate(BaseModel):
    """One item of GET /updates (bot_started, message_created, message_callback)."""

    model_config = ConfigDict(extra="ignore")

    update_type: str
    timestamp: Optional[int] = None
    chat_id: Optional[int] = None
    user: Optional[MaxUser] = None
    message: Optional[MaxMessage] = None
    callback: Optional[MaxCallback] = None

    @property
    def chat_key(self) -> Optional[str]:
        if self.chat_id is not None:
            return str(self.chat_id)
        if self.message and self.message.recipient and self.message.recipient.chat_id is not None:
            return str(self.message.recipient.chat_id)
        return None


class MaxUpdatesResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    updates: list[dict] = []
    marker: Optional[int] = None
