from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class AmoConversation(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    client_id: Optional[str] = None


class AmoChatSender(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    name: Optional[str] = None


class AmoLocation(BaseModel):
    lat: float
    lon: float


class AmoChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    type: str = "text"
    text: Optional[str] = None
    media: Optional[Any] = None
    file_name: Optional[str] = None
    location: Optional[AmoLocation] = None

    @property
    def media_url(self) -> Optional[str]:
        if isinstance(self.media, str):
            return self.media or None
        if isinstance(self.media, dict):
            return self.media.get("url")
        return None


class AmoChatEvent(BaseModel):
    """Outgoing manager message delivered by amojo to the channel hook."""

    model_config = ConfigDict(extra="ignore")

    conversation: Optional[AmoConversation] = None
    sender: Optional[AmoChatSender] = None
    message: Optional[AmoChatMessage] = None


class AmoLeadEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    status_id: Optional[int] = None
    pipeline_id: Optional[int] = None


class AmoLeadsPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    update: list[AmoLeadEvent] = []
    status: list[AmoLeadEvent] = []
    add: list[AmoLeadEvent] = []

    def changed(self) -> list[AmoLeadEvent]:
        return self.update or self.status or self.add


class AmoLeadWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    leads: Optional[AmoLeadsPayload] = None
