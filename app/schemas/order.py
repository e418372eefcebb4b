from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

OrderType = Literal["delivery", "pickup"]


class CompletedOrder(BaseModel):
    """Order in one shape whatever its origin (chat form, web form, CRM link)."""

    order_type: OrderType = "delivery"
    date: str
    time: str
    address: Optional[str] = None
    card_text: str = "Без подписи"
    your_name: str
    your_phone: str
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None
    exact_time_value: Optional[str] = None
    product_info: Optional[Any] = None

    @property
    def is_pickup(self) -> bool:
        return self.order_type == "pickup"


class WebOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    token: Optional[str] = None
    order_type: Optional[str] = Field(default=None, alias="orderType")
    date: Optional[str] = None
    time: Optional[str] = None
    address: Optional[str] = None
    branch: Optional[str] = None
    card_text: Optional[str] = Field(default=None, alias="cardText")
    your_name: Optional[str] = Field(default=None, alias="yourName")
    your_phone: Optional[str] = Field(default=None, alias="yourPhone")
    recipient_name: Optional[str] = Field(default=None, alias="recipientName")
    recipient_phone: Optional[str] = Field(default=None, alias="recipientPhone")
    ask_recipient_address: bool = Field(default=False, alias="askRecipientAddress")

    @field_validator(
        "token",
        "order_type",
        "date",
        "time",
        "address",
        "branch",
        "card_text",
        "your_name",
        "your_phone",
        "recipient_name",
        "recipient_phone",
        mode="before",
    )
    @classmethod
    def numbers_as_text(cls, value: object) -> object:
        # форма может прислать телефон или токен числом
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("ask_recipient_address", mode="before")
    @classmethod
    def null_flag_is_false(cls, value: object) -> object:
        return False if value is None else value


class WebOrderResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None


class AddressSuggestion(BaseModel):
    value: str
    unrestricted_value: Optional[str] = None
    data: dict[str, Any] = {}


class AddressSuggestResponse(BaseModel):
    suggestions: list[AddressSuggestion] = []
