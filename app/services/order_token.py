"""Signed, stateless links to the web order form.

Two token shapes are in circulation and both must keep working:

* chat token: ``<base64url(json)>.<sig16>`` where json is
  ``{"c": chat_id, "u": user_id, "p": product_info, "t": issued_ms}``;
* deal token: ``a.<deal_id>.<issued_ms base36>.<sig12>``, short enough
  to be stored in a CRM url field.

Signatures are HMAC-SHA256 over the payload, base64url without padding,
truncated to 16 (chat) or 12 (deal) characters.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Union

from app.logging_config import get_logger

logger = get_logger("order_token")

TOKEN_TTL_MS = 24 * 60 * 60 * 1000
CHAT_SIGNATURE_LENGTH = 16
DEAL_SIGNATURE_LENGTH = 12
DEAL_TOKEN_PREFIX = "a"

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class ChatOrderToken:
    chat_id: str
    user_id: str
    product_info: Any
    issued_at_ms: int


@dataclass(frozen=True)
class CrmOrderToken:
    deal_id: int
    issued_at_ms: int


@dataclass(frozen=True)
class InvalidToken:
    reason: str

    def __bool__(self) -> bool:
        return False


TokenData = Union[ChatOrderToken, CrmOrderToken]
VerifyResult = Union[ChatOrderToken, CrmOrderToken, InvalidToken]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _signature_matches(expected: str, actual: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), actual.encode("utf-8"))


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    number = abs(value)
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36_DIGITS[remainder])
    sign = "-" if value < 0 else ""
    return sign + "".join(reversed(digits))


class OrderTokenCodec:
    """Issues and verifies order-form tokens with a shared server secret."""

    def __init__(
        self,
        secret: str,
        web_base_url: str = "",
        *,
        ttl_ms: int = TOKEN_TTL_MS,
        clock: Callable[[], int] = _now_ms,
    ):
        self.secret = secret.encode("utf-8")
        self.web_base_url = web_base_url.rstrip("/")
        self.ttl_ms = ttl_ms
        self.clock = clock

    def _sign(self, payload: str, length: int) -> str:
        digest = hmac.new(self.secret, payload.encode("utf-8"), hashlib.sha256).digest()
        return _b64url_encode(digest)[:length]

    def issue_chat_token(self, chat_id: str, user_id: str, product_info: Any = None) -> str:
        data = {"c": chat_id, "u": user_id, "p": product_info, "t": self.clock()}
        raw = json.dumps(data, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        payload = _b64url_encode(raw)
        return f"{payload}.{self._sign(payload, CHAT_SIGNATURE_LENGTH)}"

    def issue_deal_token(self, deal_id: int) -> str:
        payload = f"{DEAL_TOKEN_PREFIX}.{deal_id}.{to_base36(self.clock())}"
        return f"{payload}.{self._sign(payload, DEAL_SIGNATURE_LENGTH)}"

    def chat_order_url(self, chat_id: str, user_id: str, product_info: Any = None) -> str:
        return f"{self.web_base_url}/order?t={self.issue_chat_token(chat_id, user_id, product_info)}"

    def deal_order_url(self, deal_id: int) -> str:
        return f"{self.web_base_url}/order?t={self.issue_deal_token(deal_id)}"

    def verify(self, token: Any) -> VerifyResult:
        """Decode a token; never raises.

        Shapes are tried in a fixed order: the compact deal shape first
        (four parts, leading "a"), then the two-part chat shape.
        """
        if not token or not isinstance(token, str):
            return InvalidToken("empty")

        parts = token.split(".")
        if len(parts) == 4 and parts[0] == DEAL_TOKEN_PREFIX:
            return self._verify_deal_token(parts)
        if len(parts) == 2:
            return self._verify_chat_token(parts[0], parts[1])
        return InvalidToken("malformed")

    def _expired(self, issued_at_ms: int) -> bool:
        return self.clock() - issued_at_ms > self.ttl_ms

    def _verify_deal_token(self, parts: list[str]) -> VerifyResult:
        _, deal_id_raw, issued_raw, signature = parts
        expected = self._sign(f"{DEAL_TOKEN_PREFIX}.{deal_id_raw}.{issued_raw}", DEAL_SIGNATURE_LENGTH)
        if not _signature_matches(expected, signature):
            logger.info("Order token signature mismatch", extra={"context": {"shape": "deal"}})
            return InvalidToken("signature")

        try:
            issued_at_ms = int(issued_raw, 36)
            deal_id = int(deal_id_raw)
        except ValueError:
            return InvalidToken("malformed")

        if self._expired(issued_at_ms):
            return InvalidToken("expired")
        return CrmOrderToken(deal_id=deal_id, issued_at_ms=issued_at_ms)

    def _verify_chat_token(self, payload: str, signature: str) -> VerifyResult:
        expected = self._sign(payload, CHAT_SIGNATURE_LENGTH)
        if not _signature_matches(expected, signature):
            logger.info("Order token signature mismatch", extra={"context": {"shape": "chat"}})
            return InvalidToken("signature")

        try:
            data = json.loads(_b64url_decode(payload).decode("utf-8"))
            if not isinstance(data, dict):
                return InvalidToken("malformed")
            issued_at_ms = int(data["t"])
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning(f"Order token payload is not decodable: {exc}")
            return InvalidToken("malformed")

        if self._expired(issued_at_ms):
            return InvalidToken("expired")

        # старые ссылки из amoCRM в длинном формате
        if data.get("type") == "amo":
            try:
                return CrmOrderToken(deal_id=int(data.get("l")), issued_at_ms=issued_at_ms)
            except (TypeError, ValueError):
                return InvalidToken("malformed")

        return ChatOrderToken(
            chat_id=str(data.get("c")),
            user_id=str(data.get("u")),
            product_info=data.get("p"),
            issued_at_ms=issued_at_ms,
        )
