"""amoCRM chat channel (amojo): mirrors the MAX conversation into the deal's chat."""

import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from app.logging_config import get_logger
from app.services.amo_service import AmoApiError, placeholder_contact_name
from app.services.amo_signature import sign_request_headers
from app.services.background import BackgroundTaskRunner
from app.services.crm_resolver import CrmResolver
from app.services.identity_registry import (
    IdentityRegistry,
    chat_id_from_conversation,
    conversation_id_for_chat,
)
from app.services.session_store import InMemoryStore, KeyValueStore

logger = get_logger("amo_chat_service")

BOT_SENDER = {"id": "bot_orange", "name": "Бот Orange"}


class AmoChatError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        self.message = message
        self.status_code = status_code
        self.body = body
        super().__init__(message)


@dataclass
class ChatProfile:
    name: Optional[str] = None
    phone: Optional[str] = None


def _message_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def max_user_ref(user_id: str) -> str:
    return f"max_user_{user_id}"


class AmoChatService:
    BASE_URL = "https://amojo.amocrm.ru"

    def __init__(
        self,
        *,
        channel_id: Optional[str],
        channel_secret: Optional[str],
        scope_id: Optional[str],
        source_external_id: str,
        resolver: CrmResolver,
        identities: IdentityRegistry,
        background: BackgroundTaskRunner,
        profiles: Optional[KeyValueStore] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.channel_id = channel_id
        self.channel_secret = channel_secret
        self.scope_id = scope_id
        self.source_external_id = source_external_id
        self.resolver = resolver
        self.identities = identities
        self.background = background
        self.profiles = profiles if profiles is not None else InMemoryStore()
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self._tagging_in_flight: set[str] = set()

    def is_configured(self) -> bool:
        return bool(self.channel_id and self.channel_secret and self.scope_id)

    async def _request(self, method: str, path: str, body: dict) -> dict:
        # подпись считается по тем же байтам, что уходят в запрос
        raw = json.dumps(body, ensure_ascii=False).encode("utf-8")
        headers = sign_request_headers(method, path, raw, self.channel_secret or "")
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.request(method, f"{self.base_url}{path}", content=raw, headers=headers)
        if response.status_code >= 400:
            raise AmoChatError(
                f"amojo {method} {path} failed",
                status_code=response.status_code,
                body=response.text,
            )
        if not response.content:
            return {}
        return response.json()

    def _start_traffic_source_tagging(self, user_id: str, contact_id: Optional[int] = None) -> None:
        if self.identities.is_traffic_source_set(user_id) or user_id in self._tagging_in_flight:
            return
        self._tagging_in_flight.add(user_id)
        self.background.submit(self._tag_traffic_source(user_id, contact_id), name=f"traffic_source:{user_id}")

    async def _tag_traffic_source(self, user_id: str, contact_id: Optional[int]) -> None:
        try:
            await self.resolver.set_traffic_source_with_retry(user_id, contact_id)
        finally:
            self._tagging_in_flight.discard(user_id)

    async def get_or_create_chat(self, chat_id: str, user_id: str, user_name: Optional[str] = None) -> Optional[str]:
        if not self.is_configured():
            return None

        conversation_id = conversation_id_for_chat(chat_id)
        if self.identities.get(user_id).crm_conversation_id == conversation_id:
            return conversation_id

        if user_name:
            self._remember_profile(user_id, name=user_name)

        body = {
            "conversation_id": conversation_id,
            "source": {"external_id": self.source_external_id},
            "user": {
                "id": max_user_ref(user_id),
                "name": user_name or placeholder_contact_name(user_id),
                "profile": {"phone": "", "email": ""},
            },
        }
        try:
            response = await self._request("POST", f"/v2/origin/custom/{self.scope_id}/chats", body)
        except AmoChatError as e:
            if e.status_code != 409:
                raise
            self.identities.remember_conversation(user_id, chat_id)
            logger.info("amojo chat already exists", extra={"context": {"conversation_id": conversation_id}})
            self._start_traffic_source_tagging(user_id)
            return conversation_id

        self.identities.remember_conversation(user_id, chat_id)
        contact_id = (response.get("contact") or {}).get("id")
        if contact_id:
            self.identities.remember_contact(user_id, contact_id)
        logger.info(
            "amojo chat created",
            extra={"context": {"conversation_id": conversation_id, "contact_id": contact_id}},
        )
        self._start_traffic_source_tagging(user_id, contact_id)
        return conversation_id

    def _remember_profile(self, user_id: str, name: Optional[str] = None, phone: Optional[str] = None) -> ChatProfile:
        profile = self.profiles.get(user_id) or ChatProfile()
        if name:
            profile.name = name
        if phone:
            profile.phone = phone
        self.profiles.set(user_id, profile)
        return profile

    def _new_message_event(self, conversation_id: str, msg_id: str, sender: dict, text: str) -> dict:
        return {
            "event_type": "new_message",
            "payload": {
                "timestamp": int(time.time()),
                "msgid": msg_id,
                "conversation_id": conversation_id,
                "source": {"external_id": self.source_external_id},
                "sender": sender,
                "message": {"type": "text", "text": text},
                "silent": False,
            },
        }

    async def send_message_to_amo(
        self,
        chat_id: str,
        user_id: str,
        text: str,
        user_name: Optional[str] = None,
        user_phone: Optional[str] = None,
    ) -> Optional[str]:
        """Relay a client message. Returns the msgid, or None when nothing was sent."""
        if not self.is_configured():
            return None

        try:
            conversation_id = await self.get_or_create_chat(chat_id, user_id, user_name)
            if not conversation_id:
                return None
            self._start_traffic_source_tagging(user_id)

            profile = self._remember_profile(user_id, name=user_name, phone=user_phone)
            sender = {
                "id": max_user_ref(user_id),
                "name": profile.name or placeholder_contact_name(user_id),
                "profile": {"phone": profile.phone or "", "email": ""},
            }
            msg_id = _message_id("max_msg")
            await self._request(
                "POST",
                f"/v2/origin/custom/{self.scope_id}",
                self._new_message_event(conversation_id, msg_id, sender, text),
            )
            logger.info(
                "Message relayed to amoCRM chat",
                extra={"context": {"conversation_id": conversation_id, "user_id": user_id}},
            )
            return msg_id
        except (AmoChatError, AmoApiError, httpx.HTTPError) as e:
            logger.error(
                "amojo: failed to relay client message",
                extra={"context": {"chat_id": chat_id, "user_id": user_id, "error": str(e)}},
            )
            return None

    async def send_bot_message_to_amo(self, chat_id: str, text: str) -> Optional[str]:
        if not self.is_configured():
            return None

        msg_id = _message_id("max_bot_msg")
        sender = {**BOT_SENDER, "profile": {"phone": "", "email": ""}}
        try:
            await self._request(
                "POST",
                f"/v2/origin/custom/{self.scope_id}",
                self._new_message_event(conversation_id_for_chat(chat_id), msg_id, sender, text),
            )
        except (AmoChatError, httpx.HTTPError) as e:
            logger.error("amojo: failed to relay bot message", extra={"context": {"chat_id": chat_id, "error": str(e)}})
            return None
        return msg_id

    async def send_delivery_status(self, msg_id: str, status: str = "delivered") -> None:
        if not self.is_configured() or not msg_id:
            return
        try:
            await self._request(
                "POST", f"/v2/origin/custom/{self.scope_id}/{msg_id}/delivery_status", {"status": status}
            )
        except (AmoChatError, httpx.HTTPError) as e:
            logger.warning(f"amojo: delivery status not sent: {e}")

    async def send_typing_indicator(self, chat_id: str, user_id: str) -> None:
        if not self.is_configured():
            return
        conversation_id = self.identities.get(user_id).crm_conversation_id
        if not conversation_id:
            return
        try:
            await self._request(
                "POST",
                f"/v2/origin/custom/{self.scope_id}/typing",
                {"conversation_id": conversation_id, "sender": dict(BOT_SENDER)},
            )
        except (AmoChatError, httpx.HTTPError) as e:
            logger.debug(f"amojo: typing indicator failed for chat {chat_id}: {e}")

    @staticmethod
    def max_chat_id(conversation_id: Optional[str]) -> Optional[str]:
        return chat_id_from_conversation(conversation_id)
