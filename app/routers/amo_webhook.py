"""amoCRM hooks: manager replies from the chat channel and deal status changes."""

import json
import re
from typing import Any, Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.dependencies import Runtime, get_runtime
from app.logging_config import get_logger
from app.schemas.amo import AmoChatEvent, AmoChatMessage, AmoLeadWebhook
from app.services.amo_signature import verify_webhook_signature
from app.services.identity_registry import chat_id_from_conversation
from app.services.max_service import MaxService

logger = get_logger("amo_webhook")

router = APIRouter(prefix="/api/amo")

PLACEHOLDER_TEXTS = {
    "voice": "🎤 Голосовое сообщение (воспроизведение недоступно)",
    "video": "🎬 Видео (воспроизведение недоступно)",
    "sticker": "😊 Стикер",
}


def _listify(node: Any) -> Any:
    if isinstance(node, dict):
        node = {key: _listify(value) for key, value in node.items()}
        if node and all(key.isdigit() for key in node):
            return [node[key] for key in sorted(node, key=int)]
    return node


def parse_bracket_form(raw_body: bytes) -> dict:
    """amoCRM form webhooks: leads[status][0][id]=1 -> {"leads": {"status": [{"id": "1"}]}}."""
    result: dict = {}
    for key, value in parse_qsl(raw_body.decode("utf-8", errors="replace"), keep_blank_values=True):
        parts = re.findall(r"[^\[\]]+", key)
        if not parts:
            continue
        node = result
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
    return _listify(result)


async def _read_payload(request: Request, raw_body: bytes) -> dict:
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type:
        return parse_bracket_form(raw_body)
    try:
        data = json.loads(raw_body or b"{}")
    except ValueError:
        data = parse_bracket_form(raw_body)
    return data if isinstance(data, dict) else {}


async def relay_manager_message(max_service: MaxService, chat_id: str, message: AmoChatMessage) -> bool:
    """Send a manager message to the MAX chat. False for unsupported types."""
    if message.type == "text":
        if not message.text:
            return False
        text = message.text
    elif message.type in ("picture", "file"):
        caption = message.text or ("📷 Изображение" if message.type == "picture" else "📎 Файл")
        text = f"{caption}\n{message.media_url}" if message.media_url else caption
    elif message.type in PLACEHOLDER_TEXTS:
        text = PLACEHOLDER_TEXTS[message.type]
    elif message.type == "location" and message.location:
        text = f"📍 Геолокация: {message.location.lat}, {message.location.lon}"
    else:
        logger.info("Unsupported amoCRM message type", extra={"context": {"type": message.type}})
        return False

    await max_service.send_message(text, chat_id=chat_id)
    return True


def _signature_rejected(runtime: Runtime, raw_body: bytes, signature: Optional[str]) -> bool:
    secret = runtime.settings.amo_channel_secret
    if not secret:
        return False
    return not verify_webhook_signature(raw_body, signature, secret)


@router.post("/webhook")
@router.post("/webhook/{scope_id}")
async def chat_webhook(request: Request, scope_id: Optional[str] = None, runtime: Runtime = Depends(get_runtime)):
    raw_body = await request.body()
    if _signature_rejected(runtime, raw_body, request.headers.get("x-signature")):
        logger.warning("amoCRM chat webhook with invalid signature", extra={"context": {"scope_id": scope_id}})
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})

    try:
        body = await _read_payload(request, raw_body)
        event = AmoChatEvent.model_validate(body.get("message") if isinstance(body.get("message"), dict) else body)
        # вложенный message бывает и событием, и самим сообщением
        if event.conversation is None and isinstance(body.get("message"), dict):
            event = AmoChatEvent.model_validate(body)

        chat_id = chat_id_from_conversation(event.conversation.client_id if event.conversation else None)
        if not chat_id:
            logger.warning("amoCRM chat webhook without MAX client_id")
            return {"ok": True}

        if event.message:
            await relay_manager_message(runtime.max_service, chat_id, event.message)
            if event.message.id:
                await runtime.amo_chat.send_delivery_status(event.message.id, "delivered")

        logger.info(
            "Manager message relayed to MAX",
            extra={"context": {"chat_id": chat_id, "sender": event.sender.name if event.sender else None}},
        )
        return {"ok": True}
    except Exception as exc:
        # 200, иначе amoCRM будет повторять доставку
        logger.error("amoCRM chat webhook failed", extra={"context": {"error": str(exc)}}, exc_info=True)
        return {"ok": False, "error": str(exc)}


@router.post("/typing")
@router.post("/typing/{scope_id}")
async def typing_webhook(request: Request, scope_id: Optional[str] = None, runtime: Runtime = Depends(get_runtime)):
    raw_body = await request.body()
    if _signature_rejected(runtime, raw_body, request.headers.get("x-signature")):
        return JSONResponse(status_code=401, content={"error": "Invalid signature"})

    try:
        body = await _read_payload(request, raw_body)
        conversation = body.get("conversation") or {}
        chat_id = runtime.amo_chat.max_chat_id(conversation.get("id") or conversation.get("client_id"))
        if chat_id:
            await runtime.max_service.send_typing_action(chat_id)
    except Exception as exc:
        logger.error("amoCRM typing webhook failed", extra={"context": {"error": str(exc)}})
    return {"ok": True}


@router.post("/lead-status")
async def lead_status_webhook(request: Request, secret: Optional[str] = None, runtime: Runtime = Depends(get_runtime)):
    """Deal entered the target status: store a fresh order-form link on it."""
    config = runtime.settings
    if config.amo_webhook_secret and secret != config.amo_webhook_secret:
        logger.warning("amoCRM lead webhook with wrong secret")
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    try:
        body = await _read_payload(request, await request.body())
        try:
            payload = AmoLeadWebhook.model_validate(body)
        except ValidationError as exc:
            logger.warning("Malformed amoCRM lead webhook", extra={"context": {"error": str(exc)}})
            return {"ok": False, "error": "Invalid payload"}

        if payload.leads is None:
            return {"ok": True, "message": "No leads data"}

        links_written = 0
        for lead in payload.leads.changed():
            if lead.status_id != config.amo_target_status_id or lead.pipeline_id != config.amo_target_pipeline_id:
                continue

            order_url = runtime.tokens.deal_order_url(lead.id)
            try:
                await runtime.amo.update_lead(
                    lead.id,
                    [{"field_id": config.amo_order_form_link_field_id, "values": [{"value": order_url}]}],
                )
                links_written += 1
                logger.info("Order form link stored on deal", extra={"context": {"lead_id": lead.id}})
            except Exception as exc:
                logger.error(
                    "Failed to store order form link",
                    extra={"context": {"lead_id": lead.id, "error": str(exc)}},
                )

        return {"ok": True, "links": links_written}
    except Exception as exc:
        logger.error("amoCRM lead webhook failed", extra={"context": {"error": str(exc)}}, exc_info=True)
        return {"ok": False, "error": str(exc)}
