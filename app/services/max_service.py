from typing import Any, Optional

import httpx

from app.logging_config import get_logger

logger = get_logger("max_service")


class MaxApiError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class MaxService:
    """Client for the MAX messenger bot API."""

    BASE_URL = "https://platform-api.max.ru"

    def __init__(self, bot_token: str, base_url: Optional[str] = None, timeout: float = 60.0):
        self.bot_token = bot_token
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout

    @property
    def headers(self) -> dict:
        return {"Authorization": self.bot_token}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> dict:
        url = f"{self.base_url}{path}"
        async with httpx.AsyncClient(timeout=timeout or self.timeout) as client:
            response = await client.request(method, url, params=params, json=json, headers=self.headers)
        if response.status_code >= 400:
            logger.error(
                "MAX API error",
                extra={"context": {"path": path, "status": response.status_code, "body": response.text[:500]}},
            )
            raise MaxApiError(f"MAX API {method} {path} failed", status_code=response.status_code)
        if not response.content:
            return {}
        return response.json()

    @staticmethod
    def _recipient(chat_id: Optional[Any], user_id: Optional[Any]) -> dict:
        params = {}
        if chat_id:
            params["chat_id"] = chat_id
        if user_id:
            params["user_id"] = user_id
        return params

    async def get_me(self) -> dict:
        return await self._request("GET", "/me")

    async def get_updates(self, marker: Optional[int] = None, timeout: int = 30) -> dict:
        """Long-poll for updates. HTTP timeout is longer than the poll timeout."""
        params: dict[str, Any] = {"timeout": timeout, "limit": 100}
        if marker:
            params["marker"] = marker
        return await self._request("GET", "/updates", params=params, timeout=timeout + 10)

    async def send_message(self, text: str, chat_id: Optional[Any] = None, user_id: Optional[Any] = None) -> dict:
        body = {"text": text, "notify": True}
        return await self._request("POST", "/messages", params=self._recipient(chat_id, user_id), json=body)

    async def send_message_with_buttons(
        self,
        text: str,
        buttons: list[list[dict]],
        chat_id: Optional[Any] = None,
        user_id: Optional[Any] = None,
    ) -> dict:
        body = {
            "text": text,
            "attachments": [{"type": "inline_keyboard", "payload": {"buttons": buttons}}],
            "notify": True,
        }
        return await self._request("POST", "/messages", params=self._recipient(chat_id, user_id), json=body)

    async def upload_image(self, image: bytes, filename: str = "image.jpg") -> dict:
        upload = await self._request("POST", "/uploads", params={"type": "image"})
        upload_url = upload.get("url")
        if not upload_url:
            raise MaxApiError("MAX API returned no upload url")
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.post(upload_url, files={"data": (filename, image, "image/jpeg")})
        if response.status_code >= 400:
            raise MaxApiError("MAX image upload failed", status_code=response.status_code)
        return response.json()

    @staticmethod
    def _image_token(upload_result: dict) -> Optional[str]:
        token = upload_result.get("token") or upload_result.get("photoToken")
        if not token and isinstance(upload_result.get("photo"), dict):
            token = upload_result["photo"].get("token")
        if not token and upload_result.get("photos"):
            first = next(iter(upload_result["photos"].values()), None) or {}
            token = first.get("token")
        return token

    async def send_image(
        self,
        image: bytes,
        filename: str = "image.jpg",
        caption: str = "",
        chat_id: Optional[Any] = None,
        user_id: Optional[Any] = None,
        buttons: Optional[list[list[dict]]] = None,
    ) -> dict:
        token = self._image_token(await self.upload_image(image, filename))
        if not token:
            raise MaxApiError("No image token in upload response")

        attachments: list[dict] = [{"type": "image", "payload": {"token": token}}]
        if buttons:
            attachments.append({"type": "inline_keyboard", "payload": {"buttons": buttons}})
        body: dict[str, Any] = {"attachments": attachments, "notify": True}
        if caption:
            body["text"] = caption
        return await self._request("POST", "/messages", params=self._recipient(chat_id, user_id), json=body)

    async def answer_callback(self, callback_id: str, notification: str = "") -> dict:
        return await self._request(
            "POST", "/answers", params={"callback_id": callback_id}, json={"notification": notification or ""}
        )

    async def send_typing_action(self, chat_id: Any) -> None:
        try:
            await self._request("POST", f"/chats/{chat_id}/actions", json={"action": "typing_on"})
        except (MaxApiError, httpx.HTTPError) as e:
            logger.debug(f"Typing action failed for chat {chat_id}: {e}")
