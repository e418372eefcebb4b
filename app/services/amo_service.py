"""amoCRM REST API v4 gateway: contacts, leads, tasks and OAuth refresh."""

import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from app.logging_config import get_logger

logger = get_logger("amo_service")

MAX_ID_FIELD_ID = 3031503

FULFILLMENT_METHOD_FIELD_ID = 2952799
FULFILLMENT_DELIVERY_ENUM_ID = 1490019
FULFILLMENT_PICKUP_ENUM_ID = 1490021

TRAFFIC_SOURCE_FIELD_ID = 2952895
TRAFFIC_SOURCE_MAX_ENUM_ID = 1807553

BRANCH_FIELD_ID = 3023309

DEAL_TIME_FIELD_ID = 2952511
DEAL_CARD_TEXT_FIELD_ID = 2551395
DEAL_ADDRESS_FIELD_ID = 2553145
DEAL_CUSTOMER_NAME_FIELD_ID = 3031541
DEAL_CUSTOMER_PHONE_FIELD_ID = 3031543
DEAL_RECIPIENT_NAME_FIELD_ID = 2952773
DEAL_RECIPIENT_PHONE_FIELD_ID = 2952771
DEAL_SHIPMENT_DATE_FIELD_ID = 2551383

LEAD_CLOSED_STATUSES = {142, 143}  # 142 успешно, 143 не реализована
QUALIFIED_STATUS_ID = 61597534

# токен обновляется за минуту до истечения
TOKEN_EXPIRY_MARGIN_SECONDS = 60


def placeholder_contact_name(user_id: str) -> str:
    """Name the amoCRM chat channel gives a new MAX contact."""
    return f"Пользователь MAX #{user_id}"


def contact_max_id(contact: dict) -> Optional[str]:
    for field in contact.get("custom_fields_values") or []:
        if field.get("field_id") != MAX_ID_FIELD_ID:
            continue
        values = field.get("values") or []
        if values and values[0].get("value") not in (None, ""):
            return str(values[0]["value"])
    return None


class AmoApiError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        self.message = message
        self.status_code = status_code
        self.body = body
        super().__init__(message)


@dataclass
class AmoTokens:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None


class AmoService:
    def __init__(
        self,
        base_url: Optional[str],
        *,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        pipeline_id: Optional[int] = None,
        status_id: Optional[int] = None,
        timeout: float = 30.0,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.tokens = AmoTokens(access_token=access_token, refresh_token=refresh_token)
        self.pipeline_id = pipeline_id
        self.status_id = status_id
        self.timeout = timeout
        self._phone_field_id: Optional[int] = None

    def is_configured(self) -> bool:
        return bool(self.base_url and self.tokens.access_token)

    async def refresh_access_token(self) -> None:
        if not self.tokens.refresh_token:
            raise AmoApiError("amoCRM refresh_token is not configured")

        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": self.tokens.refresh_token,
            "redirect_uri": self.redirect_uri,
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(f"{self.base_url}/oauth2/access_token", json=payload)
        if response.status_code >= 400:
            raise AmoApiError("amoCRM token refresh failed", status_code=response.status_code, body=response.text)

        data = response.json()
        self.tokens = AmoTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token", self.tokens.refresh_token),
            expires_at=time.time() + int(data.get("expires_in", 0)) - TOKEN_EXPIRY_MARGIN_SECONDS,
        )
        logger.info("amoCRM tokens refreshed")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Any = None,
    ) -> Optional[Any]:
        """Authorized request. Returns None on 204, retries once after a 401 refresh."""
        if self.tokens.expires_at and time.time() >= self.tokens.expires_at:
            await self.refresh_access_token()

        url = f"{self.base_url}{path}"
        retried = False
        while True:
            headers = {"Authorization": f"Bearer {self.tokens.access_token}"}
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, params=params, json=json, headers=headers)

            if response.status_code == 401 and not retried:
                retried = True
                await self.refresh_access_token()
                continue
            break

        if response.status_code == 204:
            return None
        if response.status_code >= 400:
            logger.error(
                "amoCRM API error",
                extra={"context": {"method": method, "path": path, "status": response.status_code}},
            )
            raise AmoApiError(f"amoCRM {method} {path} failed", status_code=response.status_code, body=response.text)
        if not response.content:
            return None
        return response.json()

    @staticmethod
    def _embedded(data: Optional[dict], key: str) -> list[dict]:
        if not data:
            return []
        return (data.get("_embedded") or {}).get(key) or []

    # Контакты

    async def search_contacts(self, query: str, with_custom_fields: bool = False) -> list[dict]:
        params: dict[str, Any] = {"query": query}
        if with_custom_fields:
            params["with"] = "custom_fields_values"
        data = await self._request("GET", "/api/v4/contacts", params=params)
        return self._embedded(data, "contacts")

    async def find_contact_by_max_id(self, user_id: str) -> Optional[dict]:
        for contact in await self.search_contacts(str(user_id), with_custom_fields=True):
            if contact_max_id(contact) == str(user_id):
                return contact
        return None

    async def get_contact(self, contact_id: int) -> Optional[dict]:
        """Contact by id, None when amoCRM no longer has it."""
        try:
            return await self._request("GET", f"/api/v4/contacts/{contact_id}")
        except AmoApiError as e:
            if e.status_code == 404:
                return None
            raise

    async def find_contact_by_name(self, name: str) -> Optional[dict]:
        for contact in await self.search_contacts(name):
            if contact.get("name") == name:
                return contact
        return None

    async def create_contact(self, name: str, phone: str = "") -> Optional[dict]:
        payload: dict[str, Any] = {"name": name}
        if phone:
            payload["custom_fields_values"] = [
                {"field_code": "PHONE", "values": [{"value": phone, "enum_code": "WORK"}]}
            ]
        data = await self._request("POST", "/api/v4/contacts", json=[payload])
        contacts = self._embedded(data, "contacts")
        if not contacts:
            return None
        logger.info(f"amoCRM: contact #{contacts[0].get('id')} created ({name})")
        return contacts[0]

    async def set_contact_max_id(self, contact_id: int, user_id: str) -> Optional[dict]:
        payload = {
            "id": contact_id,
            "custom_fields_values": [{"field_id": MAX_ID_FIELD_ID, "values": [{"value": str(user_id)}]}],
        }
        data = await self._request("PATCH", "/api/v4/contacts", json=[payload])
        contacts = self._embedded(data, "contacts")
        return contacts[0] if contacts else None

    async def get_contact_custom_fields(self) -> list[dict]:
        data = await self._request("GET", "/api/v4/contacts/custom_fields")
        return self._embedded(data, "custom_fields")

    async def update_contact(
        self, contact_id: int, name: Optional[str] = None, phone: Optional[str] = None
    ) -> Optional[dict]:
        if phone and self._phone_field_id is None:
            for field in await self.get_contact_custom_fields():
                if field.get("code") == "PHONE":
                    self._phone_field_id = field.get("id")
                    break

        payload: dict[str, Any] = {"id": contact_id}
        if name:
            payload["name"] = name
        if phone and self._phone_field_id:
            payload["custom_fields_values"] = [{"field_id": self._phone_field_id, "values": [{"value": phone}]}]

        data = await self._request("PATCH", "/api/v4/contacts", json=[payload])
        contacts = self._embedded(data, "contacts")
        return contacts[0] if contacts else None

    async def get_contact_lead_ids(self, contact_id: int) -> list[int]:
        data = await self._request("GET", f"/api/v4/contacts/{contact_id}/links")
        return [
            int(link["to_entity_id"])
            for link in self._embedded(data, "links")
            if link.get("to_entity_type") == "leads"
        ]

    # Сделки

    async def get_lead(self, lead_id: int) -> Optional[dict]:
        return await self._request("GET", f"/api/v4/leads/{lead_id}")

    async def create_lead(
        self,
        name: str,
        custom_fields: Optional[list[dict]] = None,
        contact_id: Optional[int] = None,
        price: int = 0,
    ) -> Optional[dict]:
        payload: dict[str, Any] = {
            "name": name,
            "price": price,
            "custom_fields_values": custom_fields or [],
        }
        if self.pipeline_id:
            payload["pipeline_id"] = int(self.pipeline_id)
        if self.status_id:
            payload["status_id"] = int(self.status_id)
        if contact_id:
            payload["_embedded"] = {"contacts": [{"id": contact_id}]}

        data = await self._request("POST", "/api/v4/leads", json=[payload])
        leads = self._embedded(data, "leads")
        if not leads:
            return None
        logger.info(f"amoCRM: lead #{leads[0].get('id')} created")
        return leads[0]

    async def update_lead(
        self,
        lead_id: int,
        custom_fields: list[dict],
        status_id: Optional[int] = None,
    ) -> Optional[dict]:
        payload: dict[str, Any] = {"id": lead_id, "custom_fields_values": custom_fields}
        if status_id:
            payload["status_id"] = status_id
        data = await self._request("PATCH", "/api/v4/leads", json=[payload])
        leads = self._embedded(data, "leads")
        return leads[0] if leads else None

    async def set_lead_traffic_source(self, lead_id: int) -> Optional[dict]:
        return await self.update_lead(
            lead_id,
            [{"field_id": TRAFFIC_SOURCE_FIELD_ID, "values": [{"enum_id": TRAFFIC_SOURCE_MAX_ENUM_ID}]}],
        )

    # Задачи

    async def get_task_types(self) -> list[dict]:
        data = await self._request("GET", "/api/v4/task_types")
        return self._embedded(data, "task_types")

    async def find_task_type_by_name(self, name: str) -> Optional[dict]:
        for task_type in await self.get_task_types():
            if task_type.get("name") == name:
                return task_type
        return None

    async def create_task(
        self,
        *,
        lead_id: int,
        responsible_user_id: int,
        text: str,
        task_type_id: int,
        complete_till: int,
    ) -> Optional[dict]:
        payload = {
            "text": text,
            "task_type_id": task_type_id,
            "complete_till": complete_till,
            "responsible_user_id": responsible_user_id,
            "entity_id": lead_id,
            "entity_type": "leads",
        }
        data = await self._request("POST", "/api/v4/tasks", json=[payload])
        tasks = self._embedded(data, "tasks")
        return tasks[0] if tasks else None
