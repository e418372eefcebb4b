from typing import Any, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import init_db
from app.services.amo_service import LEAD_CLOSED_STATUSES, MAX_ID_FIELD_ID, AmoApiError, contact_max_id
from app.services.max_service import MaxApiError


def _max_id_fields(max_id: Optional[str]) -> list[dict]:
    if max_id is None:
        return []
    return [{"field_id": MAX_ID_FIELD_ID, "values": [{"value": str(max_id)}]}]


class FakeAmoGateway:
    """In-memory amoCRM with the AmoService methods the bot uses."""

    def __init__(self):
        self.contacts: dict[int, dict] = {}
        self.leads: dict[int, dict] = {}
        self.links: dict[int, list[int]] = {}
        self.failing_lead_ids: set[int] = set()
        self.calls: list[tuple[str, Any]] = []
        self.lead_updates: list[dict] = []
        self.tasks: list[dict] = []
        self._next_id = 1000

    def _id(self) -> int:
        self._next_id += 1
        return self._next_id

    def add_contact(self, name: str, max_id: Optional[str] = None, contact_id: Optional[int] = None) -> dict:
        contact_id = contact_id or self._id()
        contact = {"id": contact_id, "name": name, "custom_fields_values": _max_id_fields(max_id)}
        self.contacts[contact_id] = contact
        self.links.setdefault(contact_id, [])
        return contact

    def clear_max_id(self, contact_id: int) -> None:
        self.contacts[contact_id]["custom_fields_values"] = []

    def add_lead(self, contact_id: int, lead_id: Optional[int] = None, status_id: int = 1, **extra) -> dict:
        lead_id = lead_id or self._id()
        lead = {"id": lead_id, "status_id": status_id, **extra}
        self.leads[lead_id] = lead
        self.links.setdefault(contact_id, []).append(lead_id)
        return lead

    def is_configured(self) -> bool:
        return True

    async def get_contact(self, contact_id: int) -> Optional[dict]:
        self.calls.append(("get_contact", contact_id))
        return self.contacts.get(contact_id)

    async def find_contact_by_max_id(self, user_id: str) -> Optional[dict]:
        self.calls.append(("find_contact_by_max_id", user_id))
        for contact in self.contacts.values():
            if contact_max_id(contact) == str(user_id):
                return contact
        return None

    async def find_contact_by_name(self, name: str) -> Optional[dict]:
        self.calls.append(("find_contact_by_name", name))
        for contact in self.contacts.values():
            if contact["name"] == name:
                return contact
        return None

    async def create_contact(self, name: str, phone: str = "") -> Optional[dict]:
        self.calls.append(("create_contact", name))
        return self.add_contact(name)

    async def set_contact_max_id(self, contact_id: int, user_id: str) -> Optional[dict]:
        self.calls.append(("set_contact_max_id", (contact_id, user_id)))
        self.contacts[contact_id]["custom_fields_values"] = _max_id_fields(user_id)
        return self.contacts[contact_id]

    async def update_contact(self, contact_id: int, name: Optional[str] = None, phone: Optional[str] = None):
        self.calls.append(("update_contact", (contact_id, name, phone)))
        if name:
            self.contacts[contact_id]["name"] = name
        return self.contacts[contact_id]

    async def get_contact_lead_ids(self, contact_id: int) -> list[int]:
        return list(self.links.get(contact_id, []))

    async def get_lead(self, lead_id: int) -> Optional[dict]:
        if lead_id in self.failing_lead_ids:
            raise AmoApiError(f"lead {lead_id} unavailable", status_code=500)
        return self.leads.get(lead_id)

    async def create_lead(self, name: str, custom_fields=None, contact_id: Optional[int] = None, price: int = 0):
        self.calls.append(("create_lead", name))
        return self.add_lead(contact_id, name=name, custom_fields_values=custom_fields or [])

    async def update_lead(self, lead_id: int, custom_fields: list[dict], status_id: Optional[int] = None):
        self.lead_updates.append({"lead_id": lead_id, "fields": custom_fields, "status_id": status_id})
        lead = self.leads.setdefault(lead_id, {"id": lead_id, "status_id": 1})
        if status_id:
            lead["status_id"] = status_id
        return lead

    async def set_lead_traffic_source(self, lead_id: int):
        self.calls.append(("set_lead_traffic_source", lead_id))
        return self.leads.get(lead_id)

    async def find_task_type_by_name(self, name: str) -> Optional[dict]:
        return {"id": 77, "name": name}

    async def create_task(self, **payload) -> Optional[dict]:
        task = {"id": self._id(), **payload}
        self.tasks.append(task)
        return task

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


class RecordingMax:
    """MAX client that records everything the bot sends."""

    def __init__(self):
        self.sent: list[dict] = []
        self.callbacks_answered: list[str] = []
        self.typing: list[str] = []
        self.fail_for_chats: set[str] = set()
        self.fail_images = False

    async def get_me(self) -> dict:
        return {"user_id": 999, "name": "Orange"}

    async def send_message(self, text: str, chat_id=None, user_id=None) -> dict:
        if chat_id is not None and str(chat_id) in self.fail_for_chats:
            raise RuntimeError("MAX unavailable")
        self.sent.append({"text": text, "chat_id": chat_id, "user_id": user_id, "buttons": None})
        return {"message": {"body": {"mid": f"mid.{len(self.sent)}"}}}

    async def send_message_with_buttons(self, text: str, buttons, chat_id=None, user_id=None) -> dict:
        self.sent.append({"text": text, "chat_id": chat_id, "user_id": user_id, "buttons": buttons})
        return {"message": {"body": {"mid": f"mid.{len(self.sent)}"}}}

    async def send_image(
        self, image: bytes, filename: str = "image.jpg", caption: str = "", chat_id=None, user_id=None, buttons=None
    ) -> dict:
        if self.fail_images:
            raise MaxApiError("MAX image upload failed", status_code=500)
        self.sent.append({"text": caption, "chat_id": chat_id, "user_id": user_id, "buttons": buttons, "image": image})
        return {"message": {"body": {"mid": f"mid.{len(self.sent)}"}}}

    async def answer_callback(self, callback_id: str, notification: str = "") -> dict:
        self.callbacks_answered.append(callback_id)
        return {"success": True}

    async def send_typing_action(self, chat_id) -> None:
        self.typing.append(str(chat_id))

    def texts(self, chat_id: Optional[str] = None) -> list[str]:
        return [item["text"] for item in self.sent if chat_id is None or str(item["chat_id"]) == str(chat_id)]


async def _no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("MAX_BOT_TOKEN", "test-token")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("WEB_FORM_SECRET", "test-secret")
    monkeypatch.setenv("BOT_POLLING_ENABLED", "false")


@pytest.fixture
def session_factory():
    """In-memory SQLite shared across sessions of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def fake_amo():
    return FakeAmoGateway()


@pytest.fixture
def fake_max():
    return RecordingMax()


@pytest.fixture
def closed_status():
    return next(iter(LEAD_CLOSED_STATUSES))


@pytest.fixture
def no_sleep():
    return _no_sleep
