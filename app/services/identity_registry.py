from dataclasses import dataclass
from typing import Optional

from app.logging_config import get_logger
from app.services.session_store import KeyValueStore

logger = get_logger("identity_registry")


def conversation_id_for_chat(chat_id: str) -> str:
    return f"max_{chat_id}"


def chat_id_from_conversation(conversation_id: Optional[str]) -> Optional[str]:
    if conversation_id and conversation_id.startswith("max_"):
        return conversation_id[len("max_"):] or None
    return None


@dataclass
class ChatIdentity:
    """What we know in amoCRM about one MAX user."""

    user_id: str
    crm_contact_id: Optional[int] = None
    crm_conversation_id: Optional[str] = None
    traffic_source_set: bool = False


class IdentityRegistry:
    def __init__(self, store: KeyValueStore):
        self.store = store

    def get(self, user_id: str) -> ChatIdentity:
        identity = self.store.get(user_id)
        if identity is None:
            identity = ChatIdentity(user_id=user_id)
        return identity

    def remember_contact(self, user_id: str, contact_id: int) -> bool:
        """Bind the CRM contact once; a different contact never replaces it."""
        identity = self.get(user_id)
        if identity.crm_contact_id is not None and identity.crm_contact_id != contact_id:
            logger.warning(
                "Conflicting amoCRM contact for MAX user ignored",
                extra={
                    "context": {
                        "user_id": user_id,
                        "known_contact_id": identity.crm_contact_id,
                        "new_contact_id": contact_id,
                    }
                },
            )
            return False
        identity.crm_contact_id = contact_id
        self.store.set(user_id, identity)
        return True

    def forget_contact(self, user_id: str) -> None:
        """Drop a binding whose contact no longer exists in amoCRM."""
        identity = self.get(user_id)
        identity.crm_contact_id = None
        self.store.set(user_id, identity)

    def remember_conversation(self, user_id: str, chat_id: str) -> str:
        identity = self.get(user_id)
        identity.crm_conversation_id = conversation_id_for_chat(chat_id)
        self.store.set(user_id, identity)
        return identity.crm_conversation_id

    def is_traffic_source_set(self, user_id: str) -> bool:
        return self.get(user_id).traffic_source_set

    def mark_traffic_source_set(self, user_id: str) -> None:
        identity = self.get(user_id)
        identity.traffic_source_set = True
        self.store.set(user_id, identity)
