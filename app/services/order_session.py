"""Per-chat order form state.

Sessions live in a KeyValueStore keyed by chat id. Every mutation writes
the session back so a non-memory store sees the change.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from app.logging_config import get_logger
from app.schemas.order import CompletedOrder
from app.services.session_store import KeyValueStore
from app.services.state_machine import OrderStep, advance, transition

logger = get_logger("order_session")

ASK_RECIPIENT_ADDRESS = "Узнать у получателя"
NO_CARD_TEXT = "Без подписи"

TIME_SLOT_LABELS = {
    "morning": "Утро (9:00-12:00)",
    "afternoon": "День (12:00-17:00)",
    "evening": "Вечер (17:00-21:00)",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OrderFlags:
    exact_time_requested: bool = False
    ask_recipient_address: bool = False


@dataclass
class OrderSession:
    chat_id: str
    step: OrderStep = OrderStep.DATE
    answers: dict[str, Any] = field(default_factory=dict)
    flags: OrderFlags = field(default_factory=OrderFlags)
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    def answer(self, step: OrderStep) -> Optional[Any]:
        return self.answers.get(step.value)

    def to_order(self) -> CompletedOrder:
        answers = self.answers
        exact_time = answers.get("exactTimeValue") if self.flags.exact_time_requested else None
        return CompletedOrder(
            date=answers.get(OrderStep.DATE.value) or "",
            time=answers.get(OrderStep.TIME.value) or "",
            address=answers.get(OrderStep.ADDRESS.value),
            card_text=answers.get(OrderStep.CARD_TEXT.value) or NO_CARD_TEXT,
            your_name=answers.get(OrderStep.YOUR_NAME.value) or "",
            your_phone=answers.get(OrderStep.YOUR_PHONE.value) or "",
            recipient_name=answers.get(OrderStep.RECIPIENT_NAME.value),
            recipient_phone=answers.get(OrderStep.RECIPIENT_PHONE.value),
            exact_time_value=exact_time,
        )


class OrderSessionService:
    def __init__(self, store: KeyValueStore):
        self.store = store

    def start(self, chat_id: str) -> OrderSession:
        session = OrderSession(chat_id=chat_id)
        self.store.set(chat_id, session)
        logger.info("Order session started", extra={"context": {"chat_id": chat_id}})
        return session

    def get(self, chat_id: str) -> Optional[OrderSession]:
        return self.store.get(chat_id)

    def has_active(self, chat_id: str) -> bool:
        return self.store.get(chat_id) is not None

    def _save(self, session: OrderSession) -> OrderSession:
        self.store.set(session.chat_id, session)
        return session

    def save_answer(self, chat_id: str, value: Any) -> Optional[OrderSession]:
        """Store the answer for the current step and move to the next one.

        Reaching ADDRESS with ask_recipient_address set fills the sentinel
        address and continues straight to CARD_TEXT.
        """
        session = self.get(chat_id)
        if session is None:
            return None

        session.answers[session.step.value] = value
        session.step = advance(session.step)

        if session.step == OrderStep.ADDRESS and session.flags.ask_recipient_address:
            session.answers[OrderStep.ADDRESS.value] = ASK_RECIPIENT_ADDRESS
            session.step = transition(OrderStep.ADDRESS, OrderStep.CARD_TEXT)

        return self._save(session)

    # переход проверяется до записи, устаревшая кнопка не трогает ответы
    def choose_time_slot(self, chat_id: str, slot: str) -> Optional[OrderSession]:
        session = self.get(chat_id)
        if session is None:
            return None
        next_step = transition(session.step, OrderStep.ADDRESS)
        session.answers[OrderStep.TIME.value] = TIME_SLOT_LABELS.get(slot, slot)
        session.step = next_step
        return self._save(session)

    def request_exact_time(self, chat_id: str) -> Optional[OrderSession]:
        session = self.get(chat_id)
        if session is None:
            return None
        next_step = transition(session.step, OrderStep.EXACT_TIME)
        session.flags.exact_time_requested = True
        session.step = next_step
        return self._save(session)

    def save_exact_time(self, chat_id: str, text: str) -> Optional[OrderSession]:
        session = self.get(chat_id)
        if session is None:
            return None
        next_step = transition(session.step, OrderStep.ADDRESS)
        session.answers["exactTimeValue"] = text
        session.answers[OrderStep.TIME.value] = f"Точно в {text}"
        session.step = next_step
        return self._save(session)

    def ask_recipient_for_address(self, chat_id: str) -> Optional[OrderSession]:
        session = self.get(chat_id)
        if session is None:
            return None
        next_step = transition(session.step, OrderStep.CARD_TEXT)
        session.answers[OrderStep.ADDRESS.value] = ASK_RECIPIENT_ADDRESS
        session.flags.ask_recipient_address = True
        session.step = next_step
        return self._save(session)

    def skip_card_text(self, chat_id: str) -> Optional[OrderSession]:
        session = self.get(chat_id)
        if session is None:
            return None
        next_step = transition(session.step, OrderStep.YOUR_NAME)
        session.answers[OrderStep.CARD_TEXT.value] = NO_CARD_TEXT
        session.step = next_step
        return self._save(session)

    def complete(self, chat_id: str) -> Optional[OrderSession]:
        session = self.get(chat_id)
        if session is None:
            return None
        session.completed_at = _utcnow()
        self.store.delete(chat_id)
        logger.info("Order session completed", extra={"context": {"chat_id": chat_id}})
        return session

    def cancel(self, chat_id: str) -> bool:
        existed = self.has_active(chat_id)
        self.store.delete(chat_id)
        if existed:
            logger.info("Order session cancelled", extra={"context": {"chat_id": chat_id}})
        return existed
