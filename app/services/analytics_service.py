from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import ChatConversation, ChatMessage, DisabledChat

logger = get_logger("analytics_service")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnalyticsService:
    """Conversation log, per-chat bot switch and /stats numbers."""

    def __init__(self, session_factory: Callable[[], Session], clock: Callable[[], datetime] = _utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def _get_or_create_conversation(self, db: Session, chat_id: str, user_id: Optional[str]) -> ChatConversation:
        conversation = db.query(ChatConversation).filter(ChatConversation.chat_id == chat_id).first()
        if not conversation:
            conversation = ChatConversation(
                chat_id=chat_id,
                user_id=user_id,
                started_at=self.clock(),
                messages_count=0,
                transferred_to_manager=False,
                bot_disabled=False,
            )
            db.add(conversation)
            db.flush()
        return conversation

    def log_message(self, chat_id: str, user_id: Optional[str], text: str, is_bot_response: bool = False) -> None:
        with self.session_factory() as db:
            conversation = self._get_or_create_conversation(db, chat_id, user_id)
            db.add(
                ChatMessage(
                    chat_id=chat_id,
                    user_id=user_id,
                    text=text,
                    is_bot_response=is_bot_response,
                    created_at=self.clock(),
                )
            )
            conversation.messages_count = (conversation.messages_count or 0) + 1
            db.commit()

    def mark_transferred_to_manager(self, chat_id: str, user_id: Optional[str] = None) -> None:
        with self.session_factory() as db:
            conversation = self._get_or_create_conversation(db, chat_id, user_id)
            conversation.transferred_to_manager = True
            db.commit()

    def disable_bot(self, chat_id: str, disabled_by: Optional[str] = None) -> None:
        with self.session_factory() as db:
            db.merge(DisabledChat(chat_id=chat_id, disabled_at=self.clock(), disabled_by=disabled_by))
            db.query(ChatConversation).filter(ChatConversation.chat_id == chat_id).update({"bot_disabled": True})
            db.commit()
        logger.info("Bot disabled for chat", extra={"context": {"chat_id": chat_id, "disabled_by": disabled_by}})

    def enable_bot(self, chat_id: str) -> None:
        with self.session_factory() as db:
            db.query(DisabledChat).filter(DisabledChat.chat_id == chat_id).delete()
            db.query(ChatConversation).filter(ChatConversation.chat_id == chat_id).update({"bot_disabled": False})
            db.commit()
        logger.info("Bot enabled for chat", extra={"context": {"chat_id": chat_id}})

    def is_bot_disabled(self, chat_id: str) -> bool:
        with self.session_factory() as db:
            return db.get(DisabledChat, chat_id) is not None

    def active_chat_ids(self, exclude: Optional[str] = None) -> list[str]:
        """Chats for /broadcast: every known chat where the bot is on."""
        with self.session_factory() as db:
            query = (
                db.query(ChatConversation.chat_id)
                .outerjoin(DisabledChat, DisabledChat.chat_id == ChatConversation.chat_id)
                .filter(DisabledChat.chat_id.is_(None))
            )
            if exclude:
                query = query.filter(ChatConversation.chat_id != exclude)
            return [row.chat_id for row in query.order_by(ChatConversation.id).all()]

    def get_statistics(self) -> dict:
        now = self.clock()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_ago = today - timedelta(days=7)
        month_ago = today - timedelta(days=30)

        with self.session_factory() as db:

            def started_since(moment: datetime) -> int:
                return (
                    db.query(func.count(ChatConversation.id)).filter(ChatConversation.started_at >= moment).scalar()
                    or 0
                )

            return {
                "conversations": {
                    "total": db.query(func.count(ChatConversation.id)).scalar() or 0,
                    "today": started_since(today),
                    "week": started_since(week_ago),
                    "month": started_since(month_ago),
                    "transferred_to_manager": db.query(func.count(ChatConversation.id))
                    .filter(ChatConversation.transferred_to_manager.is_(True))
                    .scalar()
                    or 0,
                },
                "messages": {"total": db.query(func.count(ChatMessage.id)).scalar() or 0},
            }

    def format_statistics(self) -> str:
        stats = self.get_statistics()
        conversations = stats["conversations"]
        return (
            "Статистика бота Orange\n\n"
            "Диалогов:\n"
            f"- Сегодня: {conversations['today']}\n"
            f"- За неделю: {conversations['week']}\n"
            f"- За месяц: {conversations['month']}\n"
            f"- Всего: {conversations['total']}\n\n"
            f"Передано менеджерам: {conversations['transferred_to_manager']}\n"
            f"Всего сообщений: {stats['messages']['total']}\n"
        )
