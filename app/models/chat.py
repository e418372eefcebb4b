from sqlalchemy import Boolean, Column, DateTime, Integer, Text

from app.database import Base


class ChatConversation(Base):
    __tablename__ = "chat_conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(Text, unique=True, nullable=False, index=True)
    user_id = Column(Text)
    started_at = Column(DateTime(timezone=True), nullable=False)
    messages_count = Column(Integer, nullable=False, default=0)
    transferred_to_manager = Column(Boolean, nullable=False, default=False)
    bot_disabled = Column(Boolean, nullable=False, default=False)


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(Text, nullable=False, index=True)
    user_id = Column(Text)
    text = Column(Text, nullable=False)
    is_bot_response = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class DisabledChat(Base):
    __tablename__ = "disabled_chats"

    chat_id = Column(Text, primary_key=True)
    disabled_at = Column(DateTime(timezone=True), nullable=False)
    disabled_by = Column(Text)  # user_id, выполнивший /stop
