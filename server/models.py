"""
Модели базы данных для приложения.

Этот файл определяет модели SQLAlchemy: хранилище сообщений (append-only),
сводки чатов и пользователей, счетчики сообщений и список разрешенных чатов.
"""

from datetime import datetime
from sqlalchemy import (
    BigInteger, Boolean, DateTime, Index, Integer, JSON, String, Text, UniqueConstraint, func, false
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from server.schemas import ScopeKey, topic_key_for

# BIGSERIAL в PostgreSQL, INTEGER PRIMARY KEY (rowid) в SQLite
BigIntPK = BigInteger().with_variant(Integer, "sqlite")
JSONType = JSON().with_variant(JSONB, "postgresql")


# Базовый класс для наших моделей
class Base(DeclarativeBase):
    """
    Базовый класс для всех моделей SQLAlchemy.
    """
    pass


class Message(Base):
    """
    Сообщение чата. Неизменяемый факт: строки только добавляются.

    Attributes:
        id (int): Внутренний идентификатор (монотонно растет).
        telegram_msg_id (int): ID сообщения в Telegram.
        chat_id (int): ID чата.
        topic_id (int | None): ID топика (треда) или None для основного потока.
        user_id (int): ID отправителя.
        is_bot (bool): Сообщение написано ботом.
        user_first_name (str): Имя отправителя.
        user_last_name (str | None): Фамилия отправителя.
        username (str | None): @username отправителя без '@'.
        text (str | None): Текст или подпись.
        created_at (datetime): Время создания.
    """
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    telegram_msg_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    chat_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    topic_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    is_bot: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false(), nullable=False)
    user_first_name: Mapped[str] = mapped_column(String(255), default="", server_default="", nullable=False)
    user_last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_messages_chat_topic_id', 'chat_id', 'topic_id', 'id'),
        Index('idx_messages_created_at', 'created_at'),
    )

    @property
    def scope(self) -> ScopeKey:
        return ScopeKey(self.chat_id, self.topic_id)


class ChatSummary(Base):
    """
    Накопительная сводка по паре (чат, топик). Перезаписывается при каждом
    успешном суммировании, история живет только внутри текста и карт.

    Attributes:
        id (int): Уникальный идентификатор записи.
        chat_id (int): ID чата.
        topic_id (int | None): ID топика или None для основного потока.
        topic_key (int): Ненулевой ключ топика для уникального индекса.
        summary (str): Текст сводки.
        topics (dict): Тема -> частота упоминаний.
        next_events (list): Предстоящие события [{title, date}].
        last_message_id (int | None): ID последнего сообщения, вошедшего в сводку.
    """
    __tablename__ = "chat_summaries"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    chat_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    topic_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    topic_key: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default='0')
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    topics: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    next_events: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    last_message_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('chat_id', 'topic_key', name='uq_chat_summaries_chat_topic'),
    )

    @property
    def scope(self) -> ScopeKey:
        return ScopeKey(self.chat_id, self.topic_id)

    def state_dict(self) -> dict:
        """Состояние сводки в том виде, в котором его видит модель."""
        return {
            "summary": self.summary,
            "topics": self.topics or {},
            "next_events": self.next_events or [],
        }


class UserSummary(Base):
    """
    Поведенческий профиль участника в пределах чата (без учета топиков).

    Attributes:
        likes / dislikes / competencies (dict): Тема -> оценка.
        traits (dict): Произвольные черты характера.
        username, first_name, last_name: Кэш имени, обновляется из пачки сообщений.
    """
    __tablename__ = "user_summaries"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    chat_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    likes: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    dislikes: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    competencies: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    traits: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('chat_id', 'user_id', name='uq_user_summaries_chat_user'),
    )

    def profile_dict(self) -> dict:
        """Профиль в том виде, в котором его видит модель."""
        return {
            "likes": self.likes or {},
            "dislikes": self.dislikes or {},
            "competencies": self.competencies or {},
            "traits": self.traits or {},
        }


class MessageCounter(Base):
    """
    Счетчик сообщений по паре (чат, топик) с момента последнего сброса.
    Используется только как триггер суммирования.
    """
    __tablename__ = "message_counters"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    chat_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    topic_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    topic_key: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default='0')
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('chat_id', 'topic_key', name='uq_message_counters_chat_topic'),
    )


class AllowedChat(Base):
    """Чат, в котором боту разрешено работать."""
    __tablename__ = "allowed_chats"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    chat_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)


__all__ = [
    "Base", "Message", "ChatSummary", "UserSummary", "MessageCounter", "AllowedChat", "topic_key_for",
]
