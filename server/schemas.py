"""
Pydantic-схемы: события шины, ответы модели и контекст ответа.

Все, что приходит от модели, считается недоверенным: схемы приводят значения
к замкнутому скалярному типу (int | float | str), ограничивают размер карт
и очищают текст от разметки.
"""

import json
import math
from datetime import datetime, timezone
from typing import Any, NamedTuple, Union

import bleach
from pydantic import BaseModel, Field, StrictInt, field_validator

from config import SUMMARY_MAX_MAP_ENTRIES, SUMMARY_MAX_EVENTS

# Значение в картах topics/likes/dislikes/competencies/traits
Scalar = Union[StrictInt, float, str]

MAX_TEXT_VALUE_LENGTH = 500


def topic_key_for(topic_id: int | None) -> int:
    """Ненулевой ключ топика для уникальных индексов: 0 означает основной поток."""
    return topic_id if topic_id else 0


class ScopeKey(NamedTuple):
    """
    Область разговора: чат плюс необязательный топик.
    None - самостоятельный ключ (основной поток), а не "любой топик".
    """
    chat_id: int
    topic_id: int | None = None

    @property
    def topic_key(self) -> int:
        return topic_key_for(self.topic_id)

    def __str__(self) -> str:
        topic = self.topic_id if self.topic_id is not None else "main"
        return f"chat={self.chat_id} topic={topic}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clean_text(value: str) -> str:
    """Удаляет HTML-разметку из текста, сгенерированного моделью."""
    return bleach.clean(value, tags=[], strip=True).strip()


def coerce_scalar(value: Any) -> Scalar | None:
    """
    Приводит произвольное JSON-значение к int | float | str.
    None, NaN и бесконечности отбрасываются, списки склеиваются через запятую,
    объекты сериализуются в JSON.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "да" if value else "нет"
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        return clean_text(value)[:MAX_TEXT_VALUE_LENGTH]
    if isinstance(value, (list, tuple)):
        return ", ".join(str(coerce_scalar(item)) for item in value if item is not None)[:MAX_TEXT_VALUE_LENGTH]
    return json.dumps(value, ensure_ascii=False)[:MAX_TEXT_VALUE_LENGTH]


def bound_scalar_map(value: Any, max_entries: int = SUMMARY_MAX_MAP_ENTRIES) -> dict:
    """
    Нормализует карту "метка -> значение" и ограничивает ее размер.
    Если все значения числовые, сохраняются записи с наибольшими значениями,
    иначе - первые по порядку.
    """
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError("ожидался JSON-объект")

    result = {}
    for key, raw in value.items():
        label = clean_text(str(key))
        scalar = coerce_scalar(raw)
        if not label or scalar is None or scalar == "":
            continue
        result[label] = scalar

    if len(result) > max_entries:
        if all(isinstance(v, (int, float)) for v in result.values()):
            ranked = sorted(result.items(), key=lambda item: item[1], reverse=True)
        else:
            ranked = list(result.items())
        result = dict(ranked[:max_entries])
    return result


# --- События шины ---

class SummarizeEvent(BaseModel):
    """
    Запрос на суммирование одной области (чат, топик).

    Attributes:
        chat_id (int): ID чата.
        topic_id (int | None): ID топика или None.
        timestamp (datetime): Время публикации.
    """
    chat_id: int
    topic_id: int | None = None
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("chat_id")
    @classmethod
    def chat_id_not_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("chat_id не может быть 0")
        return v

    @property
    def scope(self) -> ScopeKey:
        return ScopeKey(self.chat_id, self.topic_id)


class MentionEvent(BaseModel):
    """
    Бот упомянут или получил ответ на свое сообщение.

    Attributes:
        chat_id, topic_id, user_id: Откуда и от кого.
        user_name, user_last_name, username: Имя автора.
        message_id (int): ID сообщения в Telegram, на которое отвечаем.
        text (str): Исходный текст (с упоминанием).
        reply_to_message_id, reply_to_text, reply_to_is_bot: Контекст ответа.
    """
    chat_id: int
    topic_id: int | None = None
    user_id: int
    user_name: str = ""
    user_last_name: str | None = None
    username: str | None = None
    message_id: int
    text: str = ""
    reply_to_message_id: int | None = None
    reply_to_text: str | None = None
    reply_to_is_bot: bool = False
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("chat_id", "user_id", "message_id")
    @classmethod
    def ids_not_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("идентификатор не может быть 0")
        return v

    @property
    def scope(self) -> ScopeKey:
        return ScopeKey(self.chat_id, self.topic_id)


class MidnightEvent(BaseModel):
    """Наступила локальная полночь."""
    triggered_at: datetime = Field(default_factory=utcnow)


# --- Ответ модели на запрос суммирования ---

class NextEvent(BaseModel):
    title: str
    date: str | None = None

    @field_validator("title")
    @classmethod
    def clean_title(cls, v: str) -> str:
        v = clean_text(v)
        if not v:
            raise ValueError("пустое название события")
        return v[:MAX_TEXT_VALUE_LENGTH]

    @field_validator("date", mode="before")
    @classmethod
    def clean_date(cls, v: Any) -> str | None:
        if v is None or v == "":
            return None
        return clean_text(str(v))[:64] or None


class ChatSummaryData(BaseModel):
    """Новое состояние сводки чата, как его вернула модель."""
    summary: str
    topics: dict[str, Scalar] = Field(default_factory=dict)
    next_events: list[NextEvent] = Field(default_factory=list)

    @field_validator("summary")
    @classmethod
    def clean_summary(cls, v: str) -> str:
        return clean_text(v)

    @field_validator("topics", mode="before")
    @classmethod
    def bound_topics(cls, v: Any) -> dict:
        return bound_scalar_map(v)

    @field_validator("next_events", mode="before")
    @classmethod
    def bound_events(cls, v: Any) -> list:
        if v is None:
            return []
        if not isinstance(v, list):
            raise ValueError("next_events должен быть списком")
        # Строки вида "Встреча в субботу" превращаем в события без даты
        events = [{"title": item} if isinstance(item, str) else item for item in v]
        return events[:SUMMARY_MAX_EVENTS]


class UserProfileData(BaseModel):
    """Новое состояние профиля участника."""
    likes: dict[str, Scalar] = Field(default_factory=dict)
    dislikes: dict[str, Scalar] = Field(default_factory=dict)
    competencies: dict[str, Scalar] = Field(default_factory=dict)
    traits: dict[str, Scalar] = Field(default_factory=dict)

    @field_validator("likes", "dislikes", "competencies", "traits", mode="before")
    @classmethod
    def bound_maps(cls, v: Any) -> dict:
        return bound_scalar_map(v)


class SummarizeResponse(BaseModel):
    chat_summary: ChatSummaryData
    user_profiles: dict[str, UserProfileData] = Field(default_factory=dict)

    @field_validator("user_profiles", mode="before")
    @classmethod
    def profiles_or_empty(cls, v: Any) -> Any:
        return {} if v is None else v


# --- Ответ модели на упоминание ---

class MentionReply(BaseModel):
    """
    Решение модели: что ответить и какую реакцию поставить.

    Attributes:
        response (str): Текст ответа.
        should_reply (bool): Отправлять ли текст.
        reaction (str): Эмодзи-реакция на исходное сообщение (может быть пустой).
    """
    response: str = ""
    should_reply: bool = True
    reaction: str = ""

    @field_validator("response", "reaction", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()


# --- Контекст ответа ---

class ResponseContext(BaseModel):
    """
    Все, что нужно для генерации ответа на упоминание.

    Attributes:
        chat_summary (dict | None): Состояние сводки области или None.
        user_profile (dict | None): Профиль автора в чате или None.
        recent_messages (list[str]): Хвост сообщений после сводки, в хронологическом порядке.
        user_query (str): Вопрос без токена упоминания.
    """
    chat_id: int
    topic_id: int | None = None
    user_id: int
    user_name: str = ""
    username: str | None = None
    chat_summary: dict | None = None
    user_profile: dict | None = None
    recent_messages: list[str] = Field(default_factory=list)
    user_query: str
    reply_to_text: str | None = None
    reply_to_is_bot: bool = False
