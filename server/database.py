"""
Модуль для работы с базой данных.

Этот файл содержит функции для взаимодействия с базой данных: хранилище
сообщений, сводки чатов и пользователей, атомарные счетчики сообщений,
список разрешенных чатов и запросы статистики.
"""

from datetime import datetime, timezone
from typing import NamedTuple
import logging

from sqlalchemy import DateTime, select, update, func, case, text, type_coerce
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from config import DATABASE_URL, SLOW_QUERY_THRESHOLD
from server.models import Base, Message, ChatSummary, UserSummary, MessageCounter, AllowedChat
from server.schemas import ScopeKey, topic_key_for
from utils.db_monitoring import setup_query_monitoring

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    """Параметры пула: SQLite в памяти (тесты) держит одно соединение."""
    if url.startswith("sqlite"):
        return {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }
    return {
        "pool_size": 20,  # Количество соединений, которые будут оставаться открытыми в пуле
        "max_overflow": 10,  # Максимальное количество "дополнительных" соединений сверх pool_size
        "pool_timeout": 30,  # Время в секундах, которое можно ждать соединения
        "pool_recycle": 1800,  # Пересоздание соединений, чтобы избежать "устаревших"
    }


# Создаем асинхронный "движок" и фабрику сессий
async_engine = create_async_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
async_session_factory = async_sessionmaker(async_engine, expire_on_commit=False)

# Настраиваем мониторинг запросов
setup_query_monitoring(async_engine, threshold=SLOW_QUERY_THRESHOLD)


def _insert(model):
    """
    INSERT с поддержкой ON CONFLICT для текущего диалекта.
    Core-style insert через __table__, чтобы не включать ORM bulk insert.
    """
    if async_engine.dialect.name == "postgresql":
        return postgresql.insert(model.__table__)
    return sqlite.insert(model.__table__)


def _topic_filter(column, topic_id: int | None):
    """Точное совпадение топика: None совпадает только с None."""
    if topic_id is None:
        return column.is_(None)
    return column == topic_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Функция для инициализации БД (создания таблицы)
async def init_db():
    """Инициализирует базу данных, создавая все таблицы."""
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ping_database() -> bool:
    """Проверяет соединение с БД (для /health и старта)."""
    async with async_session_factory() as session:
        await session.execute(text("SELECT 1"))
    return True


# --- Разрешенные чаты ---

async def seed_allowed_chats(chat_ids: list[int]) -> int:
    """
    Добавляет чаты из конфигурации в allowed_chats. Уже существующие пропускаются.

    Returns:
        int: Количество переданных ID.
    """
    if not chat_ids:
        return 0
    try:
        async with async_session_factory() as session:
            stmt = _insert(AllowedChat).values([{"chat_id": chat_id} for chat_id in chat_ids])
            stmt = stmt.on_conflict_do_nothing(index_elements=['chat_id'])
            await session.execute(stmt)
            await session.commit()
        logger.info(f"Список разрешенных чатов обновлен: {chat_ids}")
        return len(chat_ids)
    except SQLAlchemyError as e:
        logger.error(f"Ошибка БД при заполнении allowed_chats: {e}", exc_info=True)
        raise


async def is_allowed_chat(chat_id: int) -> bool:
    """Проверяет, разрешено ли боту работать в чате."""
    async with async_session_factory() as session:
        result = await session.execute(
            select(AllowedChat.id).where(AllowedChat.chat_id == chat_id).limit(1)
        )
        return result.scalar() is not None


# --- Сообщения ---

async def save_message(message: Message) -> Message:
    """
    Сохраняет сообщение. Хранилище только дополняется, строки не изменяются.

    Returns:
        Message: Сохраненное сообщение с присвоенным id.
    """
    if message.created_at is None:
        message.created_at = _utcnow()
    try:
        async with async_session_factory() as session:
            session.add(message)
            await session.commit()
            return message
    except SQLAlchemyError as e:
        logger.error(f"Ошибка БД при сохранении сообщения в {message.scope}: {e}", exc_info=True)
        raise


async def get_latest_messages(scope: ScopeKey, limit: int) -> list[Message]:
    """Последние `limit` сообщений области, от новых к старым."""
    async with async_session_factory() as session:
        result = await session.execute(
            select(Message)
            .where(Message.chat_id == scope.chat_id, _topic_filter(Message.topic_id, scope.topic_id))
            .order_by(Message.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


async def get_messages_after_id(scope: ScopeKey, after_id: int | None, limit: int) -> list[Message]:
    """
    Сообщения области с id больше `after_id` (все, если None).
    Возвращает не более `limit` самых новых в хронологическом порядке.
    """
    conditions = [Message.chat_id == scope.chat_id, _topic_filter(Message.topic_id, scope.topic_id)]
    if after_id is not None:
        conditions.append(Message.id > after_id)
    async with async_session_factory() as session:
        result = await session.execute(
            select(Message).where(*conditions).order_by(Message.id.desc()).limit(limit)
        )
        messages = list(result.scalars().all())
    messages.reverse()
    return messages


async def get_active_scopes(since: datetime) -> list[ScopeKey]:
    """Все пары (чат, топик), в которых были сообщения начиная с `since`."""
    async with async_session_factory() as session:
        result = await session.execute(
            select(Message.chat_id, Message.topic_id)
            .where(Message.created_at >= since)
            .group_by(Message.chat_id, Message.topic_id)
            .order_by(Message.chat_id, Message.topic_id)
        )
        return [ScopeKey(chat_id, topic_id) for chat_id, topic_id in result.all()]


# --- Сводки ---

async def get_chat_summary(scope: ScopeKey) -> ChatSummary | None:
    """Извлекает сводку для области (чат, топик)."""
    async with async_session_factory() as session:
        result = await session.execute(
            select(ChatSummary)
            .where(ChatSummary.chat_id == scope.chat_id, ChatSummary.topic_key == scope.topic_key)
            .limit(1)
        )
        return result.scalars().first()


async def get_user_summary(chat_id: int, user_id: int) -> UserSummary | None:
    async with async_session_factory() as session:
        result = await session.execute(
            select(UserSummary).where(UserSummary.chat_id == chat_id, UserSummary.user_id == user_id)
        )
        return result.scalars().first()


async def get_user_summaries(chat_id: int, user_ids: list[int]) -> dict[int, UserSummary]:
    """Профили нескольких участников чата одним запросом: user_id -> UserSummary."""
    if not user_ids:
        return {}
    async with async_session_factory() as session:
        result = await session.execute(
            select(UserSummary).where(UserSummary.chat_id == chat_id, UserSummary.user_id.in_(user_ids))
        )
        return {summary.user_id: summary for summary in result.scalars().all()}


async def upsert_chat_summary(
    scope: ScopeKey,
    summary: str,
    topics: dict,
    next_events: list[dict],
    last_message_id: int | None,
) -> None:
    """
    Атомарно создает или перезаписывает сводку области (UPSERT).
    При гонке двух суммирований одной области побеждает последняя запись.
    """
    now = _utcnow()
    data = {
        "summary": summary,
        "topics": topics,
        "next_events": next_events,
        "last_message_id": last_message_id,
        "updated_at": now,
    }
    try:
        async with async_session_factory() as session:
            stmt = _insert(ChatSummary).values(
                chat_id=scope.chat_id,
                topic_id=scope.topic_id,
                topic_key=scope.topic_key,
                created_at=now,
                **data,
            )
            stmt = stmt.on_conflict_do_update(index_elements=['chat_id', 'topic_key'], set_=data)
            await session.execute(stmt)
            await session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Ошибка БД при сохранении сводки {scope}: {e}", exc_info=True)
        raise


async def upsert_user_summary(
    chat_id: int,
    user_id: int,
    likes: dict,
    dislikes: dict,
    competencies: dict,
    traits: dict,
    username: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
) -> None:
    """Атомарно создает или перезаписывает профиль участника в чате."""
    now = _utcnow()
    data = {
        "likes": likes,
        "dislikes": dislikes,
        "competencies": competencies,
        "traits": traits,
        "username": username,
        "first_name": first_name,
        "last_name": last_name,
        "updated_at": now,
    }
    try:
        async with async_session_factory() as session:
            stmt = _insert(UserSummary).values(chat_id=chat_id, user_id=user_id, created_at=now, **data)
            stmt = stmt.on_conflict_do_update(index_elements=['chat_id', 'user_id'], set_=data)
            await session.execute(stmt)
            await session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Ошибка БД при сохранении профиля user {user_id} в чате {chat_id}: {e}", exc_info=True)
        raise


# --- Счетчики ---

async def increment_message_counter(scope: ScopeKey, threshold: int) -> int:
    """
    Атомарно увеличивает счетчик области и сбрасывает его при достижении порога.

    Инкремент, сравнение с порогом и сброс выполняются одним оператором
    INSERT ... ON CONFLICT DO UPDATE ... RETURNING, поэтому параллельные
    вызовы не теряют приращения и порог срабатывает ровно один раз.

    Returns:
        int: Новое значение счетчика. 0 означает, что порог достигнут.
    """
    now = _utcnow()
    counters = MessageCounter.__table__
    incremented = counters.c.count + 1
    stmt = _insert(MessageCounter).values(
        chat_id=scope.chat_id,
        topic_id=scope.topic_id,
        topic_key=scope.topic_key,
        count=0 if threshold <= 1 else 1,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=['chat_id', 'topic_key'],
        set_={
            "count": case((incremented >= threshold, 0), else_=incremented),
            "updated_at": now,
        },
    ).returning(counters.c.count)
    try:
        async with async_session_factory() as session:
            result = await session.execute(stmt)
            count = result.scalar_one()
            await session.commit()
            return count
    except SQLAlchemyError as e:
        logger.error(f"Ошибка БД при обновлении счетчика {scope}: {e}", exc_info=True)
        raise


async def get_message_counter(scope: ScopeKey) -> int:
    """Текущее значение счетчика области (0, если записи нет)."""
    async with async_session_factory() as session:
        result = await session.execute(
            select(MessageCounter.count).where(
                MessageCounter.chat_id == scope.chat_id,
                MessageCounter.topic_key == topic_key_for(scope.topic_id),
            )
        )
        return result.scalar() or 0


async def reset_all_message_counters() -> int:
    """Обнуляет все счетчики. Возвращает количество затронутых строк."""
    try:
        async with async_session_factory() as session:
            result = await session.execute(
                update(MessageCounter).values(count=0, updated_at=_utcnow())
            )
            await session.commit()
            return result.rowcount or 0
    except SQLAlchemyError as e:
        logger.error(f"Ошибка БД при сбросе счетчиков: {e}", exc_info=True)
        raise


# --- Статистика ---

class UserStat(NamedTuple):
    """Строка статистики участника: значение зависит от метрики."""
    user_id: int
    username: str | None
    first_name: str | None
    last_name: str | None
    value: int | datetime


async def get_user_stats(chat_id: int, metric: str, limit: int, ascending: bool = False) -> list[UserStat]:
    """
    Статистика участников чата (без ботов).

    Args:
        metric: "msgs" - число сообщений, "chars" - число символов,
            "last" - время последнего сообщения.
        limit: Сколько строк вернуть.
        ascending: Сортировка по возрастанию ("bottom").
    """
    if metric == "msgs":
        value = func.count(Message.id)
    elif metric == "chars":
        value = func.coalesce(func.sum(func.length(Message.text)), 0)
    elif metric == "last":
        value = type_coerce(func.max(Message.created_at), DateTime(timezone=True))
    else:
        raise ValueError(f"Неизвестная метрика статистики: {metric}")

    stmt = (
        select(
            Message.user_id,
            func.max(Message.username),
            func.max(Message.user_first_name),
            func.max(Message.user_last_name),
            value.label("value"),
        )
        .where(Message.chat_id == chat_id, Message.is_bot.is_(False))
        .group_by(Message.user_id)
        .order_by(value.asc() if ascending else value.desc(), Message.user_id)
        .limit(limit)
    )
    async with async_session_factory() as session:
        result = await session.execute(stmt)
        return [UserStat(*row) for row in result.all()]
