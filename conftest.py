import os

# Тесты работают на SQLite в памяти, без секретов и без реального Telegram
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ALLOWED_CHAT_IDS"] = ""
os.environ["MENTION_USERNAME"] = "@william"
os.environ["DEFAULT_QUERY"] = "Привет! Чем могу помочь?"
os.environ["TZ"] = "Europe/Moscow"

from datetime import datetime, timezone

import fakeredis
import pytest
from aiogram.types import Chat, Message as TgMessage, MessageEntity, User

from server.database import async_session_factory, init_db
from server.events import EventBus
from server.models import Base

BOT_ID = 999


@pytest.fixture(scope="function", autouse=True)
async def setup_database():
    """Создает таблицы перед тестом и очищает их после."""
    from config import DATABASE_URL
    assert "sqlite" in DATABASE_URL, "Тесты должны запускаться на SQLite"

    await init_db()
    yield
    async with async_session_factory() as session:
        for table in reversed(Base.metadata.sorted_tables):
            await session.execute(table.delete())
        await session.commit()


@pytest.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def bus(redis):
    event_bus = EventBus(redis, prefix="test:events", group="test", consumer_name="test-consumer")
    yield event_bus
    await event_bus.stop(grace_seconds=0.1)


def bot_user() -> User:
    return User(id=BOT_ID, is_bot=True, first_name="William", username="william_bot")


def tg_message(
    text: str | None = "Всем привет",
    chat_id: int = 42,
    user_id: int = 1,
    first_name: str = "Иван",
    last_name: str | None = None,
    username: str | None = "ivan",
    is_bot: bool = False,
    message_id: int = 100,
    thread_id: int | None = None,
    is_topic: bool = False,
    entities: list[MessageEntity] | None = None,
    caption: str | None = None,
    caption_entities: list[MessageEntity] | None = None,
    reply_to: TgMessage | None = None,
) -> TgMessage:
    """Сообщение Telegram для тестов приема."""
    return TgMessage(
        message_id=message_id,
        date=datetime.now(timezone.utc),
        chat=Chat(id=chat_id, type="supergroup", title="Test chat"),
        from_user=User(id=user_id, is_bot=is_bot, first_name=first_name, last_name=last_name, username=username),
        text=text,
        entities=entities,
        caption=caption,
        caption_entities=caption_entities,
        message_thread_id=thread_id,
        is_topic_message=True if is_topic else None,
        reply_to_message=reply_to,
    )


def mention_entity(text: str, token: str = "@william") -> MessageEntity:
    """Сущность mention для первого вхождения токена в текст (ASCII-префикс)."""
    offset = len(text[:text.index(token)].encode("utf-16-le")) // 2
    return MessageEntity(type="mention", offset=offset, length=len(token))
