import pytest
from unittest.mock import AsyncMock, MagicMock

from aiogram.types import MessageEntity
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import BOT_ID, mention_entity, tg_message
from server.database import get_latest_messages, get_message_counter, seed_allowed_chats
from server.ingestion import MessageIngestor, is_bot_mentioned, message_topic_id
from server.schemas import MentionEvent, ScopeKey, SummarizeEvent

pytestmark = pytest.mark.asyncio


@pytest.fixture
async def ingestor():
    await seed_allowed_chats([42])
    bus = MagicMock()
    bus.publish = AsyncMock()
    return MessageIngestor(bus, bot_id=BOT_ID, mention_username="@william", threshold=3)


def published(ingestor, event_type):
    return [call.args[0] for call in ingestor.bus.publish.await_args_list if isinstance(call.args[0], event_type)]


async def test_discards_without_side_effects(ingestor):
    """Тест: пустые сообщения, сообщения ботов и чужих чатов не сохраняются и не считаются."""
    empty = await ingestor.ingest(tg_message(text=None))
    from_bot = await ingestor.ingest(tg_message(user_id=555, is_bot=True))
    foreign = await ingestor.ingest(tg_message(chat_id=777))

    assert empty.discard_reason == "empty"
    assert from_bot.discard_reason == "bot"
    assert foreign.discard_reason == "not_allowed"
    assert await get_latest_messages(ScopeKey(42, None), 10) == []
    assert await get_message_counter(ScopeKey(42, None)) == 0
    ingestor.bus.publish.assert_not_awaited()


async def test_caption_is_ingested(ingestor):
    """Тест: подпись к медиа считается текстом сообщения."""
    result = await ingestor.ingest(tg_message(text=None, caption="Смотрите фото"))

    assert result.saved
    messages = await get_latest_messages(ScopeKey(42, None), 10)
    assert messages[0].text == "Смотрите фото"


async def test_topic_only_for_topic_messages():
    """Тест: thread id учитывается только у сообщений внутри топика форума."""
    assert message_topic_id(tg_message(thread_id=7, is_topic=True)) == 7
    # Ответ в основном потоке тоже несет message_thread_id, но это не топик
    assert message_topic_id(tg_message(thread_id=7, is_topic=False)) is None


async def test_summarize_triggered_at_threshold_per_topic(ingestor):
    """Тест: суммирование запускается для той области, где достигнут порог."""
    for i in range(3):
        await ingestor.ingest(tg_message(message_id=i, thread_id=7, is_topic=True))
    for i in range(2):
        await ingestor.ingest(tg_message(message_id=10 + i))

    events = published(ingestor, SummarizeEvent)
    assert len(events) == 1
    assert events[0].scope == ScopeKey(42, 7)
    assert await get_message_counter(ScopeKey(42, 7)) == 0
    assert await get_message_counter(ScopeKey(42, None)) == 2


async def test_mention_entity_publishes_event(ingestor):
    """Тест: сущность mention с токеном бота публикует событие с полным контекстом."""
    text = "@william какие планы на выходные?"
    message = tg_message(text=text, entities=[mention_entity(text)], last_name="Петров", message_id=55)

    result = await ingestor.ingest(message)

    assert result.mentioned
    events = published(ingestor, MentionEvent)
    assert len(events) == 1
    event = events[0]
    assert event.chat_id == 42
    assert event.topic_id is None
    assert event.user_id == 1
    assert event.user_name == "Иван"
    assert event.user_last_name == "Петров"
    assert event.message_id == 55
    assert event.text == text


async def test_mention_of_someone_else_is_ignored(ingestor):
    """Тест: упоминание другого пользователя не считается обращением к боту."""
    text = "@someone привет"
    message = tg_message(text=text, entities=[MessageEntity(type="mention", offset=0, length=8)])

    result = await ingestor.ingest(message)

    assert not result.mentioned
    assert published(ingestor, MentionEvent) == []


async def test_reply_to_bot_is_mention(ingestor):
    """Тест: ответ на сообщение бота публикует mention с текстом исходного сообщения."""
    bot_message = tg_message(text="Я William", user_id=BOT_ID, is_bot=True, first_name="William", message_id=90)
    reply = tg_message(text="а подробнее?", reply_to=bot_message, message_id=91)

    result = await ingestor.ingest(reply)

    assert result.mentioned
    event = published(ingestor, MentionEvent)[0]
    assert event.reply_to_message_id == 90
    assert event.reply_to_text == "Я William"
    assert event.reply_to_is_bot is True


async def test_reply_to_other_bot_is_not_mention():
    """Тест: ответ на сообщение другого бота не считается обращением."""
    other_bot = tg_message(text="я другой бот", user_id=12345, is_bot=True)
    assert not is_bot_mentioned(tg_message(text="ок", reply_to=other_bot), bot_id=BOT_ID)


async def test_mention_in_caption_entities():
    """Тест: упоминание в подписи к медиа тоже распознается."""
    caption = "@william что на фото?"
    message = tg_message(text=None, caption=caption, caption_entities=[mention_entity(caption)])
    assert is_bot_mentioned(message, bot_id=BOT_ID, mention_username="@william")


async def test_end_to_end_chat_42_threshold_3(ingestor):
    """
    Тест: три сообщения в чате 42 (основной поток), третье с упоминанием.
    Ожидаем три сохраненных сообщения, одно событие mention, одно summarize и счетчик 0.
    """
    await ingestor.ingest(tg_message(text="первое", message_id=1))
    await ingestor.ingest(tg_message(text="второе", message_id=2, user_id=2, first_name="Мария"))
    text = "@william подведи итог"
    await ingestor.ingest(tg_message(text=text, entities=[mention_entity(text)], message_id=3))

    messages = await get_latest_messages(ScopeKey(42, None), 10)
    assert len(messages) == 3
    assert len(published(ingestor, MentionEvent)) == 1
    summarize = published(ingestor, SummarizeEvent)
    assert len(summarize) == 1
    assert summarize[0].scope == ScopeKey(42, None)
    assert await get_message_counter(ScopeKey(42, None)) == 0
    # mention публикуется раньше summarize
    kinds = [type(call.args[0]) for call in ingestor.bus.publish.await_args_list]
    assert kinds == [MentionEvent, SummarizeEvent]


@pytest.mark.parametrize("error", [RedisConnectionError("redis down"), ConnectionError("connection reset")])
async def test_failed_mention_publish_still_counts_message(ingestor, error):
    """Тест: если mention не опубликован, сообщение все равно сохраняется и учитывается счетчиком."""
    async def publish(event):
        if isinstance(event, MentionEvent):
            raise error

    ingestor.bus.publish.side_effect = publish
    text = "@william привет"

    result = await ingestor.ingest(tg_message(text=text, entities=[mention_entity(text)]))

    assert result.saved
    assert result.mentioned
    assert await get_message_counter(ScopeKey(42, None)) == 1
    assert len(await get_latest_messages(ScopeKey(42, None), 10)) == 1
