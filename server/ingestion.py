"""
Прием входящих сообщений: фильтрация, сохранение, упоминания и триггер суммирования.
"""

import logging
from dataclasses import dataclass
from datetime import timezone

from aiogram import types
from redis.exceptions import RedisError

from config import MAX_MSG_BUFFER, MENTION_USERNAME
from server.database import increment_message_counter, is_allowed_chat, save_message
from server.events import EventBus
from server.metrics import MESSAGES_DISCARDED, MESSAGES_INGESTED
from server.models import Message
from server.schemas import MentionEvent, ScopeKey, SummarizeEvent

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Что произошло с входящим сообщением."""
    saved: bool = False
    mentioned: bool = False
    summarize_triggered: bool = False
    discard_reason: str | None = None


def message_text(message: types.Message) -> str | None:
    return message.text or message.caption


def message_topic_id(message: types.Message) -> int | None:
    """ID топика только для сообщений внутри топика форума."""
    return message.message_thread_id if message.is_topic_message else None


def is_bot_mentioned(message: types.Message, bot_id: int, mention_username: str = MENTION_USERNAME) -> bool:
    """
    Бот упомянут, если в тексте (или подписи) есть сущность `mention`,
    равная токену упоминания, или если это ответ на сообщение самого бота.
    """
    text = message_text(message) or ""
    entities = message.entities or message.caption_entities or []
    for entity in entities:
        if entity.type == "mention" and entity.extract_from(text).lower() == mention_username.lower():
            return True

    reply = message.reply_to_message
    if reply and reply.from_user and reply.from_user.is_bot and reply.from_user.id == bot_id:
        return True
    return False


def build_mention_event(message: types.Message, topic_id: int | None) -> MentionEvent:
    reply = message.reply_to_message
    return MentionEvent(
        chat_id=message.chat.id,
        topic_id=topic_id,
        user_id=message.from_user.id,
        user_name=message.from_user.first_name or "",
        user_last_name=message.from_user.last_name,
        username=message.from_user.username,
        message_id=message.message_id,
        text=message_text(message) or "",
        reply_to_message_id=reply.message_id if reply else None,
        reply_to_text=message_text(reply) if reply else None,
        reply_to_is_bot=bool(reply and reply.from_user and reply.from_user.is_bot),
        timestamp=message.date,
    )


class MessageIngestor:
    """
    Обрабатывает каждое входящее сообщение чата.

    Порядок: фильтры -> сохранение -> событие mention -> счетчик -> событие summarize.
    """

    def __init__(
        self,
        bus: EventBus,
        bot_id: int,
        mention_username: str = MENTION_USERNAME,
        threshold: int = MAX_MSG_BUFFER,
    ):
        self.bus = bus
        self.bot_id = bot_id
        self.mention_username = mention_username
        self.threshold = threshold

    def _discard(self, reason: str, message: types.Message) -> IngestResult:
        MESSAGES_DISCARDED.labels(reason).inc()
        logger.debug(f"Сообщение {message.message_id} в чате {message.chat.id} пропущено: {reason}")
        return IngestResult(discard_reason=reason)

    async def ingest(self, message: types.Message) -> IngestResult:
        text = message_text(message)
        if not text:
            return self._discard("empty", message)
        if not message.from_user or not message.from_user.id or not message.chat.id:
            return self._discard("no_sender", message)
        if message.from_user.is_bot:
            return self._discard("bot", message)
        if not await is_allowed_chat(message.chat.id):
            return self._discard("not_allowed", message)

        topic_id = message_topic_id(message)
        scope = ScopeKey(message.chat.id, topic_id)
        created_at = message.date
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)

        await save_message(Message(
            telegram_msg_id=message.message_id,
            chat_id=scope.chat_id,
            topic_id=scope.topic_id,
            user_id=message.from_user.id,
            is_bot=False,
            user_first_name=message.from_user.first_name or "",
            user_last_name=message.from_user.last_name,
            username=message.from_user.username,
            text=text,
            created_at=created_at,
        ))
        MESSAGES_INGESTED.inc()
        result = IngestResult(saved=True)

        # Ошибка публикации mention не должна мешать подсчету сообщения
        if is_bot_mentioned(message, self.bot_id, self.mention_username):
            result.mentioned = True
            logger.info(f"Бот упомянут в {scope} пользователем {message.from_user.id}")
            try:
                await self.bus.publish(build_mention_event(message, topic_id))
            except (RedisError, OSError) as e:
                logger.error(f"Не удалось опубликовать mention для {scope}: {e}", exc_info=True)

        count = await increment_message_counter(scope, self.threshold)
        if count == 0:
            await self.bus.publish(SummarizeEvent(chat_id=scope.chat_id, topic_id=scope.topic_id))
            result.summarize_triggered = True
            logger.info(f"Порог {self.threshold} сообщений достигнут в {scope}, запрошено суммирование")

        return result
