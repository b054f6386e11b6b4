import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError, TelegramBadRequest
from aiogram.types import ReactionTypeEmoji, ReplyParameters

from server.database import save_message
from server.metrics import DELIVERIES
from server.models import Message
from server.schemas import MentionEvent, MentionReply

logger = logging.getLogger(__name__)

THREAD_NOT_FOUND = "message thread not found"


@dataclass
class DeliveryResult:
    reacted: bool = False
    message_id: int | None = None
    topic_id: int | None = None
    fell_back: bool = False


def is_thread_not_found(error: TelegramBadRequest) -> bool:
    return THREAD_NOT_FOUND in (error.message or "").lower()


async def set_reaction(bot: Bot, event: MentionEvent, emoji: str) -> bool:
    """Ставит реакцию на исходное сообщение. Ошибка не мешает ответу."""
    try:
        await bot.set_message_reaction(
            chat_id=event.chat_id,
            message_id=event.message_id,
            reaction=[ReactionTypeEmoji(emoji=emoji)],
        )
        return True
    except (TelegramAPIError, ValueError) as e:
        logger.warning(f"Не удалось поставить реакцию {emoji!r} в чате {event.chat_id}: {e}")
        return False


async def deliver_reply(bot: Bot, event: MentionEvent, reply: MentionReply) -> DeliveryResult:
    """
    Доставляет решение модели в чат.

    1. Реакция (если есть) - ошибка только логируется.
    2. Текст (если should_reply и текст не пустой) - в исходный топик ответом
       на исходное сообщение. Если топик не найден, одна повторная попытка
       в основной поток. Остальные ошибки Telegram пробрасываются.
    3. Отправленное сообщение сохраняется как сообщение бота с тем топиком,
       куда оно реально ушло.
    """
    result = DeliveryResult()
    if reply.reaction:
        result.reacted = await set_reaction(bot, event, reply.reaction)

    if not reply.should_reply or not reply.response:
        DELIVERIES.labels("reaction_only" if result.reacted else "skipped").inc()
        return result

    reply_parameters = ReplyParameters(message_id=event.message_id, allow_sending_without_reply=True)
    topic_id = event.topic_id
    try:
        sent = await bot.send_message(
            chat_id=event.chat_id,
            text=reply.response,
            message_thread_id=topic_id,
            reply_parameters=reply_parameters,
        )
    except TelegramBadRequest as e:
        if topic_id is None or not is_thread_not_found(e):
            DELIVERIES.labels("failed").inc()
            raise
        logger.warning(f"Топик {topic_id} в чате {event.chat_id} не найден, отвечаем в основной поток")
        topic_id = None
        result.fell_back = True
        try:
            sent = await bot.send_message(
                chat_id=event.chat_id,
                text=reply.response,
                reply_parameters=reply_parameters,
            )
        except TelegramAPIError:
            DELIVERIES.labels("failed").inc()
            raise
    except TelegramAPIError:
        DELIVERIES.labels("failed").inc()
        raise

    result.message_id = sent.message_id
    result.topic_id = topic_id
    DELIVERIES.labels("fallback" if result.fell_back else "sent").inc()

    try:
        me = await bot.me()
        await save_message(Message(
            telegram_msg_id=sent.message_id,
            chat_id=event.chat_id,
            topic_id=topic_id,
            user_id=me.id,
            is_bot=True,
            user_first_name=me.first_name or "",
            user_last_name=me.last_name,
            username=me.username,
            text=reply.response,
            created_at=datetime.now(timezone.utc),
        ))
    except Exception as e:
        logger.error(f"Ответ отправлен, но не сохранен (чат {event.chat_id}): {e}", exc_info=True)

    return result
