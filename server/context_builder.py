"""
Сборка контекста для ответа на упоминание.
"""

import logging
import re

from config import DEFAULT_QUERY, MENTION_USERNAME, RECENT_MESSAGES_LIMIT
from server.database import get_chat_summary, get_messages_after_id, get_user_summary
from server.llm import format_message_line
from server.schemas import MentionEvent, ResponseContext

logger = logging.getLogger(__name__)


def extract_user_query(text: str, mention_username: str = MENTION_USERNAME, default: str = DEFAULT_QUERY) -> str:
    """Убирает токен упоминания из текста. Пустой результат заменяется вопросом по умолчанию."""
    query = re.sub(re.escape(mention_username), "", text or "", flags=re.IGNORECASE).strip()
    return query or default


async def build_context(event: MentionEvent) -> ResponseContext:
    """
    Собирает сводку области, профиль автора и хвост сообщений после сводки.

    Хвост - сообщения области с id больше, чем последнее сообщение, вошедшее
    в сводку (все, если сводки нет), не более RECENT_MESSAGES_LIMIT самых новых.
    """
    scope = event.scope
    chat_summary = await get_chat_summary(scope)
    user_summary = await get_user_summary(event.chat_id, event.user_id)

    after_id = chat_summary.last_message_id if chat_summary else None
    messages = await get_messages_after_id(scope, after_id, RECENT_MESSAGES_LIMIT)
    recent = [line for line in map(format_message_line, messages) if line]

    logger.debug(
        f"Контекст для {scope}: сводка={'да' if chat_summary else 'нет'}, "
        f"профиль={'да' if user_summary else 'нет'}, сообщений={len(recent)}"
    )

    return ResponseContext(
        chat_id=event.chat_id,
        topic_id=event.topic_id,
        user_id=event.user_id,
        user_name=event.user_name,
        username=event.username,
        chat_summary=chat_summary.state_dict() if chat_summary else None,
        user_profile=user_summary.profile_dict() if user_summary else None,
        recent_messages=recent,
        user_query=extract_user_query(event.text),
        reply_to_text=event.reply_to_text,
        reply_to_is_bot=event.reply_to_is_bot,
    )
