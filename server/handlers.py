"""
Обработчики событий шины: summarize -> движок суммирования,
mention -> контекст + модель + доставка, midnight -> массовое суммирование и сброс счетчиков.
"""

import logging
from datetime import timedelta

from aiogram import Bot

from bot.services.delivery import deliver_reply
from config import MIDNIGHT_LOOKBACK_HOURS
from server.context_builder import build_context
from server.database import reset_all_message_counters
from server.events import EventBus, Topic
from server.llm import generate_reply
from server.schemas import MentionEvent, MidnightEvent, SummarizeEvent
from server.summarizer import SummarizeReport, summarize_active, summarize_scope

logger = logging.getLogger(__name__)


class EventHandlers:
    """Обработчики, которым нужен экземпляр бота для доставки ответов."""

    def __init__(self, bot: Bot):
        self.bot = bot

    def register(self, bus: EventBus) -> None:
        bus.subscribe(Topic.SUMMARIZE, self.handle_summarize)
        bus.subscribe(Topic.MENTION, self.handle_mention)
        bus.subscribe(Topic.MIDNIGHT, self.handle_midnight)

    async def handle_summarize(self, event: SummarizeEvent) -> None:
        logger.info(f"Суммирование по порогу для {event.scope}")
        await summarize_scope(event.scope)

    async def handle_mention(self, event: MentionEvent) -> None:
        context = await build_context(event)
        reply = await generate_reply(context)
        result = await deliver_reply(self.bot, event, reply)
        logger.info(
            f"Ответ на упоминание в {event.scope}: реакция={result.reacted}, "
            f"сообщение={result.message_id}, fallback={result.fell_back}"
        )

    async def handle_midnight(self, event: MidnightEvent) -> SummarizeReport | None:
        """Суммирует активные за сутки области, затем обнуляет все счетчики."""
        since = event.triggered_at - timedelta(hours=MIDNIGHT_LOOKBACK_HOURS)
        report = None
        try:
            report = await summarize_active(since)
        except Exception as e:
            logger.error(f"❌ Ошибка полуночного суммирования: {e}", exc_info=True)

        reset = await reset_all_message_counters()
        logger.info(f"🌙 Полночь обработана, сброшено счетчиков: {reset}")
        return report
