# -*- coding: utf-8 -*-

"""
Модуль для накопительного суммирования чатов.

Модель получает новые сообщения области (чат, топик) вместе с текущей сводкой
и профилями участников и возвращает обновленное состояние целиком. Слияние
делает модель, код только проверяет форму ответа и перезаписывает хранилище.
"""
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime

from config import SUMMARIZE_MAX_MESSAGES
from prompts import UPDATE_INSTRUCTION
from server.database import (
    get_active_scopes,
    get_chat_summary,
    get_latest_messages,
    get_user_summaries,
    upsert_chat_summary,
    upsert_user_summary,
)
from server.llm import format_message_line, generate_summary
from server.metrics import SUMMARIZATION_DURATION, SUMMARIZATIONS
from server.models import ChatSummary, Message, UserSummary
from server.schemas import ScopeKey

logger = logging.getLogger(__name__)


@dataclass
class SummarizeReport:
    """Итог массового суммирования."""
    succeeded: list[ScopeKey] = field(default_factory=list)
    skipped: list[ScopeKey] = field(default_factory=list)
    failed: dict[ScopeKey, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.skipped) + len(self.failed)


def collect_participants(messages: list[Message]) -> dict[int, Message]:
    """Первое сообщение каждого участника (не бота) в пачке: user_id -> Message."""
    participants = {}
    for message in messages:
        if message.is_bot:
            continue
        participants.setdefault(message.user_id, message)
    return participants


def build_summarize_prompt(
    scope: ScopeKey,
    messages: list[Message],
    existing_summary: ChatSummary | None,
    existing_profiles: dict[int, UserSummary],
) -> str:
    """Пользовательский промпт суммирования: текущее состояние, новые сообщения, инструкция."""
    prompt = f"Chat ID: {scope.chat_id}\n"
    if scope.topic_id is not None:
        prompt += f"Topic ID: {scope.topic_id}\n"
    prompt += "\n"

    if existing_summary:
        prompt += "EXISTING CHAT SUMMARY:\n"
        prompt += json.dumps(existing_summary.state_dict(), ensure_ascii=False, indent=2) + "\n\n"

    if existing_profiles:
        prompt += "EXISTING USER PROFILES:\n"
        profiles = {str(user_id): profile.profile_dict() for user_id, profile in existing_profiles.items()}
        prompt += json.dumps(profiles, ensure_ascii=False, indent=2) + "\n\n"

    transcript = "\n".join(line for line in map(format_message_line, messages) if line)
    prompt += f"NEW MESSAGES:\n{transcript}\n\n"
    prompt += UPDATE_INSTRUCTION
    return prompt


async def summarize_scope(scope: ScopeKey) -> bool:
    """
    Обновляет сводку области и профили ее участников.

    Returns:
        bool: True, если состояние сохранено; False, если в области нет сообщений.

    Raises:
        SummaryParseError: Ответ модели не разобран, ничего не сохранено.
        Ошибки БД и API модели пробрасываются.
    """
    start = time.perf_counter()
    messages = await get_latest_messages(scope, SUMMARIZE_MAX_MESSAGES)
    if not messages:
        logger.info(f"Нет сообщений для суммирования в {scope}")
        SUMMARIZATIONS.labels("empty").inc()
        return False
    messages.reverse()

    participants = collect_participants(messages)
    existing_summary = await get_chat_summary(scope)
    existing_profiles = await get_user_summaries(scope.chat_id, list(participants))

    prompt = build_summarize_prompt(scope, messages, existing_summary, existing_profiles)
    try:
        result = await generate_summary(prompt)
    except Exception:
        SUMMARIZATIONS.labels("failed").inc()
        raise

    chat_summary = result.chat_summary
    await upsert_chat_summary(
        scope,
        summary=chat_summary.summary,
        topics=chat_summary.topics,
        next_events=[event.model_dump() for event in chat_summary.next_events],
        last_message_id=messages[-1].id,
    )

    bot_ids = {message.user_id for message in messages if message.is_bot}
    saved_profiles = 0
    for raw_user_id, profile in result.user_profiles.items():
        try:
            user_id = int(raw_user_id)
        except ValueError:
            logger.warning(f"Пропускаем профиль с нечисловым ID {raw_user_id!r} в {scope}")
            continue
        if user_id in bot_ids:
            continue

        # Имя берем из пачки сообщений, иначе сохраняем прежнее
        source = participants.get(user_id)
        previous = existing_profiles.get(user_id)
        if source:
            username, first_name, last_name = source.username, source.user_first_name, source.user_last_name
        elif previous:
            username, first_name, last_name = previous.username, previous.first_name, previous.last_name
        else:
            username = first_name = last_name = None

        await upsert_user_summary(
            scope.chat_id,
            user_id,
            likes=profile.likes,
            dislikes=profile.dislikes,
            competencies=profile.competencies,
            traits=profile.traits,
            username=username,
            first_name=first_name,
            last_name=last_name,
        )
        saved_profiles += 1

    SUMMARIZATIONS.labels("ok").inc()
    SUMMARIZATION_DURATION.observe(time.perf_counter() - start)
    logger.info(
        f"Сводка {scope} обновлена: {len(messages)} сообщений, "
        f"{saved_profiles} профилей, до сообщения {messages[-1].id}"
    )
    return True


async def summarize_active(since: datetime) -> SummarizeReport:
    """
    Суммирует все области, где были сообщения начиная с `since`.
    Ошибка в одной области логируется и не прерывает остальные.
    """
    report = SummarizeReport()
    scopes = await get_active_scopes(since)
    logger.info(f"Массовое суммирование: {len(scopes)} активных областей с {since.isoformat()}")

    for scope in scopes:
        try:
            if await summarize_scope(scope):
                report.succeeded.append(scope)
            else:
                report.skipped.append(scope)
        except Exception as e:
            logger.error(f"Ошибка суммирования {scope}: {e}", exc_info=True)
            report.failed[scope] = str(e)

    logger.info(
        f"Массовое суммирование завершено: успешно {len(report.succeeded)}, "
        f"пропущено {len(report.skipped)}, с ошибкой {len(report.failed)}"
    )
    return report
