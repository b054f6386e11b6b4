"""
Граница с языковой моделью (Gemini).

Два вызова: суммирование пачки сообщений (строгий JSON) и генерация ответа
на упоминание (JSON или простой текст). Повторов нет: каждое событие стоит
не больше одного запроса к модели на каждый вызов.
"""

import json
import logging
import time

from google.genai import types as genai_types
from google.genai.errors import APIError
from pydantic import ValidationError

from config import (
    BOT_NAME,
    GEMINI_CLIENT,
    LLM_TEMPERATURE,
    MAX_TOKENS_RESPONSE,
    MAX_TOKENS_SUMMARIZE,
    MODEL_NAME,
)
from prompts import RESPONSE_SYSTEM_PROMPT, SUMMARIZE_SYSTEM_PROMPT
from server.exceptions import EmptyLLMResponseError, SummaryParseError
from server.metrics import LLM_REQUEST_DURATION
from server.models import Message
from server.schemas import MentionReply, ResponseContext, SummarizeResponse

logger = logging.getLogger(__name__)

# Настраиваем Gemini API
client = GEMINI_CLIENT


def format_message_line(message: Message) -> str | None:
    """
    Строка транскрипта: "User ID: 1, Name: Иван Петров, Username: @ivan: текст".
    Сообщения без текста пропускаются.
    """
    if not message.text:
        return None
    user_info = f"User ID: {message.user_id}, Name: {message.user_first_name}"
    if message.user_last_name:
        user_info += f" {message.user_last_name}"
    if message.username:
        user_info += f", Username: @{message.username}"
    return f"{user_info}: {message.text}"


def strip_code_fences(response_text: str) -> str:
    """Очищает ответ от блоков кода Markdown."""
    cleaned_text = response_text.strip()
    if cleaned_text.startswith("```json"):
        cleaned_text = cleaned_text[7:]
    elif cleaned_text.startswith("```"):
        cleaned_text = cleaned_text[3:]
    if cleaned_text.endswith("```"):
        cleaned_text = cleaned_text[:-3]
    return cleaned_text.strip()


def parse_summary_json(response_text: str) -> SummarizeResponse:
    """
    Парсит JSON из ответа модели, с очисткой Markdown и валидацией через Pydantic.

    Raises:
        SummaryParseError: Невалидный JSON или неверная структура.
    """
    cleaned_text = strip_code_fences(response_text or "")
    try:
        data = json.loads(cleaned_text)
    except json.JSONDecodeError as e:
        logger.error(f"Ошибка парсинга JSON сводки: {e}\n--- ОТВЕТ МОДЕЛИ ---\n{response_text}\n--------------------")
        raise SummaryParseError(f"невалидный JSON: {e}", raw_response=response_text) from e

    try:
        return SummarizeResponse.model_validate(data)
    except ValidationError as e:
        logger.error(f"Ошибка валидации JSON сводки: {e}")
        raise SummaryParseError(f"неверная структура ответа: {e}", raw_response=response_text) from e


def parse_reply(response_text: str) -> MentionReply:
    """
    Разбирает ответ на упоминание. Если модель ответила простым текстом,
    он становится текстом ответа без реакции.
    """
    cleaned_text = strip_code_fences(response_text or "")
    try:
        data = json.loads(cleaned_text)
    except json.JSONDecodeError:
        return MentionReply(response=cleaned_text, should_reply=True)

    if not isinstance(data, dict):
        return MentionReply(response=cleaned_text, should_reply=True)
    try:
        return MentionReply.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Ответ модели не соответствует схеме, используем как текст: {e}")
        return MentionReply(response=cleaned_text, should_reply=True)


async def _generate(kind: str, system_instruction: str, prompt: str, max_tokens: int, json_mode: bool) -> str:
    """Один вызов generate_content. Ошибки API пробрасываются вызывающему."""
    if client is None:
        raise RuntimeError("Клиент Gemini не инициализирован (проверьте GOOGLE_API_KEY)")

    logger.debug(f"Запрос к Gemini ({kind}), промпт: {prompt[:500]}...")
    start = time.perf_counter()
    try:
        response = await client.aio.models.generate_content(
            model=MODEL_NAME,
            contents=prompt,
            config=genai_types.GenerateContentConfig(
                system_instruction=system_instruction,
                temperature=LLM_TEMPERATURE,
                max_output_tokens=max_tokens,
                response_mime_type="application/json" if json_mode else None,
            )
        )
    except APIError as e:
        logger.error(f"Ошибка Gemini API ({kind}): {e}", exc_info=True)
        raise
    finally:
        LLM_REQUEST_DURATION.labels(kind).observe(time.perf_counter() - start)

    # Log usage metadata for monitoring
    if getattr(response, 'usage_metadata', None):
        logger.debug(
            f"Потребление токенов ({kind}): prompt={response.usage_metadata.prompt_token_count}, "
            f"candidates={response.usage_metadata.candidates_token_count}"
        )

    if not response.text:
        raise EmptyLLMResponseError(f"Gemini вернул пустой ответ ({kind})")
    return response.text


async def generate_summary(prompt: str) -> SummarizeResponse:
    """
    Запрашивает обновленную сводку чата и профили участников.

    Raises:
        SummaryParseError: Ответ не удалось разобрать.
        APIError: Ошибка вызова модели.
    """
    system_instruction = SUMMARIZE_SYSTEM_PROMPT.format(bot_name=BOT_NAME)
    response_text = await _generate("summarize", system_instruction, prompt, MAX_TOKENS_SUMMARIZE, json_mode=True)
    return parse_summary_json(response_text)


def build_reply_system_prompt(context: ResponseContext) -> str:
    """Системный промпт ответа: роль плюс сводка чата и профиль автора."""
    system_prompt = RESPONSE_SYSTEM_PROMPT.format(bot_name=BOT_NAME)

    summary = context.chat_summary
    if summary:
        system_prompt += f"\n\nChat context:\nSummary: {summary.get('summary', '')}"
        if summary.get("next_events"):
            system_prompt += f"\nUpcoming events: {json.dumps(summary['next_events'], ensure_ascii=False)}"
        if summary.get("topics"):
            system_prompt += f"\nChat topics: {json.dumps(summary['topics'], ensure_ascii=False)}"

    profile = context.user_profile
    if profile:
        system_prompt += f"\n\nUser {context.user_name} profile:"
        for label, key in (("Likes", "likes"), ("Dislikes", "dislikes"), ("Competencies", "competencies"), ("Traits", "traits")):
            if profile.get(key):
                system_prompt += f"\n{label}: {json.dumps(profile[key], ensure_ascii=False)}"

    return system_prompt


def build_reply_user_prompt(context: ResponseContext) -> str:
    """Пользовательский промпт: свежие сообщения, контекст ответа и сам вопрос."""
    prompt = ""
    if context.recent_messages:
        prompt += "Recent messages:\n" + "\n".join(context.recent_messages) + "\n\n"

    if context.reply_to_text:
        author = BOT_NAME if context.reply_to_is_bot else "another user"
        prompt += f"The user is replying to this message from {author}:\n{context.reply_to_text}\n\n"

    prompt += f"User query from user ID {context.user_id} ({context.user_name}): {context.user_query}"
    return prompt


async def generate_reply(context: ResponseContext) -> MentionReply:
    """Генерирует ответ на упоминание."""
    response_text = await _generate(
        "response",
        build_reply_system_prompt(context),
        build_reply_user_prompt(context),
        MAX_TOKENS_RESPONSE,
        json_mode=True,
    )
    return parse_reply(response_text)
