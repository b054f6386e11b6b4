import logging
from datetime import datetime, timezone

import pytz
from aiogram import F, Router, types
from aiogram.filters import Command, CommandObject
from sqlalchemy.exc import SQLAlchemyError

from config import TIMEZONE
from server.database import UserStat, get_user_stats, is_allowed_chat

router = Router()
logger = logging.getLogger(__name__)

DEFAULT_STATS_LIMIT = 10
MAX_STATS_LIMIT = 50
NO_STATS_TEXT = "Статистика пока недоступна — нет данных о сообщениях."

STAT_ALIASES = {
    "msgs": "msgs", "messages": "msgs",
    "chars": "chars", "symbols": "chars",
    "last": "last", "lastmsg": "last",
}


def pluralize(n: int, one: str, few: str, many: str) -> str:
    """Русская форма множественного числа: 1 сообщение, 2 сообщения, 5 сообщений."""
    n = abs(n) % 100
    if 11 <= n <= 19:
        return many
    if n % 10 == 1:
        return one
    if n % 10 in (2, 3, 4):
        return few
    return many


def format_number(n: int) -> str:
    """Разделитель тысяч - пробел: 12 345."""
    return f"{n:,}".replace(",", " ")


def format_time_ago(moment: datetime, now: datetime | None = None, tz_name: str = TIMEZONE) -> str:
    """
    Относительное время: "только что", "5 минут назад", "вчера в 14:30",
    "3 дня назад" или дата "02.01.2006 15:04" для всего старше недели.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    local = moment.astimezone(pytz.timezone(tz_name))
    seconds = (now - moment).total_seconds()

    if seconds < 60:
        return "только что"
    if seconds < 3600:
        minutes = int(seconds // 60)
        return f"{minutes} {pluralize(minutes, 'минуту', 'минуты', 'минут')} назад"
    if seconds < 24 * 3600:
        hours = int(seconds // 3600)
        return f"{hours} {pluralize(hours, 'час', 'часа', 'часов')} назад"
    if seconds < 48 * 3600:
        return f"вчера в {local:%H:%M}"
    if seconds < 7 * 24 * 3600:
        days = int(seconds // (24 * 3600))
        return f"{days} {pluralize(days, 'день', 'дня', 'дней')} назад"
    return f"{local:%d.%m.%Y %H:%M}"


def format_user_display(stat: UserStat) -> str:
    """username (Имя Фамилия) без '@', чтобы не упоминать участников."""
    full_name = " ".join(part for part in (stat.first_name, stat.last_name) if part)
    if stat.username:
        return f"{stat.username} ({full_name})" if full_name else stat.username
    return full_name or f"User {stat.user_id}"


def parse_stats_args(args: str | None) -> tuple[str, bool, int]:
    """
    Разбирает аргументы /stats в любом порядке.

    Returns:
        tuple: (метрика, bottom, лимит). По умолчанию ("msgs", False, 10).
    """
    metric, bottom, limit = "msgs", False, DEFAULT_STATS_LIMIT
    for arg in (args or "").split():
        arg = arg.lower()
        if arg == "top":
            bottom = False
        elif arg == "bottom":
            bottom = True
        elif arg in STAT_ALIASES:
            metric = STAT_ALIASES[arg]
        elif arg.isdigit() and int(arg) > 0:
            limit = min(int(arg), MAX_STATS_LIMIT)
    return metric, bottom, limit


def format_stats(metric: str, bottom: bool, stats: list[UserStat], now: datetime | None = None) -> str:
    if not stats:
        return NO_STATS_TEXT

    if metric == "chars":
        title = "Наименее активные по символам" if bottom else "Самые активные по символам"
    elif metric == "last":
        title = "Давно не писали" if bottom else "Последние отписавшиеся"
    else:
        title = "Наименее активные участники" if bottom else "Самые активные участники"

    lines = [f"📊 {title} (топ-{len(stats)})", ""]
    for i, stat in enumerate(stats, start=1):
        name = format_user_display(stat)
        if metric == "chars":
            value = f"{format_number(stat.value)} {pluralize(stat.value, 'символ', 'символа', 'символов')}"
        elif metric == "last":
            value = format_time_ago(stat.value, now)
        else:
            value = f"{stat.value} {pluralize(stat.value, 'сообщение', 'сообщения', 'сообщений')}"
        lines.append(f"{i}. {name} — {value}")
    return "\n".join(lines)


@router.message(Command("stats"), F.chat.type.in_({"group", "supergroup"}))
async def command_stats(message: types.Message, command: CommandObject) -> None:
    """Обработчик команды /stats [top|bottom] [msgs|chars|last] [N]."""
    if not await is_allowed_chat(message.chat.id):
        return

    metric, bottom, limit = parse_stats_args(command.args)
    logger.info(f"/stats в чате {message.chat.id}: metric={metric}, bottom={bottom}, limit={limit}")

    try:
        stats = await get_user_stats(message.chat.id, metric, limit, ascending=bottom)
    except SQLAlchemyError as e:
        logger.error(f"Не удалось получить статистику для чата {message.chat.id}: {e}", exc_info=True)
        await message.answer("❌ Не удалось получить статистику")
        return

    await message.answer(format_stats(metric, bottom, stats))
