"""
Модуль для управления фоновыми задачами с помощью APScheduler.

Единственная задача - проверка полуночи: раз в MIDNIGHT_CHECK_INTERVAL_MINUTES
минут смотрим локальное время в TIMEZONE и в первый час новых суток один раз
публикуем событие midnight.
"""

import logging
from datetime import date, datetime, timezone

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import MIDNIGHT_CHECK_INTERVAL_MINUTES, TIMEZONE
from server.events import EventBus
from server.schemas import MidnightEvent

logger = logging.getLogger(__name__)

# Глобальный scheduler instance
scheduler = AsyncIOScheduler(timezone="UTC")


class MidnightWatcher:
    """
    Публикует MidnightEvent не чаще одного раза за локальные сутки.
    Дата последнего срабатывания хранится в памяти процесса.
    """

    def __init__(self, bus: EventBus, tz_name: str = TIMEZONE):
        self.bus = bus
        self.tz = pytz.timezone(tz_name)
        self.last_fired_date: date | None = None

    async def check(self, now: datetime | None = None) -> bool:
        """
        Returns:
            bool: True, если событие опубликовано.
        """
        now_utc = now or datetime.now(timezone.utc)
        local_now = now_utc.astimezone(self.tz)
        if local_now.hour != 0 or self.last_fired_date == local_now.date():
            return False

        await self.bus.publish(MidnightEvent(triggered_at=now_utc))
        self.last_fired_date = local_now.date()
        logger.info(f"🌙 Полночь в {self.tz.zone} ({local_now.isoformat()}), событие опубликовано")
        return True


_watcher: MidnightWatcher | None = None


async def midnight_check_job():
    """
    Задача: Проверка наступления полуночи.
    Запускается каждые MIDNIGHT_CHECK_INTERVAL_MINUTES минут.
    """
    if _watcher is None:
        return
    try:
        await _watcher.check()
    except Exception as e:
        logger.error(f"❌ Ошибка при проверке полуночи: {e}", exc_info=True)


def setup_scheduler(bus: EventBus, tz_name: str = TIMEZONE) -> MidnightWatcher:
    """Регистрирует задачи в scheduler."""
    global _watcher
    _watcher = MidnightWatcher(bus, tz_name)

    scheduler.add_job(
        midnight_check_job,
        trigger=IntervalTrigger(minutes=MIDNIGHT_CHECK_INTERVAL_MINUTES),
        id="midnight_check",
        name="Проверка полуночи",
        replace_existing=True,
        max_instances=1
    )
    logger.info(f"✅ Зарегистрирована задача: Проверка полуночи (каждые {MIDNIGHT_CHECK_INTERVAL_MINUTES} мин, {tz_name})")
    return _watcher


def start_scheduler(bus: EventBus):
    """
    Запускает scheduler.
    Вызывается при старте бота.
    """
    try:
        setup_scheduler(bus)
        scheduler.start()
        logger.info("🚀 Scheduler запущен")
    except Exception as e:
        logger.error(f"❌ Ошибка при запуске scheduler: {e}", exc_info=True)
        raise


def shutdown_scheduler():
    """
    Останавливает scheduler gracefully.
    Вызывается при остановке приложения.
    """
    try:
        if scheduler.running:
            scheduler.shutdown(wait=True)
            logger.info("🛑 Scheduler остановлен")
    except Exception as e:
        logger.error(f"❌ Ошибка при остановке scheduler: {e}", exc_info=True)


def get_scheduler_status() -> dict:
    """
    Возвращает статус scheduler и список активных задач.

    Returns:
        dict: Статус scheduler и информация о задачах
    """
    try:
        jobs = scheduler.get_jobs()
        return {
            "status": "running" if scheduler.running else "stopped",
            "jobs": [
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run": job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
                    "trigger": str(job.trigger)
                }
                for job in jobs
            ],
            "jobs_count": len(jobs),
            "last_midnight": _watcher.last_fired_date.isoformat() if _watcher and _watcher.last_fired_date else None,
        }
    except Exception as e:
        logger.error(f"Ошибка при получении статуса scheduler: {e}")
        return {"status": "error", "message": str(e)}


async def trigger_midnight_now(bus: EventBus) -> str:
    """
    Немедленно публикует MidnightEvent, минуя проверку времени.
    Вспомогательная функция для тестов и ручного обслуживания (консоль), ботом не вызывается.
    """
    return await bus.publish(MidnightEvent())
