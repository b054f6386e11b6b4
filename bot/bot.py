# bot.py

import asyncio
import logging
import platform
import signal
from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware, Bot, Dispatcher, types
from redis.asyncio import Redis

from config import ALLOWED_CHAT_IDS, SHUTDOWN_GRACE_SECONDS, TELEGRAM_TOKEN, validate_config
from bot.handlers import router
from server.api import create_health_server
from server.database import async_engine, init_db, ping_database, seed_allowed_chats
from server.events import EventBus, create_redis_client
from server.handlers import EventHandlers
from server.ingestion import MessageIngestor
from server.scheduler import shutdown_scheduler, start_scheduler
from utils.retry_configs import startup_retry

logger = logging.getLogger(__name__)

# Глобальный флаг для graceful shutdown
shutdown_event = asyncio.Event()

def signal_handler(signum: int, frame: Any) -> None:
    """
    Обработчик сигналов SIGTERM и SIGINT для graceful shutdown.

    Args:
        signum: Номер сигнала
        frame: Текущий stack frame
    """
    try:
        signal_name = signal.Signals(signum).name
    except (ValueError, AttributeError):
        signal_name = str(signum)
    logger.info(f"Получен сигнал {signal_name} ({signum}). Начинаем graceful shutdown...")
    shutdown_event.set()


class ErrorMiddleware(BaseMiddleware):
    """
    Middleware для глобальной обработки ошибок в хендлерах.
    В групповых чатах пользователю ничего не пишем, только логируем.
    """

    async def __call__(
        self,
        handler: Callable[[types.TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: types.TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        try:
            return await handler(event, data)
        except Exception as e:
            update_id = getattr(event, 'update_id', 'unknown')
            logger.error(f"Error in handler for update {update_id}: {e}", exc_info=True)
            raise


@startup_retry
async def wait_for_database() -> None:
    """Создает таблицы, дожидаясь готовности БД."""
    await init_db()
    await ping_database()
    logger.info("✅ База данных доступна")


@startup_retry
async def wait_for_redis(redis: Redis) -> None:
    await redis.ping()
    logger.info("✅ Redis доступен")


async def _wait_task(task: asyncio.Task, timeout: float, name: str) -> None:
    """Ждет завершения задачи не дольше `timeout`, затем отменяет ее."""
    try:
        await asyncio.wait_for(task, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Таймаут ожидания завершения {name} ({timeout}s)")
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.error(f"Ошибка при завершении {name}: {e}", exc_info=True)


async def main() -> None:
    """Основная функция запуска бота."""
    validate_config()

    bot = Bot(token=TELEGRAM_TOKEN)
    redis = create_redis_client()
    bus: EventBus | None = None
    health_server = None
    health_task: asyncio.Task | None = None

    try:
        await wait_for_database()
        await wait_for_redis(redis)
        await seed_allowed_chats(ALLOWED_CHAT_IDS)

        me = await bot.me()
        logger.info(f"Бот @{me.username} (id={me.id}) инициализирован")

        # Шина событий и ее обработчики
        bus = EventBus(redis)
        EventHandlers(bot).register(bus)
        await bus.start()

        # Создаем диспетчер, прием сообщений передаем через данные диспетчера
        dp = Dispatcher()
        dp["ingestor"] = MessageIngestor(bus, bot_id=me.id)
        dp.update.middleware(ErrorMiddleware())
        dp.include_router(router)

        await bot.delete_webhook(drop_pending_updates=True)

        # Регистрируем обработчики сигналов для graceful shutdown
        # На Windows SIGTERM может не работать корректно, поэтому только SIGINT
        signal.signal(signal.SIGINT, signal_handler)

        # SIGTERM только для Unix-подобных систем
        if platform.system() != 'Windows':
            signal.signal(signal.SIGTERM, signal_handler)
            logger.debug("Обработчики сигналов SIGTERM и SIGINT зарегистрированы")
        else:
            logger.debug("Обработчик сигнала SIGINT зарегистрирован (Windows)")

        start_scheduler(bus)

        health_server = create_health_server(redis, bus)
        health_task = asyncio.create_task(health_server.serve())

        try:
            logger.debug("Запуск polling...")

            # Каждое обновление обрабатывается в отдельной задаче
            polling_task = asyncio.create_task(dp.start_polling(
                bot,
                handle_as_tasks=True,
                handle_signals=False,
                allowed_updates=dp.resolve_used_update_types(),
            ))

            # Создаём задачу ожидания shutdown сигнала
            shutdown_task = asyncio.create_task(shutdown_event.wait())

            # Ждём завершения одной из задач
            done, pending = await asyncio.wait(
                [polling_task, shutdown_task],
                return_when=asyncio.FIRST_COMPLETED
            )

            if shutdown_task in done:
                logger.info("Получен сигнал остановки. Завершаем обработку текущих сообщений...")
                await dp.stop_polling()
                await _wait_task(polling_task, SHUTDOWN_GRACE_SECONDS, "polling")
            else:
                shutdown_task.cancel()
                logger.warning("Polling завершился без сигнала остановки")

        except Exception as e:
            logger.error(f"Критическая ошибка в main loop: {e}", exc_info=True)
            raise

    finally:
        # Cleanup resources
        logger.debug("Начинаем cleanup ресурсов...")

        shutdown_scheduler()

        if bus:
            await bus.stop(SHUTDOWN_GRACE_SECONDS)

        if health_server and health_task:
            health_server.should_exit = True
            await _wait_task(health_task, 5.0, "health server")

        # Закрываем сессию бота
        try:
            await bot.session.close()
            logger.debug("Bot session закрыта")
        except Exception as e:
            logger.error(f"Ошибка при закрытии bot session: {e}")

        # Закрываем Redis соединение
        try:
            await redis.aclose()
            logger.debug("Redis connection закрыто")
        except Exception as e:
            logger.error(f"Ошибка при закрытии Redis connection: {e}")

        await async_engine.dispose()
        logger.info("Бот полностью остановлен. Goodbye! 👋")
