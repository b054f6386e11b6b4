"""
Конфигурации retry декораторов для проекта.

Обработка событий не повторяется: событие обрабатывается один раз и
подтверждается при любом исходе. Повторы используются только при старте
процесса, пока БД и Redis поднимаются вместе с ботом (docker compose).

Использование:
    from utils.retry_configs import startup_retry

    @startup_retry
    async def wait_for_database():
        ...
"""

from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)
from sqlalchemy.exc import SQLAlchemyError
from redis.exceptions import RedisError
import logging

logger = logging.getLogger(__name__)

# --- Startup connectivity (БД и Redis) ---
startup_retry = retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=2, max=30),
    retry=retry_if_exception_type((SQLAlchemyError, RedisError, OSError)),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True
)
