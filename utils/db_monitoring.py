"""
Мониторинг производительности базы данных.

Слушатели событий SQLAlchemy замеряют время каждого запроса, пишут его
в гистограмму Prometheus и логируют медленные запросы.

Использование:
    from utils.db_monitoring import setup_query_monitoring
    setup_query_monitoring(async_engine, threshold=SLOW_QUERY_THRESHOLD)
"""

import logging
import time
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine

from server.metrics import DB_QUERY_DURATION, DB_SLOW_QUERIES

logger = logging.getLogger(__name__)

# Порог для slow queries (секунды)
DEFAULT_SLOW_QUERY_THRESHOLD = 1.0


def log_slow_query(duration: float, statement: str, parameters):
    """
    Логирует медленный запрос с деталями.

    Args:
        duration: Время выполнения в секундах
        statement: SQL запрос
        parameters: Параметры запроса
    """
    logger.warning(
        f"SLOW QUERY detected ({duration:.2f}s):\n"
        f"SQL: {statement}\n"
        f"Parameters: {parameters}"
    )
    DB_SLOW_QUERIES.inc()


def setup_query_monitoring(engine: AsyncEngine, threshold: float = DEFAULT_SLOW_QUERY_THRESHOLD):
    """
    Настраивает мониторинг запросов для async engine.

    Args:
        engine: SQLAlchemy AsyncEngine
        threshold: Порог для slow queries в секундах
    """

    @event.listens_for(engine.sync_engine, "before_cursor_execute")
    def receive_before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        conn.info.setdefault('query_start_time', []).append(time.perf_counter())

    @event.listens_for(engine.sync_engine, "after_cursor_execute")
    def receive_after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start_times = conn.info.get('query_start_time')
        if not start_times:
            return
        duration = time.perf_counter() - start_times.pop()
        DB_QUERY_DURATION.observe(duration)

        if duration > threshold:
            log_slow_query(duration, statement, parameters)
        else:
            logger.debug(f"Query completed in {duration:.3f}s: {statement[:100]}...")
