"""
HTTP-эндпоинты для оркестратора: /health и /metrics.
Поднимается внутри процесса бота (uvicorn.Server) на HEALTH_PORT.
"""

import logging

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from redis.asyncio import Redis
from starlette_prometheus import PrometheusMiddleware, metrics

from config import HEALTH_PORT
from server.database import ping_database
from server.scheduler import get_scheduler_status

logger = logging.getLogger(__name__)

app = FastAPI(title="William Bot")
app.state.redis = None
app.state.bus = None

# --- Метрики Prometheus ---
app.add_middleware(PrometheusMiddleware)
app.add_route("/metrics", metrics)


@app.get("/health", status_code=200, summary="Проверка готовности", description="Проверяет БД, Redis и планировщик.")
async def health_check(request: Request):
    """
    Проверка зависимостей бота.

    Возвращает:
        dict: JSON со статусом каждого компонента и общим статусом.

    Вызывает:
        HTTPException: С кодом 503, если БД или Redis недоступны.
    """
    checks = {
        "database": {"status": "unknown", "message": ""},
        "redis": {"status": "unknown", "message": ""},
        "scheduler": {"status": "unknown"},
        "event_bus": {"status": "unknown"},
        "overall": "healthy"
    }

    # 1. Проверка БД
    try:
        await ping_database()
        checks["database"]["status"] = "healthy"
        checks["database"]["message"] = "Connected"
    except Exception as e:
        checks["database"]["status"] = "unhealthy"
        checks["database"]["message"] = str(e)
        checks["overall"] = "unhealthy"
        logger.error(f"Database healthcheck failed: {e}")

    # 2. Проверка Redis (шина событий без него не работает)
    redis: Redis | None = request.app.state.redis
    if redis is None:
        checks["redis"]["status"] = "unhealthy"
        checks["redis"]["message"] = "Redis not configured"
        checks["overall"] = "unhealthy"
    else:
        try:
            await redis.ping()
            checks["redis"]["status"] = "healthy"
            checks["redis"]["message"] = "Connected"
        except Exception as e:
            checks["redis"]["status"] = "unhealthy"
            checks["redis"]["message"] = str(e)
            checks["overall"] = "unhealthy"
            logger.error(f"Redis healthcheck failed: {e}")

    # 3. Планировщик и потребители (деградация, но не отказ)
    scheduler_status = get_scheduler_status()
    checks["scheduler"] = scheduler_status
    if scheduler_status.get("status") != "running" and checks["overall"] == "healthy":
        checks["overall"] = "degraded"

    bus = request.app.state.bus
    checks["event_bus"]["status"] = "running" if bus is not None and bus.running else "stopped"
    if checks["event_bus"]["status"] != "running" and checks["overall"] == "healthy":
        checks["overall"] = "degraded"

    if checks["overall"] == "unhealthy":
        raise HTTPException(status_code=503, detail=checks)

    return checks


def create_health_server(redis: Redis, bus=None, port: int = HEALTH_PORT) -> uvicorn.Server:
    """Сервер uvicorn для запуска как задачи в event loop бота."""
    app.state.redis = redis
    app.state.bus = bus
    config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="warning", lifespan="off")
    return uvicorn.Server(config)
