"""
Шина событий на Redis Streams.

Три топика: summarize, mention, midnight. Каждый топик - отдельный stream
`<EVENT_STREAM_PREFIX>:<topic>` с одной группой потребителей на приложение.

Гарантии: at-least-once без повторов. Запись подтверждается (XACK) после
обработчика при любом исходе, ошибка только логируется. Каждая запись
обрабатывается в отдельной задаче, обработчики могут выполняться параллельно.
"""

import asyncio
import json
import logging
import os
import socket
import uuid
from enum import Enum
from typing import Awaitable, Callable

from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError

from config import (
    EVENT_CONSUMER_GROUP,
    EVENT_READ_BATCH,
    EVENT_READ_BLOCK_MS,
    EVENT_STREAM_PREFIX,
    REDIS_DB,
    REDIS_HOST,
    REDIS_PORT,
    SHUTDOWN_GRACE_SECONDS,
)
from server.metrics import EVENTS_HANDLED, EVENTS_PUBLISHED
from server.schemas import MentionEvent, MidnightEvent, SummarizeEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[BaseModel], Awaitable[None]]


class Topic(str, Enum):
    SUMMARIZE = "summarize"
    MENTION = "mention"
    MIDNIGHT = "midnight"


TOPIC_MODELS: dict[Topic, type[BaseModel]] = {
    Topic.SUMMARIZE: SummarizeEvent,
    Topic.MENTION: MentionEvent,
    Topic.MIDNIGHT: MidnightEvent,
}
EVENT_TOPICS: dict[type[BaseModel], Topic] = {model: topic for topic, model in TOPIC_MODELS.items()}


def create_redis_client() -> Redis:
    """Клиент Redis для шины событий."""
    return Redis(host=REDIS_HOST, port=REDIS_PORT, db=REDIS_DB, decode_responses=True)


def _default_consumer_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class EventBus:
    """
    Публикация и потребление событий.

    Использование:
        bus = EventBus(redis)
        bus.subscribe(Topic.MENTION, handle_mention)
        await bus.start()
        await bus.publish(MentionEvent(...))
        ...
        await bus.stop()
    """

    def __init__(
        self,
        redis: Redis,
        prefix: str = EVENT_STREAM_PREFIX,
        group: str = EVENT_CONSUMER_GROUP,
        consumer_name: str | None = None,
    ):
        self.redis = redis
        self.prefix = prefix
        self.group = group
        self.consumer_name = consumer_name or _default_consumer_name()
        self._handlers: dict[Topic, EventHandler] = {}
        self._consumers: list[asyncio.Task] = []
        self._in_flight: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    def stream_name(self, topic: Topic) -> str:
        return f"{self.prefix}:{topic.value}"

    @property
    def running(self) -> bool:
        return bool(self._consumers) and not self._stopping.is_set()

    def subscribe(self, topic: Topic, handler: EventHandler) -> None:
        """Назначает обработчик топику. Один обработчик на топик."""
        self._handlers[Topic(topic)] = handler

    async def publish(self, event: BaseModel) -> str:
        """
        Публикует событие в топик, соответствующий его типу.

        Returns:
            str: ID конверта события (uuid4 hex).
        """
        topic = EVENT_TOPICS[type(event)]
        envelope = {
            "id": uuid.uuid4().hex,
            "topic": topic.value,
            "payload": event.model_dump(mode="json"),
        }
        await self.redis.xadd(self.stream_name(topic), {"data": json.dumps(envelope, ensure_ascii=False)})
        EVENTS_PUBLISHED.labels(topic.value).inc()
        logger.debug(f"Событие {topic.value} опубликовано: {envelope['id']}")
        return envelope["id"]

    async def ensure_groups(self) -> None:
        """Создает группы потребителей (и сами streams) для подписанных топиков."""
        for topic in self._handlers:
            try:
                await self.redis.xgroup_create(self.stream_name(topic), self.group, id="0", mkstream=True)
                logger.info(f"Создана группа {self.group} для {self.stream_name(topic)}")
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    async def consume_once(self, topic: Topic, block_ms: int | None = None) -> int:
        """
        Читает одну пачку новых записей топика и запускает обработчики.

        Returns:
            int: Количество запущенных обработчиков.
        """
        topic = Topic(topic)
        stream = self.stream_name(topic)
        response = await self.redis.xreadgroup(
            self.group,
            self.consumer_name,
            {stream: ">"},
            count=EVENT_READ_BATCH,
            block=block_ms,
        )
        dispatched = 0
        for _stream, entries in response or []:
            for entry_id, fields in entries:
                task = asyncio.create_task(self._dispatch(topic, entry_id, fields))
                self._in_flight.add(task)
                task.add_done_callback(self._in_flight.discard)
                dispatched += 1
        return dispatched

    async def _dispatch(self, topic: Topic, entry_id: str, fields: dict) -> None:
        """Обрабатывает одну запись и подтверждает ее при любом исходе обработчика."""
        event = None
        try:
            raw = fields.get("data") or fields.get(b"data")
            envelope = json.loads(raw)
            event = TOPIC_MODELS[topic].model_validate(envelope["payload"])
        except (json.JSONDecodeError, KeyError, TypeError, ValidationError) as e:
            status = "invalid"
            logger.error(f"Некорректная запись {entry_id} в топике {topic.value}: {e}")

        if event is not None:
            status = "ok"
            try:
                await self._handlers[topic](event)
            except Exception as e:
                status = "error"
                logger.error(f"Ошибка обработчика {topic.value} для записи {entry_id}: {e}", exc_info=True)

        EVENTS_HANDLED.labels(topic.value, status).inc()
        try:
            await self.redis.xack(self.stream_name(topic), self.group, entry_id)
        except RedisError as e:
            logger.error(f"Не удалось подтвердить запись {entry_id} в топике {topic.value}: {e}", exc_info=True)

    async def _consume_loop(self, topic: Topic) -> None:
        logger.info(f"Потребитель топика {topic.value} запущен")
        while not self._stopping.is_set():
            try:
                await self.consume_once(topic, block_ms=EVENT_READ_BLOCK_MS)
            except RedisError as e:
                logger.error(f"Ошибка чтения топика {topic.value}: {e}", exc_info=True)
                await asyncio.sleep(1)

    async def start(self) -> None:
        """Создает группы и запускает по одному потребителю на топик."""
        await self.ensure_groups()
        self._stopping.clear()
        for topic in self._handlers:
            self._consumers.append(asyncio.create_task(self._consume_loop(topic), name=f"consumer:{topic.value}"))

    async def drain(self) -> None:
        """
        Дожидается завершения всех запущенных обработчиков.
        Вспомогательный метод для тестов и обслуживания, в рабочем цикле не вызывается.
        """
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def stop(self, grace_seconds: float = SHUTDOWN_GRACE_SECONDS) -> None:
        """
        Останавливает чтение и дает обработчикам `grace_seconds` на завершение.
        Не успевшие обработчики отменяются, их записи остаются неподтвержденными.
        """
        self._stopping.set()
        for task in self._consumers:
            task.cancel()
        await asyncio.gather(*self._consumers, return_exceptions=True)
        self._consumers.clear()

        if not self._in_flight:
            return
        logger.info(f"Ожидание завершения {len(self._in_flight)} обработчиков (до {grace_seconds}с)...")
        done, pending = await asyncio.wait(set(self._in_flight), timeout=grace_seconds)
        if pending:
            logger.warning(f"Отменяем {len(pending)} незавершенных обработчиков")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
