import asyncio
import json
import logging
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from server.events import Topic
from server.schemas import MentionEvent, MidnightEvent, SummarizeEvent

pytestmark = pytest.mark.asyncio


async def pending_count(bus, topic: Topic) -> int:
    info = await bus.redis.xpending(bus.stream_name(topic), bus.group)
    return info["pending"]


async def test_publish_and_consume_delivers_typed_event(bus):
    """Тест: опубликованное событие доходит до обработчика в виде pydantic-модели и подтверждается."""
    received = []

    async def handler(event):
        received.append(event)

    bus.subscribe(Topic.SUMMARIZE, handler)
    await bus.ensure_groups()

    envelope_id = await bus.publish(SummarizeEvent(chat_id=42, topic_id=None))
    dispatched = await bus.consume_once(Topic.SUMMARIZE)
    await bus.drain()

    assert dispatched == 1
    assert len(envelope_id) == 32
    assert isinstance(received[0], SummarizeEvent)
    assert received[0].scope == (42, None)
    assert await pending_count(bus, Topic.SUMMARIZE) == 0


async def test_envelope_format(bus):
    """Тест: конверт содержит id, topic и payload."""
    bus.subscribe(Topic.MIDNIGHT, lambda event: asyncio.sleep(0))
    await bus.ensure_groups()

    envelope_id = await bus.publish(MidnightEvent())

    entries = await bus.redis.xrange(bus.stream_name(Topic.MIDNIGHT))
    envelope = json.loads(entries[0][1]["data"])
    assert envelope["id"] == envelope_id
    assert envelope["topic"] == "midnight"
    assert "triggered_at" in envelope["payload"]


async def test_handler_error_is_acked(bus):
    """Тест: ошибка обработчика логируется, запись все равно подтверждается, повторов нет."""
    calls = 0

    async def failing_handler(event):
        nonlocal calls
        calls += 1
        raise RuntimeError("boom")

    bus.subscribe(Topic.MENTION, failing_handler)
    await bus.ensure_groups()

    await bus.publish(MentionEvent(chat_id=42, user_id=1, message_id=10, text="@william привет"))
    await bus.consume_once(Topic.MENTION)
    await bus.drain()

    assert calls == 1
    assert await pending_count(bus, Topic.MENTION) == 0
    assert await bus.consume_once(Topic.MENTION) == 0


async def test_invalid_payload_is_acked(bus):
    """Тест: некорректная запись не вызывает обработчик, но подтверждается."""
    called = False

    async def handler(event):
        nonlocal called
        called = True

    bus.subscribe(Topic.SUMMARIZE, handler)
    await bus.ensure_groups()
    await bus.redis.xadd(bus.stream_name(Topic.SUMMARIZE), {"data": json.dumps({"payload": {"chat_id": 0}})})

    await bus.consume_once(Topic.SUMMARIZE)
    await bus.drain()

    assert called is False
    assert await pending_count(bus, Topic.SUMMARIZE) == 0


async def test_handlers_run_concurrently(bus):
    """Тест: каждая запись обрабатывается в своей задаче, обработчики перекрываются."""
    started = asyncio.Event()
    release = asyncio.Event()
    active = 0
    max_active = 0

    async def slow_handler(event):
        nonlocal active, max_active
        active += 1
        max_active = max(max_active, active)
        if active == 2:
            started.set()
        await release.wait()
        active -= 1

    bus.subscribe(Topic.SUMMARIZE, slow_handler)
    await bus.ensure_groups()
    await bus.publish(SummarizeEvent(chat_id=1))
    await bus.publish(SummarizeEvent(chat_id=2))

    await bus.consume_once(Topic.SUMMARIZE)
    await asyncio.wait_for(started.wait(), timeout=1)
    release.set()
    await bus.drain()

    assert max_active == 2


async def test_stop_cancels_handlers_after_grace(bus):
    """Тест: при остановке незавершенные обработчики отменяются после grace-периода."""
    cancelled = asyncio.Event()

    async def stuck_handler(event):
        try:
            await asyncio.sleep(60)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    bus.subscribe(Topic.SUMMARIZE, stuck_handler)
    await bus.ensure_groups()
    await bus.publish(SummarizeEvent(chat_id=42))
    await bus.consume_once(Topic.SUMMARIZE)
    await asyncio.sleep(0)

    await bus.stop(grace_seconds=0.05)

    assert cancelled.is_set()
    # Отмененная запись не подтверждена
    assert await pending_count(bus, Topic.SUMMARIZE) == 1


async def test_key_error_in_handler_is_handler_error(bus, caplog):
    """Тест: KeyError внутри обработчика логируется как ошибка обработчика с трассировкой."""
    async def handler(event):
        raise KeyError("missing")

    bus.subscribe(Topic.SUMMARIZE, handler)
    await bus.ensure_groups()
    await bus.publish(SummarizeEvent(chat_id=42))

    with caplog.at_level(logging.ERROR, logger="server.events"):
        await bus.consume_once(Topic.SUMMARIZE)
        await bus.drain()

    records = [r for r in caplog.records if "Ошибка обработчика" in r.getMessage()]
    assert len(records) == 1
    assert records[0].exc_info is not None
    assert not any("Некорректная запись" in r.getMessage() for r in caplog.records)
    assert await pending_count(bus, Topic.SUMMARIZE) == 0


async def test_ack_failure_is_logged_not_raised(bus, caplog):
    """Тест: ошибка XACK логируется, задача обработчика завершается без исключения."""
    received = []

    async def handler(event):
        received.append(event)

    bus.subscribe(Topic.SUMMARIZE, handler)
    await bus.ensure_groups()
    await bus.publish(SummarizeEvent(chat_id=42))

    with patch.object(bus.redis, "xack", new=AsyncMock(side_effect=RedisConnectionError("redis down"))):
        with caplog.at_level(logging.ERROR, logger="server.events"):
            await bus.consume_once(Topic.SUMMARIZE)
            tasks = list(bus._in_flight)
            await asyncio.gather(*tasks)

    assert len(received) == 1
    assert any("Не удалось подтвердить запись" in r.getMessage() for r in caplog.records)
