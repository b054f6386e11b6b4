import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from server.database import get_message_counter, increment_message_counter
from server.handlers import EventHandlers
from server.scheduler import MidnightWatcher, trigger_midnight_now
from server.schemas import MidnightEvent, ScopeKey
from server.summarizer import SummarizeReport

pytestmark = pytest.mark.asyncio


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def fake_bus():
    bus = MagicMock()
    bus.publish = AsyncMock(return_value="envelope-id")
    return bus


async def test_midnight_fires_once_per_local_day(fake_bus):
    """Тест: в первый час локальных суток событие публикуется ровно один раз."""
    watcher = MidnightWatcher(fake_bus, "Europe/Moscow")

    # 21:00 UTC = 00:00 по Москве
    assert await watcher.check(utc(2026, 10, 19, 21, 0, 30)) is True
    assert await watcher.check(utc(2026, 10, 19, 21, 1, 30)) is False
    assert await watcher.check(utc(2026, 10, 19, 22, 0, 0)) is False
    assert await watcher.check(utc(2026, 10, 20, 21, 5, 0)) is True

    assert fake_bus.publish.await_count == 2
    event = fake_bus.publish.await_args_list[0].args[0]
    assert isinstance(event, MidnightEvent)
    assert event.triggered_at == utc(2026, 10, 19, 21, 0, 30)


async def test_midnight_not_fired_outside_first_hour(fake_bus):
    """Тест: в другие часы событие не публикуется."""
    watcher = MidnightWatcher(fake_bus, "Europe/Moscow")

    # 00:00 UTC = 03:00 по Москве
    assert await watcher.check(utc(2026, 10, 20, 0, 0, 0)) is False
    fake_bus.publish.assert_not_awaited()
    assert watcher.last_fired_date is None


async def test_failed_publish_is_retried_on_next_check(fake_bus):
    """Тест: если публикация не удалась, следующая проверка в том же часе повторяет ее."""
    watcher = MidnightWatcher(fake_bus, "Europe/Moscow")
    fake_bus.publish.side_effect = [ConnectionError("redis down"), "envelope-id"]

    with pytest.raises(ConnectionError):
        await watcher.check(utc(2026, 10, 19, 21, 0, 0))
    assert watcher.last_fired_date is None

    assert await watcher.check(utc(2026, 10, 19, 21, 1, 0)) is True


async def test_trigger_midnight_now(fake_bus):
    """Тест: ручной запуск публикует событие без проверки времени."""
    assert await trigger_midnight_now(fake_bus) == "envelope-id"
    assert isinstance(fake_bus.publish.await_args.args[0], MidnightEvent)


async def test_midnight_handler_summarizes_then_resets():
    """Тест: сначала суммирование за последние сутки, потом сброс счетчиков."""
    calls = []
    report = SummarizeReport()

    async def fake_summarize(since):
        calls.append(("summarize", since))
        return report

    async def fake_reset():
        calls.append(("reset", None))
        return 3

    triggered = utc(2026, 10, 19, 21, 0, 0)
    with patch('server.handlers.summarize_active', new=fake_summarize), \
         patch('server.handlers.reset_all_message_counters', new=fake_reset):
        result = await EventHandlers(MagicMock()).handle_midnight(MidnightEvent(triggered_at=triggered))

    assert result is report
    assert calls == [("summarize", triggered - timedelta(hours=24)), ("reset", None)]


async def test_midnight_handler_resets_even_if_summarization_fails():
    """Тест: ошибка суммирования не отменяет сброс счетчиков."""
    await increment_message_counter(ScopeKey(42, None), threshold=50)
    await increment_message_counter(ScopeKey(42, 7), threshold=50)

    with patch('server.handlers.summarize_active', new=AsyncMock(side_effect=RuntimeError("boom"))):
        result = await EventHandlers(MagicMock()).handle_midnight(MidnightEvent())

    assert result is None
    assert await get_message_counter(ScopeKey(42, None)) == 0
    assert await get_message_counter(ScopeKey(42, 7)) == 0
