import pytest
from pydantic import ValidationError

from server.exceptions import SummaryParseError
from server.llm import format_message_line, parse_reply, parse_summary_json
from server.models import Message
from server.schemas import (
    ChatSummaryData,
    MentionEvent,
    ScopeKey,
    SummarizeEvent,
    UserProfileData,
    bound_scalar_map,
    coerce_scalar,
    topic_key_for,
)


def test_scope_key_main_stream_is_distinct():
    """Тест: основной поток и топик - разные области."""
    assert ScopeKey(42, None) != ScopeKey(42, 7)
    assert ScopeKey(42).topic_key == 0
    assert topic_key_for(7) == 7
    assert str(ScopeKey(42)) == "chat=42 topic=main"


@pytest.mark.parametrize("raw, expected", [
    (5, 5),
    (2.5, 2.5),
    (True, "да"),
    (False, "нет"),
    ("<b>Python</b>", "Python"),
    (["кино", "книги"], "кино, книги"),
    ({"level": 3}, '{"level": 3}'),
    (None, None),
    (float("nan"), None),
    (float("inf"), None),
    (float("-inf"), None),
])
def test_coerce_scalar(raw, expected):
    """Тест: произвольные значения модели приводятся к int | float | str."""
    assert coerce_scalar(raw) == expected


def test_numeric_map_keeps_top_values():
    """Тест: при превышении лимита числовая карта сохраняет наибольшие значения."""
    raw = {f"t{i}": i for i in range(10)}
    assert bound_scalar_map(raw, max_entries=3) == {"t9": 9, "t8": 8, "t7": 7}


def test_map_drops_empty_values():
    """Тест: пустые значения и None не сохраняются."""
    assert bound_scalar_map({"a": None, "b": "", "c": 1, "": 2}) == {"c": 1}


def test_map_must_be_object():
    """Тест: карта, пришедшая не объектом, отклоняется."""
    with pytest.raises(ValidationError):
        UserProfileData.model_validate({"likes": ["кино"]})


def test_string_events_become_titled_events():
    """Тест: события-строки превращаются в события без даты."""
    data = ChatSummaryData.model_validate({
        "summary": "ok",
        "next_events": ["Встреча в субботу", {"title": "Турнир", "date": "2026-11-01"}],
    })
    assert data.next_events[0].title == "Встреча в субботу"
    assert data.next_events[0].date is None
    assert data.next_events[1].date == "2026-11-01"


def test_zero_ids_rejected():
    """Тест: нулевые идентификаторы в событиях отклоняются."""
    with pytest.raises(ValidationError):
        SummarizeEvent(chat_id=0)
    with pytest.raises(ValidationError):
        MentionEvent(chat_id=42, user_id=0, message_id=1)


def test_parse_summary_json_strips_fences():
    """Тест: ответ в блоке ```json разбирается."""
    text = '```json\n{"chat_summary": {"summary": "Обсуждали релиз", "topics": {"релиз": 4}}}\n```'
    result = parse_summary_json(text)
    assert result.chat_summary.summary == "Обсуждали релиз"
    assert result.chat_summary.topics == {"релиз": 4}
    assert result.user_profiles == {}


@pytest.mark.parametrize("text", [
    "это не json",
    '{"user_profiles": {}}',
    '{"chat_summary": {"summary": "ok", "topics": "кино"}}',
    "",
])
def test_parse_summary_json_failures(text):
    """Тест: невалидный JSON или неверная структура дают SummaryParseError."""
    with pytest.raises(SummaryParseError) as exc_info:
        parse_summary_json(text)
    assert exc_info.value.raw_response == text


def test_parse_reply_json():
    """Тест: JSON-ответ разбирается в решение с реакцией."""
    reply = parse_reply('{"response": "Привет!", "should_reply": true, "reaction": "👍"}')
    assert reply.response == "Привет!"
    assert reply.should_reply is True
    assert reply.reaction == "👍"


def test_parse_reply_plain_text():
    """Тест: простой текст становится ответом без реакции."""
    reply = parse_reply("Просто текст")
    assert reply.response == "Просто текст"
    assert reply.should_reply is True
    assert reply.reaction == ""


def test_parse_reply_null_fields():
    """Тест: null в полях ответа превращается в пустые строки."""
    reply = parse_reply('{"response": null, "should_reply": false, "reaction": null}')
    assert reply.response == ""
    assert reply.should_reply is False


def test_format_message_line():
    """Тест: формат строки транскрипта и пропуск сообщений без текста."""
    message = Message(user_id=1, user_first_name="Иван", user_last_name="Петров", username="ivan", text="привет")
    assert format_message_line(message) == "User ID: 1, Name: Иван Петров, Username: @ivan: привет"
    assert format_message_line(Message(user_id=1, user_first_name="Иван", text="")) is None


def test_parse_summary_json_drops_non_finite_numbers():
    """Тест: NaN и Infinity из ответа модели не попадают в карты."""
    result = parse_summary_json('{"chat_summary": {"summary": "x", "topics": {"a": NaN, "b": Infinity, "c": 2}}}')
    assert result.chat_summary.topics == {"c": 2}
