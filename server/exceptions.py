"""Исключения приложения."""


class SummaryParseError(ValueError):
    """Ответ модели на запрос суммирования не является JSON нужной формы."""

    def __init__(self, message: str, raw_response: str | None = None):
        super().__init__(message)
        self.raw_response = raw_response


class EmptyLLMResponseError(RuntimeError):
    """Модель вернула пустой ответ (например, заблокирован фильтрами)."""
