"""
Утилиты проекта William.

Модули:
- db_monitoring: Мониторинг производительности БД
- retry_configs: Конфигурации retry механизмов (только старт процесса)
"""

__all__ = ['db_monitoring', 'retry_configs']
