import os
import logging
from dotenv import load_dotenv

load_dotenv()

# Настройка логирования
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
logger = logging.getLogger(__name__)


def _int_list(value: str) -> list[int]:
    """Разбирает список ID вида '-1001,-1002' в список int."""
    result = []
    for item in value.split(','):
        item = item.strip()
        if not item:
            continue
        try:
            result.append(int(item))
        except ValueError:
            logger.warning(f"Некорректный ID чата в ALLOWED_CHAT_IDS: {item!r}, пропускаем")
    return result


TELEGRAM_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")

# --- Бот ---
BOT_NAME = os.getenv("BOT_NAME", "William")
MENTION_USERNAME = os.getenv("MENTION_USERNAME", "@william")  # Токен упоминания, включая '@'
DEFAULT_QUERY = os.getenv("DEFAULT_QUERY", "Привет! Чем могу помочь?")  # Подставляется, если после упоминания пусто
ALLOWED_CHAT_IDS = _int_list(os.getenv("ALLOWED_CHAT_IDS", ""))

# --- База данных ---
# Вариант 1: SQLite (для локальной разработки и тестов)
# DATABASE_URL = "sqlite+aiosqlite:///william.db"
# Вариант 2: PostgreSQL
POSTGRES_USER = os.getenv('POSTGRES_USER', 'william')
POSTGRES_PASSWORD = os.getenv('POSTGRES_PASSWORD', '')
DB_HOST = os.getenv('DB_HOST', 'db')
POSTGRES_DB = os.getenv('POSTGRES_DB', 'william')

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+asyncpg://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{DB_HOST}:5432/{POSTGRES_DB}"
)
SLOW_QUERY_THRESHOLD = float(os.getenv('SLOW_QUERY_THRESHOLD', 1.0))

# --- Redis (шина событий) ---
REDIS_HOST = os.getenv('REDIS_HOST', 'localhost')
REDIS_PORT = int(os.getenv('REDIS_PORT', 6379))
REDIS_DB = int(os.getenv('REDIS_DB', 0))
EVENT_STREAM_PREFIX = os.getenv('EVENT_STREAM_PREFIX', 'william:events')
EVENT_CONSUMER_GROUP = os.getenv('EVENT_CONSUMER_GROUP', 'william')
EVENT_READ_BLOCK_MS = int(os.getenv('EVENT_READ_BLOCK_MS', 5000))
EVENT_READ_BATCH = int(os.getenv('EVENT_READ_BATCH', 10))
SHUTDOWN_GRACE_SECONDS = float(os.getenv('SHUTDOWN_GRACE_SECONDS', 10))

# --- LLM ---
# MODEL_NAME = "gemini-2.5-flash-lite"
# MODEL_NAME = "gemini-2.5-pro"
MODEL_NAME = os.getenv("MODEL_NAME", "gemini-2.5-flash")
LLM_TEMPERATURE = float(os.getenv('LLM_TEMPERATURE', 0.7))
MAX_TOKENS_SUMMARIZE = int(os.getenv('MAX_TOKENS_SUMMARIZE', 4000))
MAX_TOKENS_RESPONSE = int(os.getenv('MAX_TOKENS_RESPONSE', 1000))

# --- Лимиты ---
MAX_MSG_BUFFER = int(os.getenv('MAX_MSG_BUFFER', 50))  # Количество сообщений в топике для запуска суммирования
SUMMARIZE_MAX_MESSAGES = int(os.getenv('SUMMARIZE_MAX_MESSAGES', 100))  # Сколько последних сообщений уходит в модель
RECENT_MESSAGES_LIMIT = int(os.getenv('RECENT_MESSAGES_LIMIT', 20))  # Хвост сообщений для контекста ответа
SUMMARY_MAX_MAP_ENTRIES = int(os.getenv('SUMMARY_MAX_MAP_ENTRIES', 50))  # Максимум ключей в topics/likes/...
SUMMARY_MAX_EVENTS = int(os.getenv('SUMMARY_MAX_EVENTS', 20))

# --- Планировщик ---
TIMEZONE = os.getenv('TZ', 'Europe/Moscow')
MIDNIGHT_CHECK_INTERVAL_MINUTES = int(os.getenv('MIDNIGHT_CHECK_INTERVAL_MINUTES', 1))
MIDNIGHT_LOOKBACK_HOURS = int(os.getenv('MIDNIGHT_LOOKBACK_HOURS', 24))

# --- Health/metrics ---
HEALTH_PORT = int(os.getenv('HEALTH_PORT', 8080))

GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")

if not GOOGLE_API_KEY:
    logger.warning("GOOGLE_API_KEY не установлен. AI функции могут не работать.")


def validate_config() -> None:
    """
    Проверяет обязательные переменные окружения. Вызывается при старте бота.
    """
    if not TELEGRAM_TOKEN:
        raise ValueError("Необходимо установить TELEGRAM_BOT_TOKEN в .env файле")
    if not GOOGLE_API_KEY:
        raise ValueError("Необходимо установить GOOGLE_API_KEY в .env файле")
    if not MENTION_USERNAME.startswith("@"):
        raise ValueError("MENTION_USERNAME должен начинаться с '@'")
    if MAX_MSG_BUFFER < 1:
        raise ValueError("MAX_MSG_BUFFER должен быть положительным")
    if not ALLOWED_CHAT_IDS:
        logger.warning("ALLOWED_CHAT_IDS пуст. Бот будет обслуживать только чаты, уже внесенные в allowed_chats.")


# --- Gemini Client ---
# Создаем единый клиент, который будет использоваться во всем приложении
GEMINI_CLIENT = None
try:
    from google import genai

    if GOOGLE_API_KEY:
        GEMINI_CLIENT = genai.Client(api_key=GOOGLE_API_KEY)
        logger.info("Клиент Gemini успешно инициализирован.")
    else:
        logger.warning("Переменная GOOGLE_API_KEY не установлена. Клиент Gemini не будет инициализирован.")
except Exception as e:
    logger.error(f"Критическая ошибка: Не удалось инициализировать клиент Gemini. {e}")
    GEMINI_CLIENT = None
