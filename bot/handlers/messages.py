import logging

from aiogram import F, Router, types

from server.ingestion import MessageIngestor

router = Router()
logger = logging.getLogger(__name__)


@router.message(F.chat.type.in_({"group", "supergroup"}), F.text | F.caption)
async def handle_message(message: types.Message, ingestor: MessageIngestor) -> None:
    """
    Обработчик сообщений групповых чатов.

    Args:
        message: Входящее сообщение
        ingestor: Прием сообщений (передается через данные диспетчера)
    """
    result = await ingestor.ingest(message)
    if result.discard_reason:
        return
    logger.debug(
        f"Сообщение {message.message_id} из чата {message.chat.id} сохранено "
        f"(mention={result.mentioned}, summarize={result.summarize_triggered})"
    )
