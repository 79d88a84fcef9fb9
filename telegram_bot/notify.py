import os
import logging
from dotenv import load_dotenv
from telegram import Bot

load_dotenv()


def _alert_target():
    token = os.getenv("TELEGRAM_BOT_TOKEN") or os.getenv("BOT_TOKEN")
    chat_id = os.getenv("TELEGRAM_ALERT_CHAT_ID")
    if not token or not chat_id:
        return None, None
    return token, chat_id


async def send_telegram_message(token: str, chat_id: int, text: str):
    """Отправка сообщения в Telegram в чат с заданным chat_id."""
    try:
        bot = Bot(token=token)
        logging.info(f"Отправка сообщения в Telegram: chat_id={chat_id}")
        await bot.send_message(chat_id=chat_id, text=text)
    except Exception:
        logging.exception(f"Ошибка при отправке Telegram-сообщения для chat_id={chat_id}")


async def send_ops_alert(text: str):
    """Алерт дежурным: упавший плагин, колбэк с неверной подписью."""
    token, chat_id = _alert_target()
    if not token:
        logging.info("Telegram alerts are not configured, skipping: %s", text)
        return
    await send_telegram_message(token, int(chat_id), f"⚠️ paygate: {text}")
