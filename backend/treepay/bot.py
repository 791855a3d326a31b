import json
import logging
from html import escape

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties

from .config import Settings

logger = logging.getLogger("bot")

_bots: dict[str, Bot] = {}


def _get_bot(token: str) -> Bot:
    if token not in _bots:
        _bots[token] = Bot(token=token, default=DefaultBotProperties(parse_mode="HTML"))
    return _bots[token]


async def send_admin_message(settings: Settings, text: str) -> bool:
    if not settings.bot_token or not settings.admin_chat_id:
        logger.warning("Admin alert not sent (BOT_TOKEN/ADMIN_CHAT_ID not configured): %s", text)
        return False
    try:
        await _get_bot(settings.bot_token).send_message(chat_id=settings.admin_chat_id, text=text)
    except Exception:
        logger.exception("Failed to deliver admin alert")
        return False
    return True


async def alert(settings: Settings, event: dict) -> None:
    """Log an alert-worthy event and forward it to the admin chat."""
    logger.error(json.dumps(event, default=str))
    level = event.get("alertLevel", "P1")
    lines = [f"🚨 <b>{level}</b> {escape(str(event.get('event')))}"]
    lines += [f"{key}={escape(str(value))}" for key, value in event.items() if key not in ("event", "alertLevel")]
    await send_admin_message(settings, "\n".join(lines))
