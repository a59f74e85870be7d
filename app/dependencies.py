from fastapi import HTTPException, Request

from app.config import settings
from app.services.business_settings import BusinessSettingsStore
from app.services.dialogue import ProductDialogue
from app.services.state_store import ConversationStateStore
from app.services.telegram import TelegramClient


def get_db_path() -> str:
    """Provide the database path to endpoint functions."""
    return settings.SQLITE_DB_PATH


def get_dialogue(request: Request) -> ProductDialogue:
    return request.app.state.dialogue


def get_state_store(request: Request) -> ConversationStateStore:
    return request.app.state.state_store


def get_business_settings(request: Request) -> BusinessSettingsStore:
    return request.app.state.business_settings


def get_telegram(request: Request) -> TelegramClient:
    telegram = getattr(request.app.state, "telegram", None)
    if telegram is None:
        raise HTTPException(status_code=500, detail="Telegram bot not configured on the server.")
    return telegram


def get_webhook_secret() -> str:
    return settings.TELEGRAM_WEBHOOK_SECRET
