import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from app.dependencies import get_dialogue, get_telegram, get_webhook_secret
from app.errors import TelegramAPIError
from app.models.conversation import ImageRef, InboundMessage
from app.services.dialogue import ProductDialogue
from app.services.telegram import TelegramClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/telegram", tags=["telegram"])


async def _send(telegram: TelegramClient, chat_id: int, text: str, actions: list[str] | None = None):
    try:
        await telegram.send_message(chat_id, text, actions)
    except TelegramAPIError as exc:
        logger.error("Failed to send message to Telegram chat %s: %s", chat_id, exc)


@router.post("/webhook")
async def telegram_webhook(
    request: Request,
    dialogue: ProductDialogue = Depends(get_dialogue),
    telegram: TelegramClient = Depends(get_telegram),
    secret: str = Depends(get_webhook_secret),
    x_telegram_bot_api_secret_token: str | None = Header(default=None),
):
    if secret and x_telegram_bot_api_secret_token != secret:
        raise HTTPException(status_code=403, detail="Invalid webhook secret")

    try:
        update = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from None
    if not isinstance(update, dict):
        raise HTTPException(status_code=400, detail="Invalid update")

    # Extract message from Telegram update
    message = update.get("message") or update.get("edited_message")
    if not isinstance(message, dict) or not isinstance(message.get("chat"), dict):
        return {"status": "ok"}  # Not a message we can handle

    chat_id = message["chat"].get("id")
    if chat_id is None:
        return {"status": "ok"}
    text = message.get("text") or message.get("caption")
    photos = message.get("photo") or []

    images = []
    if photos:
        # The last size is the highest resolution.
        file_id = photos[-1].get("file_id")
        try:
            data = await telegram.download_file(file_id)
        except TelegramAPIError as exc:
            logger.warning("Could not download Telegram photo for chat %s: %s", chat_id, exc)
            await _send(telegram, chat_id, f"I'm sorry, I had trouble with that image. Error: {exc}")
            return {"status": "ok"}
        images.append(ImageRef(data=data, filename=f"telegram_upload_{chat_id}_{message.get('message_id')}.jpg"))

    if not text and not images:
        return {"status": "ok"}

    update_id = update.get("update_id")
    reply = await dialogue.handle_turn(InboundMessage(
        session_id=f"telegram:{chat_id}",
        text=text,
        images=images,
        message_id=f"tg:{update_id}" if update_id is not None else None,
    ))
    await _send(telegram, chat_id, reply.reply_text, reply.suggested_actions)
    return {"status": "ok"}
