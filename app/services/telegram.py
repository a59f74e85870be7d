import logging

import httpx

from app.errors import TelegramAPIError

logger = logging.getLogger(__name__)


class TelegramClient:
    def __init__(
        self,
        bot_token: str,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = f"https://api.telegram.org/bot{bot_token}"
        self.file_url = f"https://api.telegram.org/file/bot{bot_token}"
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def _call(self, method: str, payload: dict) -> dict:
        try:
            response = await self._client.post(f"{self.api_url}/{method}", json=payload)
        except httpx.HTTPError as exc:
            raise TelegramAPIError(f"Telegram {method} failed: {exc}") from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise TelegramAPIError(f"Telegram {method} returned status {response.status_code}") from exc
        if not data.get("ok"):
            raise TelegramAPIError(data.get("description") or f"Telegram {method} failed")
        return data["result"]

    async def send_message(self, chat_id: int | str, text: str, suggested_actions: list[str] | None = None):
        """Send a reply; suggested actions become a one-time reply keyboard."""
        payload: dict = {"chat_id": chat_id, "text": text}
        if suggested_actions:
            payload["reply_markup"] = {
                "keyboard": [[{"text": action}] for action in suggested_actions],
                "one_time_keyboard": True,
                "resize_keyboard": True,
            }
        else:
            payload["reply_markup"] = {"remove_keyboard": True}
        return await self._call("sendMessage", payload)

    async def download_file(self, file_id: str) -> bytes:
        """Resolve a file id with getFile and download its bytes."""
        info = await self._call("getFile", {"file_id": file_id})
        file_path = info.get("file_path")
        if not file_path:
            raise TelegramAPIError("Telegram did not return a file path")
        try:
            response = await self._client.get(f"{self.file_url}/{file_path}")
        except httpx.HTTPError as exc:
            raise TelegramAPIError(f"Failed to download file from Telegram: {exc}") from exc
        if not response.is_success:
            raise TelegramAPIError(f"Failed to download file from Telegram: status {response.status_code}")
        return response.content

    async def close(self):
        await self._client.aclose()
