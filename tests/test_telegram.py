import json

import httpx
import pytest

from app.errors import TelegramAPIError
from app.services.telegram import TelegramClient


async def test_send_message_with_reply_keyboard():
    sent = []

    def handler(request):
        sent.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})

    client = TelegramClient("123:abc", transport=httpx.MockTransport(handler))
    await client.send_message(55, "Pick one", ["Create Product", "Save as Draft"])
    await client.send_message(55, "Done")

    path, payload = sent[0]
    assert path == "/bot123:abc/sendMessage"
    assert payload["reply_markup"]["keyboard"] == [[{"text": "Create Product"}], [{"text": "Save as Draft"}]]
    assert payload["reply_markup"]["one_time_keyboard"] is True
    assert sent[1][1]["reply_markup"] == {"remove_keyboard": True}
    await client.close()


async def test_api_error_description_is_raised():
    def handler(request):
        return httpx.Response(400, json={"ok": False, "description": "Bad Request: chat not found"})

    client = TelegramClient("123:abc", transport=httpx.MockTransport(handler))
    with pytest.raises(TelegramAPIError, match="chat not found"):
        await client.send_message(1, "hi")
    await client.close()


async def test_download_file_resolves_path_first():
    def handler(request):
        if request.url.path.endswith("/getFile"):
            return httpx.Response(200, json={"ok": True, "result": {"file_path": "photos/file_1.jpg"}})
        assert request.url.path == "/file/bot123:abc/photos/file_1.jpg"
        return httpx.Response(200, content=b"photo-bytes")

    client = TelegramClient("123:abc", transport=httpx.MockTransport(handler))
    assert await client.download_file("file-id") == b"photo-bytes"
    await client.close()


async def test_download_file_failure():
    def handler(request):
        if request.url.path.endswith("/getFile"):
            return httpx.Response(200, json={"ok": True, "result": {"file_path": "photos/x.jpg"}})
        return httpx.Response(404)

    client = TelegramClient("123:abc", transport=httpx.MockTransport(handler))
    with pytest.raises(TelegramAPIError):
        await client.download_file("file-id")
    await client.close()
