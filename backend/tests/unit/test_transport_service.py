# backend/tests/unit/test_transport_service.py
import json

import httpx
import pytest

from chatflow.services.transport_service import TelegramTransport, inline_controls
from chatflow.workflows.errors import HandlerRuntimeError, ResourceUnavailable


def _transport(status_code=200, result=None, calls=None):
    def handle(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        if status_code == 200:
            return httpx.Response(200, json={"ok": True, "result": result if result is not None else True})
        return httpx.Response(status_code, json={"ok": False, "description": "Bad Request: message not found"})

    transport = TelegramTransport("test-token", "https://bot.example.com")
    transport.http_client = httpx.AsyncClient(transport=httpx.MockTransport(handle))
    return transport


@pytest.mark.asyncio
async def test_send_media_posts_to_the_kind_method():
    calls = []
    transport = _transport(result={"message_id": 321}, calls=calls)

    message_id = await transport.send_media(
        "c1", "video", "https://cdn.example.com/demo.mp4", caption="x" * 2000,
        controls=inline_controls([[{"text": "More", "callback_data": "more", "actions": []}]]),
        supports_streaming=True,
    )

    assert message_id == "321"
    assert calls[0].url.path == "/bottest-token/sendVideo"
    body = json.loads(calls[0].content)
    assert body["video"] == "https://cdn.example.com/demo.mp4"
    assert len(body["caption"]) == 1024
    assert body["supports_streaming"] is True
    assert body["reply_markup"] == {"inline_keyboard": [[{"text": "More", "callback_data": "more"}]]}


@pytest.mark.asyncio
async def test_send_media_rejects_unknown_kinds():
    calls = []
    with pytest.raises(HandlerRuntimeError):
        await _transport(calls=calls).send_media("c1", "sticker", "file-1")
    assert calls == []


@pytest.mark.asyncio
async def test_edit_and_delete_message():
    calls = []
    transport = _transport(calls=calls)

    await transport.edit_message("c1", "77", "Updated")
    await transport.delete_message("c1", "77")

    assert [c.url.path.rsplit("/", 1)[-1] for c in calls] == ["editMessageText", "deleteMessage"]
    assert json.loads(calls[0].content) == {"chat_id": "c1", "message_id": "77", "text": "Updated"}
    assert json.loads(calls[1].content) == {"chat_id": "c1", "message_id": "77"}


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, error", [(400, HandlerRuntimeError), (503, ResourceUnavailable)])
async def test_platform_errors_are_mapped(status_code, error):
    with pytest.raises(error):
        await _transport(status_code=status_code).delete_message("c1", "77")


@pytest.mark.asyncio
async def test_missing_token_is_unavailable():
    transport = TelegramTransport(None)
    with pytest.raises(ResourceUnavailable):
        await transport.edit_message("c1", "1", "text")
