# /chatflow/services/transport_service.py

import httpx
import logging
import tenacity
from typing import Any, Dict, List, Optional

from chatflow.config.settings import settings
from chatflow.utils.alerting import alerting_service
from chatflow.utils.circuit_breaker import CircuitBreaker, CircuitOpenError
from chatflow.utils.metrics import transport_messages_counter
from chatflow.workflows.errors import HandlerRuntimeError, ResourceUnavailable

logger = logging.getLogger(__name__)

# Controls are transport-neutral dicts:
#   {"inline": [[{"text": ..., "callback_data": ...} | {"text": ..., "url": ...}]]}
#   {"reply": [[{"text": ..., "request_contact": bool}]], "one_time": bool}

# Media kind -> Bot API method
MEDIA_METHODS = {"photo": "sendPhoto", "video": "sendVideo", "document": "sendDocument"}


def inline_controls(rows: List[List[Dict[str, Any]]]) -> Dict[str, Any]:
    return {"inline": rows}


def reply_controls(rows: List[List[Dict[str, Any]]], one_time: bool = True) -> Dict[str, Any]:
    return {"reply": rows, "one_time": one_time}


def as_rows(buttons: Any) -> List[List[Dict[str, Any]]]:
    """Keyboards may be authored as rows or as a flat list (one button per row)."""
    rows = []
    for entry in buttons or []:
        if isinstance(entry, list):
            rows.append([b for b in entry if isinstance(b, dict)])
        elif isinstance(entry, dict):
            rows.append([entry])
    return [row for row in rows if row]


class TelegramTransport:
    """Sends chat messages through the Telegram Bot API."""

    def __init__(self, bot_token: Optional[str], base_url: str = "https://api.telegram.org"):
        self.bot_token = bot_token
        self.base_url = base_url.rstrip("/")
        self.http_client = httpx.AsyncClient(timeout=settings.transport_timeout_seconds)
        self.circuit_breaker = CircuitBreaker("transport")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    @staticmethod
    def _reply_markup(controls: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not controls:
            return None
        if controls.get("inline"):
            keyboard = [
                [
                    {k: v for k, v in button.items() if k in ("text", "callback_data", "url")}
                    for button in row
                ]
                for row in controls["inline"]
            ]
            return {"inline_keyboard": keyboard}
        if controls.get("reply"):
            keyboard = [
                [{"text": b["text"], "request_contact": bool(b.get("request_contact"))} for b in row]
                for row in controls["reply"]
            ]
            return {
                "keyboard": keyboard,
                "one_time_keyboard": controls.get("one_time", True),
                "resize_keyboard": True,
            }
        if controls.get("remove"):
            return {"remove_keyboard": True}
        return None

    async def _call(self, method: str, payload: Dict[str, Any]) -> Any:
        """
        Calls one Bot API method and returns its 'result'.

        Raises:
            ResourceUnavailable: network failure, open circuit, 429 or 5xx
            HandlerRuntimeError: the platform rejected the request
        """
        if not self.bot_token:
            raise ResourceUnavailable("Transport is not configured: TELEGRAM_BOT_TOKEN is missing")

        chat_id = payload.get("chat_id")
        url = f"{self.base_url}/bot{self.bot_token}/{method}"
        try:
            response = await self.resilient_api_call(self.http_client.post, url, json=payload)
        except (httpx.HTTPError, CircuitOpenError) as e:
            transport_messages_counter.labels(status="error").inc()
            raise ResourceUnavailable(f"Could not reach the chat transport: {e}") from e

        if response.status_code == 200:
            transport_messages_counter.labels(status="success").inc()
            return response.json().get("result")

        transport_messages_counter.labels(status="failed").inc()
        description = response.json().get("description", "Unknown error") if response.content else "Unknown error"
        logger.error(f"transport_{method}_failed for {chat_id}: {response.status_code} - {description}")
        if response.status_code == 401:
            await alerting_service.send_critical_alert("Chat transport authentication failed", {"error": description})
        if response.status_code == 429 or response.status_code >= 500:
            raise ResourceUnavailable(f"Chat transport unavailable ({response.status_code}): {description}")
        raise HandlerRuntimeError(f"Chat transport rejected {method} ({response.status_code}): {description}")

    @staticmethod
    def _message_id(result: Any) -> Optional[str]:
        message_id = result.get("message_id") if isinstance(result, dict) else None
        return str(message_id) if message_id is not None else None

    async def send_message(self, chat_id: str, text: str, controls: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Sends a text message with optional controls. Returns the platform message id."""
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text[:4096]}
        markup = self._reply_markup(controls)
        if markup:
            payload["reply_markup"] = markup

        message_id = self._message_id(await self._call("sendMessage", payload))
        logger.info(f"Message sent to chat {chat_id}, message_id: {message_id}")
        return message_id

    async def send_media(self, chat_id: str, kind: str, media: str, caption: Optional[str] = None,
                         controls: Optional[Dict[str, Any]] = None, **options: Any) -> Optional[str]:
        """
        Sends a photo, video or document by URL or platform file id.
        Extra options (has_spoiler, supports_streaming, ...) pass through as-is.
        """
        if kind not in MEDIA_METHODS:
            raise HandlerRuntimeError(f"Unsupported media kind '{kind}'")
        payload: Dict[str, Any] = {"chat_id": chat_id, kind: media, **options}
        if caption:
            payload["caption"] = caption[:1024]
        markup = self._reply_markup(controls)
        if markup:
            payload["reply_markup"] = markup

        message_id = self._message_id(await self._call(MEDIA_METHODS[kind], payload))
        logger.info(f"{kind.capitalize()} sent to chat {chat_id}, message_id: {message_id}")
        return message_id

    async def edit_message(self, chat_id: str, message_id: str, text: str,
                           controls: Optional[Dict[str, Any]] = None) -> None:
        payload: Dict[str, Any] = {"chat_id": chat_id, "message_id": message_id, "text": text[:4096]}
        markup = self._reply_markup(controls)
        if markup:
            payload["reply_markup"] = markup
        await self._call("editMessageText", payload)

    async def delete_message(self, chat_id: str, message_id: str) -> None:
        await self._call("deleteMessage", {"chat_id": chat_id, "message_id": message_id})

    async def close(self):
        await self.http_client.aclose()


# Globally accessible instance
transport_service = TelegramTransport(settings.telegram_bot_token, settings.telegram_api_base_url)
