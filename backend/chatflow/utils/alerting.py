# /chatflow/utils/alerting.py

import httpx
import logging
import time
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from chatflow.config.settings import settings

logger = logging.getLogger(__name__)


class AlertingService:
    """
    Posts problems a flow author has to fix (graphs that fail at runtime,
    runaway loops, a revoked bot token) to a webhook.

    A broken flow fails for every subject that reaches it, so an alert for
    the same problem and flow is posted at most once per cooldown.
    """

    def __init__(self, webhook_url: Optional[str], cooldown_seconds: float = 300.0):
        self.webhook_url = webhook_url
        self.cooldown_seconds = cooldown_seconds
        self.client = httpx.AsyncClient(timeout=5.0) if webhook_url else None
        self._last_sent: Dict[Tuple[str, Any], float] = {}

    def _cooling_down(self, error: str, context: Dict[str, Any]) -> bool:
        key = (error, context.get("flow_id"))
        now = time.monotonic()
        last = self._last_sent.get(key)
        if last is not None and now - last < self.cooldown_seconds:
            return True
        self._last_sent[key] = now
        return False

    async def send_critical_alert(self, error: str, context: Dict[str, Any]) -> bool:
        """Returns True when the alert was posted."""
        if self._cooling_down(error, context):
            logger.debug(f"Alert suppressed during cooldown: {error}")
            return False
        if not self.client:
            logger.warning(f"Alert (no webhook configured): {error} {context}")
            return False

        alert = {
            "severity": "critical",
            "service": "chatflow-engine",
            "environment": settings.environment,
            "error": error,
            "flow_id": context.get("flow_id"),
            "context": context,
            "timestamp": datetime.utcnow().isoformat(),
        }
        try:
            response = await self.client.post(self.webhook_url, json=alert)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Alert webhook failed for '{error}': {e}")
            return False
        return True

    async def cleanup(self):
        if self.client:
            await self.client.aclose()


alerting_service = AlertingService(settings.alerting_webhook_url)
