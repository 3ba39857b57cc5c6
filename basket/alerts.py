"""
Alert sink for breaker trips and swap pauses.

Alerts are always logged; when a webhook URL is configured they are also
POSTed as JSON.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

log = logging.getLogger(__name__)


class AlertDispatcher:
    def __init__(self, webhook_url: str = "", timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.client: Optional[httpx.AsyncClient] = httpx.AsyncClient(timeout=timeout) if webhook_url else None
        self.sent = 0
        self.failed = 0

    async def close(self):
        """Close HTTP client."""
        if self.client is not None:
            await self.client.aclose()

    async def send(self, alert: dict) -> bool:
        payload = dict(alert)
        payload.setdefault("sent_at", datetime.now(timezone.utc).isoformat())
        log.warning(f"ALERT [{alert.get('trigger', '?')}] {alert.get('reason', '')}")

        if self.client is None:
            return True

        try:
            resp = await self.client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as e:
            self.failed += 1
            log.error(f"Alert webhook failed: {e}")
            return False

        if resp.status_code >= 300:
            self.failed += 1
            log.error(f"Alert webhook rejected: {resp.status_code} - {resp.text[:200]}")
            return False

        self.sent += 1
        return True

    async def send_all(self, alerts: list[dict]) -> int:
        """Send alerts in order. Returns number delivered."""
        delivered = 0
        for alert in alerts:
            if await self.send(alert):
                delivered += 1
        return delivered
