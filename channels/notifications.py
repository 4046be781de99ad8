"""Agent notifications posted to a webhook (realtime gateway, push relay)."""
from __future__ import annotations

import structlog
from typing import Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import NotificationConfig
from core.collaborators import LoggingNotifier, Notifier

logger = structlog.get_logger()


class WebhookNotifier(Notifier):

    def __init__(self, config: NotificationConfig):
        self.config = config
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {}
            if self.config.token:
                headers["Authorization"] = f"Bearer {self.config.token}"
            self._client = httpx.AsyncClient(headers=headers, timeout=10.0)
        return self._client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10))
    async def notify_agent(self, user_id: str, event_type: str, title: str, body: str) -> None:
        client = await self._get_client()
        resp = await client.post(self.config.webhook_url, json={
            "user_id": user_id,
            "event_type": event_type,
            "title": title,
            "body": body,
        })
        resp.raise_for_status()
        logger.debug("agent_notification_posted", user_id=user_id, event_type=event_type)

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


def create_notifier(config: NotificationConfig) -> Notifier:
    if config.webhook_url:
        return WebhookNotifier(config)
    return LoggingNotifier()
