"""
Outbound delivery over HTTP.

Two routes for agent replies to customers:
  whatsapp      WhatsApp Business relay (tenant is a WhatsApp-Business tenant)
  interceptor   push to the agent's phone app, which sends from the agent's
                own WhatsApp account

Both endpoints take a JSON body and return ``{"id": "<provider id>"}``.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import DeliveryConfig
from core.collaborators import LoggingDelivery, OutboundDelivery
from models.schemas import Message, User

logger = structlog.get_logger()


class HttpOutboundDelivery(OutboundDelivery):

    def __init__(self, config: DeliveryConfig):
        self.config = config
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.config.token:
                headers["Authorization"] = f"Bearer {self.config.token}"
            self._client = httpx.AsyncClient(
                headers=headers,
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=10.0),
            )
        return self._client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10))
    async def _post(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        client = await self._get_client()
        resp = await client.post(url, json=payload)
        if resp.status_code >= 400:
            logger.error("outbound_api_error", url=url, status=resp.status_code, body=resp.text[:500])
            resp.raise_for_status()
        return resp.json() if resp.content else {}

    @staticmethod
    def _payload(message: Message, recipient: User) -> dict[str, Any]:
        return {
            "message_id": message.id,
            "tenant_id": message.tenant_id,
            "sender_id": message.sender_id,
            "phone_number": recipient.phone,
            "content": message.content,
        }

    async def send_whatsapp(self, message: Message, recipient: User) -> Optional[str]:
        result = await self._post(self.config.whatsapp_url, self._payload(message, recipient))
        logger.info("whatsapp_sent", message_id=message.id, provider_id=result.get("id"))
        return result.get("id")

    async def send_interceptor(self, message: Message, recipient: User) -> Optional[str]:
        payload = {"type": "interceptor_message", **self._payload(message, recipient)}
        result = await self._post(self.config.interceptor_url, payload)
        logger.info("interceptor_push_sent", message_id=message.id, provider_id=result.get("id"))
        return result.get("id")

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


def create_delivery(config: DeliveryConfig) -> OutboundDelivery:
    """HTTP delivery when both endpoints are configured, logging otherwise."""
    if config.whatsapp_url and config.interceptor_url:
        return HttpOutboundDelivery(config)
    logger.info("outbound_delivery_disabled")
    return LoggingDelivery()
