"""
Collaborator contracts consumed by the core.

  Notifier          notify_agent(user_id, event_type, title, body)
  OutboundDelivery  send_whatsapp / send_interceptor for agent replies
  EventSink         publish(event_type, data) for realtime fan-out

The logging implementations here are the defaults; HTTP-backed ones
live in channels/. Callers treat every collaborator as fire-and-forget:
failures are logged by ``notify_safely`` / ``publish_safely`` and never
propagate into the pipeline.
"""
from __future__ import annotations

import structlog
from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import Message, User

logger = structlog.get_logger()


class Notifier(ABC):

    @abstractmethod
    async def notify_agent(self, user_id: str, event_type: str, title: str, body: str) -> None:
        ...

    async def close(self):
        pass


class OutboundDelivery(ABC):

    @abstractmethod
    async def send_whatsapp(self, message: Message, recipient: User) -> Optional[str]:
        """Deliver through WhatsApp Business; returns the provider message id."""
        ...

    @abstractmethod
    async def send_interceptor(self, message: Message, recipient: User) -> Optional[str]:
        """Deliver through the agent's phone app (push to device)."""
        ...

    async def close(self):
        pass


class EventSink(ABC):

    @abstractmethod
    async def publish(self, event_type: str, data: dict[str, Any]) -> None:
        ...


class LoggingNotifier(Notifier):
    async def notify_agent(self, user_id: str, event_type: str, title: str, body: str) -> None:
        logger.info("agent_notified", user_id=user_id, event_type=event_type, title=title)


class LoggingDelivery(OutboundDelivery):
    """Used when no delivery endpoints are configured."""

    async def send_whatsapp(self, message: Message, recipient: User) -> Optional[str]:
        logger.info("outbound_skipped", route="whatsapp", message_id=message.id)
        return None

    async def send_interceptor(self, message: Message, recipient: User) -> Optional[str]:
        logger.info("outbound_skipped", route="interceptor", message_id=message.id)
        return None


class LoggingEventSink(EventSink):
    async def publish(self, event_type: str, data: dict[str, Any]) -> None:
        logger.debug("event_published", event_type=event_type, **data)


async def notify_safely(notifier: Notifier, user_id: str, event_type: str,
                        title: str, body: str) -> bool:
    try:
        await notifier.notify_agent(user_id, event_type, title, body)
        return True
    except Exception as e:
        logger.error("notification_failed",
                     user_id=user_id, event_type=event_type, error=str(e))
        return False


async def publish_safely(sink: EventSink, event_type: str, data: dict[str, Any]) -> bool:
    try:
        await sink.publish(event_type, data)
        return True
    except Exception as e:
        logger.error("event_publish_failed", event_type=event_type, error=str(e))
        return False
