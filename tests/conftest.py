"""Shared test fixtures for ChatFlow."""
import pytest
from datetime import datetime
from typing import Any, Optional

from config.settings import PipelineConfig, Settings
from config.tenants import TenantDirectory, TenantProfile
from core.collaborators import EventSink, Notifier, OutboundDelivery
from database.store_memory import InMemoryChatStore
from job_queue.job_store import InMemoryJobStore
from models.schemas import Message, MessageDirection, User, UserRole, utcnow


# A Monday: 15:00 UTC is 10:00 in Lima, inside working hours
MONDAY_10AM_LIMA = datetime(2026, 3, 2, 15, 0, 0)


class RecordingNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.calls: list[dict[str, Any]] = []
        self.fail = fail

    async def notify_agent(self, user_id: str, event_type: str, title: str, body: str) -> None:
        if self.fail:
            raise RuntimeError("notification gateway down")
        self.calls.append({"user_id": user_id, "event_type": event_type, "title": title, "body": body})


class RecordingDelivery(OutboundDelivery):
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, str]] = []
        self.fail = fail

    async def send_whatsapp(self, message: Message, recipient: User) -> Optional[str]:
        if self.fail:
            raise RuntimeError("whatsapp relay down")
        self.sent.append(("whatsapp", message.id))
        return "wa-1"

    async def send_interceptor(self, message: Message, recipient: User) -> Optional[str]:
        if self.fail:
            raise RuntimeError("push relay down")
        self.sent.append(("interceptor", message.id))
        return "push-1"


class RecordingEventSink(EventSink):
    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, event_type: str, data: dict[str, Any]) -> None:
        self.events.append((event_type, data))


@pytest.fixture
def store() -> InMemoryChatStore:
    return InMemoryChatStore()


@pytest.fixture
def job_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def tenants() -> TenantDirectory:
    return TenantDirectory([
        TenantProfile(tenant_id="t1", alert_delay_minutes=30, auto_close_hours=24),
        TenantProfile(tenant_id="wa", alert_delay_minutes=30, whatsapp_business=True),
    ])


@pytest.fixture
def fast_settings() -> Settings:
    """Pipeline stages fire immediately; alerts still wait the tenant delay."""
    settings = Settings()
    settings.pipeline = PipelineConfig(
        ticket_delay_seconds=0,
        kpi_delay_seconds=0,
        flag_delay_seconds=0,
    )
    return settings


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


@pytest.fixture
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def services(fast_settings, store, job_store, notifier, delivery, events, tenants):
    from core.services import build_services
    return build_services(
        fast_settings, store, job_store,
        notifier=notifier, delivery=delivery, events=events, tenants=tenants,
    )


@pytest.fixture
def make_user(store):
    async def _make(role: UserRole = UserRole.STANDARD, tenant_id: str = "t1", **kwargs) -> User:
        user = User(tenant_id=tenant_id, role=role, **kwargs)
        await store.save_user(user)
        return user
    return _make


@pytest.fixture
def make_message(store):
    """Persist a message directly, bypassing the service."""
    async def _make(sender: User, recipient: User, direction: MessageDirection,
                    sent_at: datetime = None, ticket_id: str = None,
                    created_at: datetime = None, content: str = "hello") -> Message:
        msg = Message(
            tenant_id=sender.tenant_id,
            sender_id=sender.id,
            recipient_id=recipient.id,
            direction=direction,
            content=content,
            sent_at=sent_at or utcnow(),
            ticket_id=ticket_id,
        )
        if created_at is not None:
            msg.created_at = created_at
        await store.save_message(msg)
        return msg
    return _make


@pytest.fixture
def t0() -> datetime:
    return MONDAY_10AM_LIMA
