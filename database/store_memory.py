"""
InMemoryChatStore: dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlChatStore
  - Safe under asyncio (single event loop, no awaits inside mutations)
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import itertools
import structlog
from datetime import datetime
from typing import Any, Optional, TypeVar

from pydantic import BaseModel

from database.store_base import BaseChatStore
from models.schemas import (
    Alert, AlertType, Kpi, KpiType, Message, MessageDirection,
    Ticket, TicketStatus, User, UserRole, utcnow,
)

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)


def _kpi_key(kpi_type: KpiType, message_id: str) -> str:
    return f"{kpi_type.value}:{message_id}"


def _apply(model: M, fields: dict[str, Any]) -> M:
    unknown = set(fields) - set(type(model).model_fields)
    if unknown:
        raise ValueError(f"Unknown fields for {type(model).__name__}: {sorted(unknown)}")
    fields.setdefault("updated_at", utcnow())
    return model.model_copy(update=fields)


class InMemoryChatStore(BaseChatStore):
    """
    Full-featured in-memory store with the same interface as SqlChatStore.
    Holds private copies; every read hands out a fresh copy.
    """

    def __init__(self):
        self._users: dict[str, User] = {}
        self._messages: dict[str, Message] = {}
        self._tickets: dict[str, Ticket] = {}
        self._kpis: dict[str, Kpi] = {}
        self._alerts: dict[str, Alert] = {}

        # Insertion order breaks timestamp ties
        self._counter = itertools.count()
        self._seq: dict[str, int] = {}

        # Indexes
        self._phone_index: dict[str, str] = {}          # "tenant:phone" → user_id
        self._kpi_message_index: dict[str, str] = {}    # "kpi_type:message_id" → kpi_id
        logger.info("inmemory_store_initialized")

    def _track(self, record_id: str) -> None:
        if record_id not in self._seq:
            self._seq[record_id] = next(self._counter)

    # ── Users ─────────────────────────────────────────────

    async def get_user(self, user_id: str) -> Optional[User]:
        user = self._users.get(user_id)
        return user.model_copy() if user else None

    async def find_user_by_phone(self, phone: str, tenant_id: str) -> Optional[User]:
        uid = self._phone_index.get(f"{tenant_id}:{phone}")
        return await self.get_user(uid) if uid else None

    async def save_user(self, user: User) -> User:
        self._users[user.id] = user.model_copy()
        self._track(user.id)
        if user.phone:
            self._phone_index[f"{user.tenant_id}:{user.phone}"] = user.id
        return user

    async def update_user(self, user_id: str, **fields: Any) -> None:
        user = self._users.get(user_id)
        if user:
            self._users[user_id] = _apply(user, fields)

    async def list_users(
        self, tenant_id: Optional[str] = None, role: Optional[UserRole] = None,
        offset: int = 0, limit: Optional[int] = None,
    ) -> list[User]:
        users = [
            u for u in self._users.values()
            if (tenant_id is None or u.tenant_id == tenant_id)
            and (role is None or u.role == role)
        ]
        users.sort(key=lambda u: (u.created_at, self._seq[u.id]))
        end = None if limit is None else offset + limit
        return [u.model_copy() for u in users[offset:end]]

    # ── Messages ──────────────────────────────────────────

    async def save_message(self, message: Message) -> Message:
        self._messages[message.id] = message.model_copy()
        self._track(message.id)
        return message

    async def get_message(self, message_id: str) -> Optional[Message]:
        msg = self._messages.get(message_id)
        return msg.model_copy() if msg else None

    async def update_message(self, message_id: str, **fields: Any) -> None:
        msg = self._messages.get(message_id)
        if msg:
            self._messages[message_id] = _apply(msg, fields)

    async def find_messages(
        self,
        ticket_id: Optional[str] = None,
        sender_id: Optional[str] = None,
        recipient_id: Optional[str] = None,
        direction: Optional[MessageDirection] = None,
        created_after: Optional[datetime] = None,
        sent_from: Optional[datetime] = None,
        sent_before: Optional[datetime] = None,
        order_by: str = "sent_at",
        newest_first: bool = False,
        limit: Optional[int] = None,
    ) -> list[Message]:
        def matches(m: Message) -> bool:
            if ticket_id is not None and m.ticket_id != ticket_id:
                return False
            if sender_id is not None and m.sender_id != sender_id:
                return False
            if recipient_id is not None and m.recipient_id != recipient_id:
                return False
            if direction is not None and m.direction != direction:
                return False
            if created_after is not None and not m.created_at > created_after:
                return False
            if sent_from is not None and (m.sent_at is None or m.sent_at < sent_from):
                return False
            if sent_before is not None and (m.sent_at is None or m.sent_at >= sent_before):
                return False
            return True

        if order_by == "created_at":
            key = lambda m: (m.created_at, self._seq[m.id])
        else:
            key = lambda m: (m.sent_at or m.created_at, self._seq[m.id])

        found = sorted(filter(matches, self._messages.values()), key=key, reverse=newest_first)
        if limit is not None:
            found = found[:limit]
        return [m.model_copy() for m in found]

    async def last_message_for_user(self, user_id: str) -> Optional[Message]:
        mine = [
            m for m in self._messages.values()
            if m.sender_id == user_id or m.recipient_id == user_id
        ]
        if not mine:
            return None
        return max(mine, key=lambda m: (m.created_at, self._seq[m.id])).model_copy()

    # ── Tickets ───────────────────────────────────────────

    async def save_ticket(self, ticket: Ticket) -> Ticket:
        self._tickets[ticket.id] = ticket.model_copy()
        self._track(ticket.id)
        return ticket

    async def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        ticket = self._tickets.get(ticket_id)
        return ticket.model_copy() if ticket else None

    async def update_ticket(self, ticket_id: str, **fields: Any) -> None:
        ticket = self._tickets.get(ticket_id)
        if ticket:
            self._tickets[ticket_id] = _apply(ticket, fields)

    async def find_ticket_between(
        self, user_a: str, user_b: str, status: TicketStatus,
    ) -> Optional[Ticket]:
        pair = {user_a, user_b}
        candidates = [
            t for t in self._tickets.values()
            if t.status == status and {t.user_id, t.agent_id} == pair
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda t: (t.created_at, self._seq[t.id])).model_copy()

    async def list_tickets(
        self, tenant_id: Optional[str] = None, status: Optional[TicketStatus] = None,
    ) -> list[Ticket]:
        tickets = [
            t for t in self._tickets.values()
            if (tenant_id is None or t.tenant_id == tenant_id)
            and (status is None or t.status == status)
        ]
        tickets.sort(key=lambda t: (t.created_at, self._seq[t.id]))
        return [t.model_copy() for t in tickets]

    # ── KPIs ──────────────────────────────────────────────

    async def save_kpi(self, kpi: Kpi) -> Kpi:
        self._kpis[kpi.id] = kpi.model_copy(deep=True)
        self._track(kpi.id)
        if kpi.message_id:
            self._kpi_message_index.setdefault(_kpi_key(kpi.kpi_type, kpi.message_id), kpi.id)
        return kpi

    async def list_kpis(
        self, tenant_id: Optional[str] = None, user_id: Optional[str] = None,
        kpi_type: Optional[KpiType] = None, ticket_id: Optional[str] = None,
    ) -> list[Kpi]:
        kpis = [
            k for k in self._kpis.values()
            if (tenant_id is None or k.tenant_id == tenant_id)
            and (user_id is None or k.user_id == user_id)
            and (kpi_type is None or k.kpi_type == kpi_type)
            and (ticket_id is None or k.ticket_id == ticket_id)
        ]
        kpis.sort(key=lambda k: (k.created_at, self._seq[k.id]))
        return [k.model_copy(deep=True) for k in kpis]

    async def find_kpi(self, kpi_type: KpiType, message_id: str) -> Optional[Kpi]:
        kpi_id = self._kpi_message_index.get(_kpi_key(kpi_type, message_id))
        return self._kpis[kpi_id].model_copy(deep=True) if kpi_id else None

    # ── Alerts ────────────────────────────────────────────

    async def save_alert(self, alert: Alert) -> Alert:
        self._alerts[alert.id] = alert.model_copy()
        self._track(alert.id)
        return alert

    async def list_alerts(
        self, user_id: Optional[str] = None, ticket_id: Optional[str] = None,
        alert_type: Optional[AlertType] = None, created_after: Optional[datetime] = None,
    ) -> list[Alert]:
        alerts = [
            a for a in self._alerts.values()
            if (user_id is None or a.user_id == user_id)
            and (ticket_id is None or a.ticket_id == ticket_id)
            and (alert_type is None or a.alert_type == alert_type)
            and (created_after is None or a.created_at > created_after)
        ]
        alerts.sort(key=lambda a: (a.created_at, self._seq[a.id]))
        return [a.model_copy() for a in alerts]
