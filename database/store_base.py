"""
Chat store contract implemented by the SQL, file and memory backends.

Every read returns a detached pydantic model; mutations go through the
``update_*`` methods as single-row field updates, so callers never rely
on object identity between reads.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    Alert, AlertType, Kpi, KpiType, Message, MessageDirection,
    Ticket, TicketStatus, User, UserRole,
)


class BaseChatStore(ABC):
    """Interface that all chat store backends must implement."""

    # ── Users ─────────────────────────────────────────────────

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def find_user_by_phone(self, phone: str, tenant_id: str) -> Optional[User]:
        ...

    @abstractmethod
    async def save_user(self, user: User) -> User:
        """Insert or replace a user."""
        ...

    @abstractmethod
    async def update_user(self, user_id: str, **fields: Any) -> None:
        ...

    @abstractmethod
    async def list_users(
        self, tenant_id: Optional[str] = None, role: Optional[UserRole] = None,
        offset: int = 0, limit: Optional[int] = None,
    ) -> list[User]:
        """Users ordered by creation time (stable for paging)."""
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def save_message(self, message: Message) -> Message:
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def update_message(self, message_id: str, **fields: Any) -> None:
        ...

    @abstractmethod
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
        """
        Filtered message query. ``order_by`` is "sent_at" or "created_at";
        ``sent_from`` is inclusive, ``sent_before`` and ``created_after`` exclusive.
        """
        ...

    @abstractmethod
    async def last_message_for_user(self, user_id: str) -> Optional[Message]:
        """Most recently created message the user sent or received."""
        ...

    # ── Tickets ───────────────────────────────────────────────

    @abstractmethod
    async def save_ticket(self, ticket: Ticket) -> Ticket:
        ...

    @abstractmethod
    async def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        ...

    @abstractmethod
    async def update_ticket(self, ticket_id: str, **fields: Any) -> None:
        ...

    @abstractmethod
    async def find_ticket_between(
        self, user_a: str, user_b: str, status: TicketStatus,
    ) -> Optional[Ticket]:
        """Newest ticket with ``status`` between two users, in either orientation."""
        ...

    @abstractmethod
    async def list_tickets(
        self, tenant_id: Optional[str] = None, status: Optional[TicketStatus] = None,
    ) -> list[Ticket]:
        ...

    # ── KPIs ──────────────────────────────────────────────────

    @abstractmethod
    async def save_kpi(self, kpi: Kpi) -> Kpi:
        ...

    @abstractmethod
    async def list_kpis(
        self, tenant_id: Optional[str] = None, user_id: Optional[str] = None,
        kpi_type: Optional[KpiType] = None, ticket_id: Optional[str] = None,
    ) -> list[Kpi]:
        ...

    @abstractmethod
    async def find_kpi(self, kpi_type: KpiType, message_id: str) -> Optional[Kpi]:
        """The ``kpi_type`` event triggered by ``message_id``, if recorded."""
        ...

    # ── Alerts ────────────────────────────────────────────────

    @abstractmethod
    async def save_alert(self, alert: Alert) -> Alert:
        ...

    @abstractmethod
    async def list_alerts(
        self, user_id: Optional[str] = None, ticket_id: Optional[str] = None,
        alert_type: Optional[AlertType] = None, created_after: Optional[datetime] = None,
    ) -> list[Alert]:
        ...
