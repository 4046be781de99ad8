"""
SqlChatStore: portable SQL queries for PostgreSQL, MySQL, SQLite.

Each method opens its own session (one transaction per call), so every
mutation is a single-row update committed on return.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from enum import Enum
from typing import Any, Optional, TypeVar

from pydantic import BaseModel
from sqlalchemy import select, update, and_, or_, func

from database.models import (
    AlertRow, KpiRow, MessageRow, TicketRow, UserRow,
)
from database.session import get_session
from database.store_base import BaseChatStore
from models.schemas import (
    Alert, AlertType, Kpi, KpiType, Message, MessageDirection,
    Ticket, TicketStatus, User, UserRole, utcnow,
)

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)


def _plain(fields: dict[str, Any]) -> dict[str, Any]:
    """Enum members → their string values for column binding."""
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in fields.items()}


def _row_values(model: BaseModel) -> dict[str, Any]:
    return _plain(model.model_dump())


def _to_model(row, model_cls: type[M]) -> M:
    return model_cls.model_validate(
        {col.key: getattr(row, col.key) for col in row.__table__.columns}
    )


def _update_values(fields: dict[str, Any]) -> dict[str, Any]:
    values = _plain(fields)
    values.setdefault("updated_at", utcnow())
    return values


class SqlChatStore(BaseChatStore):
    """
    Persistent chat store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Users ──────────────────────────────────────────────

    async def get_user(self, user_id: str) -> Optional[User]:
        async with get_session() as db:
            row = await db.get(UserRow, user_id)
            return _to_model(row, User) if row else None

    async def find_user_by_phone(self, phone: str, tenant_id: str) -> Optional[User]:
        async with get_session() as db:
            stmt = (
                select(UserRow)
                .where(and_(UserRow.phone == phone, UserRow.tenant_id == tenant_id))
                .order_by(UserRow.created_at)
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return _to_model(row, User) if row else None

    async def save_user(self, user: User) -> User:
        async with get_session() as db:
            await db.merge(UserRow(**_row_values(user)))
        return user

    async def update_user(self, user_id: str, **fields: Any) -> None:
        async with get_session() as db:
            await db.execute(
                update(UserRow).where(UserRow.id == user_id).values(**_update_values(fields))
            )

    async def list_users(
        self, tenant_id: Optional[str] = None, role: Optional[UserRole] = None,
        offset: int = 0, limit: Optional[int] = None,
    ) -> list[User]:
        stmt = select(UserRow)
        if tenant_id is not None:
            stmt = stmt.where(UserRow.tenant_id == tenant_id)
        if role is not None:
            stmt = stmt.where(UserRow.role == role.value)
        stmt = stmt.order_by(UserRow.created_at, UserRow.id).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with get_session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [_to_model(r, User) for r in rows]

    # ── Messages ───────────────────────────────────────────

    async def save_message(self, message: Message) -> Message:
        async with get_session() as db:
            db.add(MessageRow(**_row_values(message)))
        return message

    async def get_message(self, message_id: str) -> Optional[Message]:
        async with get_session() as db:
            row = await db.get(MessageRow, message_id)
            return _to_model(row, Message) if row else None

    async def update_message(self, message_id: str, **fields: Any) -> None:
        async with get_session() as db:
            await db.execute(
                update(MessageRow).where(MessageRow.id == message_id).values(**_update_values(fields))
            )

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
        conditions = []
        if ticket_id is not None:
            conditions.append(MessageRow.ticket_id == ticket_id)
        if sender_id is not None:
            conditions.append(MessageRow.sender_id == sender_id)
        if recipient_id is not None:
            conditions.append(MessageRow.recipient_id == recipient_id)
        if direction is not None:
            conditions.append(MessageRow.direction == direction.value)
        if created_after is not None:
            conditions.append(MessageRow.created_at > created_after)
        if sent_from is not None:
            conditions.append(MessageRow.sent_at >= sent_from)
        if sent_before is not None:
            conditions.append(MessageRow.sent_at < sent_before)

        if order_by == "created_at":
            keys = [MessageRow.created_at, MessageRow.id]
        else:
            keys = [func.coalesce(MessageRow.sent_at, MessageRow.created_at),
                    MessageRow.created_at, MessageRow.id]
        if newest_first:
            keys = [k.desc() for k in keys]

        stmt = select(MessageRow)
        if conditions:
            stmt = stmt.where(*conditions)
        stmt = stmt.order_by(*keys)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with get_session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [_to_model(r, Message) for r in rows]

    async def last_message_for_user(self, user_id: str) -> Optional[Message]:
        stmt = (
            select(MessageRow)
            .where(or_(MessageRow.sender_id == user_id, MessageRow.recipient_id == user_id))
            .order_by(MessageRow.created_at.desc(), MessageRow.id.desc())
            .limit(1)
        )
        async with get_session() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return _to_model(row, Message) if row else None

    # ── Tickets ────────────────────────────────────────────

    async def save_ticket(self, ticket: Ticket) -> Ticket:
        async with get_session() as db:
            db.add(TicketRow(**_row_values(ticket)))
        return ticket

    async def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        async with get_session() as db:
            row = await db.get(TicketRow, ticket_id)
            return _to_model(row, Ticket) if row else None

    async def update_ticket(self, ticket_id: str, **fields: Any) -> None:
        async with get_session() as db:
            await db.execute(
                update(TicketRow).where(TicketRow.id == ticket_id).values(**_update_values(fields))
            )

    async def find_ticket_between(
        self, user_a: str, user_b: str, status: TicketStatus,
    ) -> Optional[Ticket]:
        stmt = (
            select(TicketRow)
            .where(and_(
                TicketRow.status == status.value,
                or_(
                    and_(TicketRow.user_id == user_a, TicketRow.agent_id == user_b),
                    and_(TicketRow.user_id == user_b, TicketRow.agent_id == user_a),
                ),
            ))
            .order_by(TicketRow.created_at.desc(), TicketRow.id.desc())
            .limit(1)
        )
        async with get_session() as db:
            row = (await db.execute(stmt)).scalar_one_or_none()
            return _to_model(row, Ticket) if row else None

    async def list_tickets(
        self, tenant_id: Optional[str] = None, status: Optional[TicketStatus] = None,
    ) -> list[Ticket]:
        stmt = select(TicketRow)
        if tenant_id is not None:
            stmt = stmt.where(TicketRow.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(TicketRow.status == status.value)
        stmt = stmt.order_by(TicketRow.created_at, TicketRow.id)
        async with get_session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [_to_model(r, Ticket) for r in rows]

    # ── KPIs ───────────────────────────────────────────────

    async def save_kpi(self, kpi: Kpi) -> Kpi:
        async with get_session() as db:
            db.add(KpiRow(**_row_values(kpi)))
        return kpi

    async def list_kpis(
        self, tenant_id: Optional[str] = None, user_id: Optional[str] = None,
        kpi_type: Optional[KpiType] = None, ticket_id: Optional[str] = None,
    ) -> list[Kpi]:
        stmt = select(KpiRow)
        if tenant_id is not None:
            stmt = stmt.where(KpiRow.tenant_id == tenant_id)
        if user_id is not None:
            stmt = stmt.where(KpiRow.user_id == user_id)
        if kpi_type is not None:
            stmt = stmt.where(KpiRow.kpi_type == kpi_type.value)
        if ticket_id is not None:
            stmt = stmt.where(KpiRow.ticket_id == ticket_id)
        stmt = stmt.order_by(KpiRow.created_at, KpiRow.id)
        async with get_session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [_to_model(r, Kpi) for r in rows]

    async def find_kpi(self, kpi_type: KpiType, message_id: str) -> Optional[Kpi]:
        stmt = (
            select(KpiRow)
            .where(KpiRow.message_id == message_id, KpiRow.kpi_type == kpi_type.value)
            .order_by(KpiRow.created_at, KpiRow.id)
            .limit(1)
        )
        async with get_session() as db:
            row = (await db.execute(stmt)).scalars().first()
            return _to_model(row, Kpi) if row else None

    # ── Alerts ─────────────────────────────────────────────

    async def save_alert(self, alert: Alert) -> Alert:
        async with get_session() as db:
            db.add(AlertRow(**_row_values(alert)))
        return alert

    async def list_alerts(
        self, user_id: Optional[str] = None, ticket_id: Optional[str] = None,
        alert_type: Optional[AlertType] = None, created_after: Optional[datetime] = None,
    ) -> list[Alert]:
        stmt = select(AlertRow)
        if user_id is not None:
            stmt = stmt.where(AlertRow.user_id == user_id)
        if ticket_id is not None:
            stmt = stmt.where(AlertRow.ticket_id == ticket_id)
        if alert_type is not None:
            stmt = stmt.where(AlertRow.alert_type == alert_type.value)
        if created_after is not None:
            stmt = stmt.where(AlertRow.created_at > created_after)
        stmt = stmt.order_by(AlertRow.created_at, AlertRow.id)
        async with get_session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [_to_model(r, Alert) for r in rows]
