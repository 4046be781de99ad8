"""
KPI Recorder: append-only metric events.

Message-triggered KPIs copy their timestamps from the message, so
reports stay chronological even when jobs run late.

Outgoing reply (logged at creation time, ticketed messages only):
  SENT_MESSAGE                 sender is an AGENT
  RESPONDED_TO_CLIENT          always
  FIRST_RESPONSE_TIME          first AGENT reply after the ticket's latest
  UNIQUE_RESPONDED_TO_CLIENT   incoming; working minutes, capped

Incoming (KPI stage):
  NEW_CLIENT                   first incoming message of a ticket
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional

from config.tenants import TenantDirectory
from core.working_hours import WorkingHours
from database.store_base import BaseChatStore
from models.schemas import (
    Kpi, KpiType, Message, MessageDirection, Ticket, User, UserRole,
)

logger = structlog.get_logger()


class KpiRecorder:

    def __init__(
        self,
        store: BaseChatStore,
        tenants: TenantDirectory,
        working_hours: WorkingHours = None,
        first_response_cap_minutes: int = 2880,
    ):
        self.store = store
        self.tenants = tenants
        self.working_hours = working_hours or WorkingHours()
        self.first_response_cap = first_response_cap_minutes

    async def record(
        self,
        kpi_type: KpiType,
        tenant_id: str,
        user_id: Optional[str],
        value: int = 1,
        ticket_id: Optional[str] = None,
        data: dict[str, Any] = None,
        at: Optional[datetime] = None,
    ) -> Kpi:
        """Append one event; ``data["message_id"]`` also becomes the indexed ``message_id``."""
        data = data or {}
        kpi = Kpi(
            tenant_id=tenant_id or "",
            user_id=user_id,
            kpi_type=kpi_type,
            value=value,
            ticket_id=ticket_id,
            message_id=data.get("message_id"),
            data=data,
        )
        if at is not None:
            kpi.created_at = at
            kpi.updated_at = at
        await self.store.save_kpi(kpi)
        logger.info("kpi_recorded",
                    kpi_type=kpi_type.value, user_id=user_id,
                    ticket_id=ticket_id, value=value)
        return kpi

    # ── Outgoing ──────────────────────────────────────────

    async def log_outgoing(self, message: Message, sender: User) -> list[Kpi]:
        if not message.ticket_id:
            return []
        ticket = await self.store.get_ticket(message.ticket_id)
        if ticket is None:
            logger.warning("kpi_ticket_missing", message_id=message.id, ticket_id=message.ticket_id)
            return []

        recorded = []
        data = {"message_id": message.id}
        if sender.role == UserRole.AGENT:
            recorded.append(await self.record(
                KpiType.SENT_MESSAGE, ticket.tenant_id, ticket.agent_id,
                ticket_id=ticket.id, data=data, at=message.created_at,
            ))
        recorded.append(await self.record(
            KpiType.RESPONDED_TO_CLIENT, ticket.tenant_id, ticket.agent_id,
            ticket_id=ticket.id, data=data, at=message.created_at,
        ))
        if sender.role == UserRole.AGENT:
            recorded.extend(await self._log_first_response(message, ticket))
        return recorded

    async def _log_first_response(self, message: Message, ticket: Ticket) -> list[Kpi]:
        last_incoming = await self.store.find_messages(
            ticket_id=ticket.id, direction=MessageDirection.INCOMING,
            newest_first=True, limit=1,
        )
        if not last_incoming or last_incoming[0].sent_at is None or message.sent_at is None:
            return []
        incoming = last_incoming[0]

        # The customer has been answered
        if message.recipient_id:
            await self.store.update_user(message.recipient_id, require_response=False)

        replies = await self.store.find_messages(
            ticket_id=ticket.id, direction=MessageDirection.OUTGOING,
            sent_from=incoming.sent_at,
        )
        replies = [m for m in replies if m.sent_at > incoming.sent_at]
        if len(replies) != 1 or replies[0].id != message.id:
            logger.debug("first_response_already_credited",
                         ticket_id=ticket.id, replies=len(replies))
            return []

        minutes = self.working_hours.minutes_between(
            incoming.sent_at, message.sent_at, self.tenants.get_timezone(ticket.tenant_id),
        )
        minutes = min(minutes, self.first_response_cap)
        data = {"message_id": message.id, "incoming_message_id": incoming.id}
        return [
            await self.record(
                KpiType.FIRST_RESPONSE_TIME, ticket.tenant_id, ticket.agent_id,
                value=minutes, ticket_id=ticket.id, data=data, at=message.created_at,
            ),
            await self.record(
                KpiType.UNIQUE_RESPONDED_TO_CLIENT, ticket.tenant_id, ticket.agent_id,
                ticket_id=ticket.id, data=data, at=message.created_at,
            ),
        ]

    # ── Incoming ──────────────────────────────────────────

    async def log_new_client(self, message_id: str) -> Optional[Kpi]:
        """NEW_CLIENT once per ticket, when this is the ticket's first incoming message."""
        message = await self.store.get_message(message_id)
        if message is None or not message.ticket_id or not message.is_incoming:
            return None
        incoming = await self.store.find_messages(
            ticket_id=message.ticket_id, direction=MessageDirection.INCOMING, limit=1,
        )
        if not incoming or incoming[0].id != message.id:
            return None
        existing = await self.store.list_kpis(ticket_id=message.ticket_id, kpi_type=KpiType.NEW_CLIENT)
        if existing:
            return None
        ticket = await self.store.get_ticket(message.ticket_id)
        if ticket is None:
            return None
        return await self.record(
            KpiType.NEW_CLIENT, ticket.tenant_id, ticket.agent_id,
            ticket_id=ticket.id, data={"message_id": message.id}, at=message.created_at,
        )
