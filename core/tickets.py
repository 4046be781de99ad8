"""
Ticket Assigner: which conversation session a message belongs to.

State per (customer, agent) pair: NoTicket → Open → Closed.

  assign(message)     synchronous best-effort pass at creation time;
                      the only path that creates tickets
  reconcile(id)       deferred lookup-only pass (ticket stage); attaches
                      to an open ticket, or a closed one for outgoing replies

Ticket Lifecycle: closing, by agent action or by the auto-close sweep.
"""
from __future__ import annotations

import asyncio
import contextlib
import structlog
from datetime import timedelta
from typing import Any, Optional

from config.tenants import TenantDirectory
from core.errors import EntityNotFoundError
from core.kpis import KpiRecorder
from database.store_base import BaseChatStore
from models.schemas import (
    KpiType, Message, MessageDirection, Ticket, TicketStatus, User, UserRole, utcnow,
)

logger = structlog.get_logger()

SUBJECT_MAX = 100


def make_subject(content: str) -> str:
    content = (content or "").strip()
    if len(content) > SUBJECT_MAX:
        return content[:SUBJECT_MAX] + "..."
    return content


class TicketAssigner:
    """
    Usage:
        assigner = TicketAssigner(store, kpis)
        await assigner.assign(message, sender, recipient)   # before save
        await assigner.reconcile(message.id)                # ticket stage
    """

    def __init__(self, store: BaseChatStore, kpis: KpiRecorder):
        self.store = store
        self.kpis = kpis
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, str], int] = {}

    @contextlib.asynccontextmanager
    async def _pair_locked(self, a: str, b: str):
        """Serialize ticket creation per pair. The lock is dropped once nobody holds or awaits it."""
        key = (a, b) if a <= b else (b, a)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    @staticmethod
    def customer_and_agent(message: Message, sender: User, recipient: User) -> tuple[User, User]:
        if message.is_incoming:
            return sender, recipient
        return recipient, sender

    async def assign(self, message: Message, sender: User, recipient: User) -> Optional[Ticket]:
        """Set ``message.ticket_id`` in place. Returns the ticket, or None if left unassigned."""
        if message.ticket_id:
            return await self.store.get_ticket(message.ticket_id)

        customer, agent = self.customer_and_agent(message, sender, recipient)
        if customer.role != UserRole.STANDARD:
            return None

        async with self._pair_locked(customer.id, agent.id):
            open_ticket = await self.store.find_ticket_between(customer.id, agent.id, TicketStatus.OPEN)
            if open_ticket is not None:
                message.ticket_id = open_ticket.id
                return open_ticket

            closed = await self.store.find_ticket_between(customer.id, agent.id, TicketStatus.CLOSED)

            if message.is_outgoing:
                if closed is not None:
                    message.ticket_id = closed.id
                    logger.debug("outgoing_attached_to_closed_ticket",
                                 message_id=message.id, ticket_id=closed.id)
                return closed

            if closed is not None and await self._superseded(closed, message):
                logger.info("late_message_left_unassigned",
                            message_id=message.id, closed_ticket_id=closed.id)
                return None

            ticket = Ticket(
                tenant_id=message.tenant_id or customer.tenant_id,
                user_id=customer.id,
                agent_id=agent.id,
                subject=make_subject(message.content),
            )
            await self.store.save_ticket(ticket)
            message.ticket_id = ticket.id

        logger.info("ticket_created", ticket_id=ticket.id, user_id=customer.id, agent_id=agent.id)
        await self.kpis.record(
            KpiType.NEW_TICKET, ticket.tenant_id, agent.id,
            ticket_id=ticket.id, data={"message_id": message.id}, at=message.created_at,
        )
        return ticket

    async def _superseded(self, closed: Ticket, message: Message) -> bool:
        """True when the closed ticket already holds an incoming message newer than this one."""
        if message.sent_at is None:
            return False
        last = await self.store.find_messages(
            ticket_id=closed.id, direction=MessageDirection.INCOMING, newest_first=True, limit=1,
        )
        return bool(last) and last[0].sent_at is not None and last[0].sent_at > message.sent_at

    async def reconcile(self, message_id: str) -> Optional[str]:
        """Deferred re-check. Never creates a ticket; returns the ticket id attached, if any."""
        message = await self.store.get_message(message_id)
        if message is None:
            logger.warning("ticket_reconcile_message_missing", message_id=message_id)
            return None
        if message.ticket_id:
            logger.debug("ticket_reconcile_already_assigned",
                         message_id=message_id, ticket_id=message.ticket_id)
            return message.ticket_id
        if not message.sender_id or not message.recipient_id:
            logger.warning("ticket_reconcile_missing_parties", message_id=message_id)
            return None

        ticket = await self.store.find_ticket_between(
            message.sender_id, message.recipient_id, TicketStatus.OPEN,
        )
        if ticket is None and message.is_outgoing:
            ticket = await self.store.find_ticket_between(
                message.sender_id, message.recipient_id, TicketStatus.CLOSED,
            )
        if ticket is None:
            logger.debug("ticket_reconcile_unassigned", message_id=message_id)
            return None

        await self.store.update_message(message_id, ticket_id=ticket.id)
        logger.info("ticket_reconciled", message_id=message_id, ticket_id=ticket.id)
        return ticket.id


class TicketLifecycle:

    CON_ACUERDO = "con_acuerdo"
    SIN_ACUERDO = "sin_acuerdo"
    AUTO = "auto"

    def __init__(self, store: BaseChatStore, kpis: KpiRecorder):
        self.store = store
        self.kpis = kpis

    async def close_ticket(self, ticket_id: str, close_type: Optional[str] = None,
                           auto: bool = False) -> Ticket:
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            raise EntityNotFoundError("ticket", ticket_id)
        if ticket.status == TicketStatus.CLOSED:
            logger.debug("ticket_already_closed", ticket_id=ticket_id)
            return ticket

        now = utcnow()
        close_type = close_type or (self.AUTO if auto else None)
        await self.store.update_ticket(
            ticket_id, status=TicketStatus.CLOSED, close_type=close_type, closed_at=now,
        )
        minutes_open = max(0, int((now - ticket.created_at).total_seconds() // 60))

        await self.kpis.record(KpiType.CLOSED_TICKET, ticket.tenant_id, ticket.agent_id,
                               ticket_id=ticket.id, at=now)
        await self.kpis.record(KpiType.TMO, ticket.tenant_id, ticket.agent_id,
                               value=minutes_open, ticket_id=ticket.id, at=now)
        if close_type == self.CON_ACUERDO:
            await self.kpis.record(KpiType.CLOSED_CON_ACUERDO, ticket.tenant_id, ticket.agent_id,
                                   ticket_id=ticket.id, at=now)
        elif close_type == self.SIN_ACUERDO:
            await self.kpis.record(KpiType.CLOSED_SIN_ACUERDO, ticket.tenant_id, ticket.agent_id,
                                   ticket_id=ticket.id, at=now)
        if auto:
            await self.kpis.record(KpiType.AUTO_CLOSED_TICKET, ticket.tenant_id, ticket.agent_id,
                                   ticket_id=ticket.id, at=now)

        logger.info("ticket_closed", ticket_id=ticket_id, close_type=close_type,
                    auto=auto, minutes_open=minutes_open)
        return await self.store.get_ticket(ticket_id)

    async def auto_close(self, tenants: TenantDirectory) -> dict[str, Any]:
        """Close idle OPEN tickets for every tenant with auto-close configured."""
        stats = {"checked": 0, "closed": 0, "errors": 0}
        for tenant_id in tenants.tenant_ids():
            hours = tenants.get_auto_close_hours(tenant_id)
            if not hours:
                continue
            cutoff = utcnow() - timedelta(hours=hours)
            for ticket in await self.store.list_tickets(tenant_id=tenant_id, status=TicketStatus.OPEN):
                stats["checked"] += 1
                try:
                    if await self._idle_since(ticket, cutoff):
                        await self.close_ticket(ticket.id, auto=True)
                        stats["closed"] += 1
                except Exception as e:
                    stats["errors"] += 1
                    logger.error("auto_close_failed", ticket_id=ticket.id, error=str(e), exc_info=True)
        if stats["closed"]:
            logger.info("tickets_auto_closed", **stats)
        return stats

    async def _idle_since(self, ticket: Ticket, cutoff) -> bool:
        last = await self.store.find_messages(ticket_id=ticket.id, newest_first=True, limit=1)
        if not last:
            return ticket.created_at < cutoff
        last_message = last[0]
        if (last_message.sent_at or last_message.created_at) >= cutoff:
            return False
        if last_message.is_incoming:
            # An unanswered conversation stays open until the agent has replied once
            replies = await self.store.find_messages(
                ticket_id=ticket.id, direction=MessageDirection.OUTGOING, limit=1,
            )
            return bool(replies)
        return True
