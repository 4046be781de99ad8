"""
Alert Escalator: raise alerts when a reply window elapses unanswered.

  check_and_alert(...)   RESPONSE_ALERT job, scheduled by the KPI stage.
                         Reply found → clear the waiting party's flag.
                         No reply    → alert the agent, re-affirm the flag.
                         Never re-schedules itself.
  sweep_overdue()        every few minutes: alert on OPEN tickets whose last
                         message is an old INCOMING one; escalate to the
                         nearest supervisor after repeated alerts.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import timedelta
from typing import Any, Optional

from config.tenants import TenantDirectory
from core.collaborators import Notifier, notify_safely
from core.hierarchy import ManagerHierarchy
from database.store_base import BaseChatStore
from models.schemas import (
    Alert, AlertSeverity, AlertType, Message, MessageDirection, Ticket, TicketStatus, User, utcnow,
)

logger = structlog.get_logger()

DEDUP_WINDOW = timedelta(hours=1)


def ticket_url(ticket_id: str) -> str:
    return f"/tickets/{ticket_id}"


class AlertEscalator:

    def __init__(
        self,
        store: BaseChatStore,
        notifier: Notifier,
        tenants: TenantDirectory,
        escalation_alert_count: int = 3,
        overdue_threshold_minutes: int = 15,
    ):
        self.store = store
        self.notifier = notifier
        self.tenants = tenants
        self.escalation_alert_count = escalation_alert_count
        self.overdue_threshold_minutes = overdue_threshold_minutes

    # ── Delayed no-reply check ────────────────────────────

    async def check_and_alert(self, message_id: str, sender_id: str,
                              recipient_id: str, delay_minutes: int) -> Optional[Alert]:
        message = await self.store.get_message(message_id)
        if message is None:
            logger.warning("alert_check_message_missing", message_id=message_id)
            return None

        waiting_id = sender_id if message.is_incoming else recipient_id
        if await self.has_response(message, sender_id, recipient_id):
            waiting = await self.store.get_user(waiting_id)
            if waiting is not None and waiting.require_response:
                await self.store.update_user(waiting_id, require_response=False)
            logger.debug("alert_check_answered", message_id=message_id)
            return None

        sender = await self.store.get_user(sender_id)
        recipient = await self.store.get_user(recipient_id)
        if sender is None or recipient is None:
            logger.warning("alert_check_users_missing",
                           message_id=message_id, sender_id=sender_id, recipient_id=recipient_id)
            return None

        alert = None
        if message.ticket_id:
            ticket = await self.store.get_ticket(message.ticket_id)
            if ticket is not None and not await self._recently_alerted(ticket.id):
                alert = await self._ticket_alert(ticket)
        else:
            alert = await self.store.save_alert(Alert(
                tenant_id=message.tenant_id,
                user_id=recipient_id,
                alert_type=AlertType.REQUIRE_RESPONSE,
                title="Message requires a response",
                body=f"{sender.name or sender.phone} has been waiting {delay_minutes} min",
                message_id=message.id,
                sender_id=sender_id,
                recipient_id=recipient_id,
            ))
            logger.info("message_alert_created", message_id=message_id, alert_id=alert.id)

        await notify_safely(
            self.notifier, recipient_id, AlertType.REQUIRE_RESPONSE.value,
            "Message requires a response",
            f"Message from {sender.name or sender.phone} requires a response "
            f"(waiting {delay_minutes} min)",
        )

        waiting = sender if message.is_incoming else recipient
        fields: dict[str, Any] = {"require_response": True}
        if waiting.last_message_at is None:
            fields["last_message_at"] = message.created_at
        await self.store.update_user(waiting.id, **fields)
        return alert

    async def has_response(self, message: Message, sender_id: str, recipient_id: str) -> bool:
        if message.ticket_id:
            replies = await self.store.find_messages(
                ticket_id=message.ticket_id, direction=MessageDirection.OUTGOING,
                created_after=message.created_at, limit=1,
            )
        else:
            replies = await self.store.find_messages(
                sender_id=recipient_id, recipient_id=sender_id,
                direction=MessageDirection.OUTGOING,
                created_after=message.created_at, limit=1,
            )
        return bool(replies)

    async def _recently_alerted(self, ticket_id: str) -> bool:
        recent = await self.store.list_alerts(
            ticket_id=ticket_id, alert_type=AlertType.REQUIRE_RESPONSE,
            created_after=utcnow() - DEDUP_WINDOW,
        )
        return bool(recent)

    async def _ticket_alert(self, ticket: Ticket) -> Alert:
        alert = await self.store.save_alert(Alert(
            tenant_id=ticket.tenant_id,
            user_id=ticket.agent_id,
            alert_type=AlertType.REQUIRE_RESPONSE,
            title="Ticket requires a response",
            body=f"Ticket {ticket.id} ({ticket.subject}) is waiting for a reply",
            url=ticket_url(ticket.id),
            ticket_id=ticket.id,
            sender_id=ticket.user_id,
            recipient_id=ticket.agent_id,
        ))
        logger.info("ticket_alert_created", ticket_id=ticket.id, alert_id=alert.id)
        return alert

    # ── Overdue sweep ─────────────────────────────────────

    async def sweep_overdue(self) -> dict[str, int]:
        stats = {"checked": 0, "alerted": 0, "escalated": 0, "errors": 0}
        by_tenant: dict[str, list[Ticket]] = defaultdict(list)
        for ticket in await self.store.list_tickets(status=TicketStatus.OPEN):
            by_tenant[ticket.tenant_id].append(ticket)

        for tenant_id, tickets in by_tenant.items():
            minutes = self.tenants.get_alert_delay_minutes(tenant_id, default=self.overdue_threshold_minutes)
            threshold = utcnow() - timedelta(minutes=minutes)
            hierarchy = None
            for ticket in tickets:
                stats["checked"] += 1
                try:
                    if not await self._is_overdue(ticket, threshold):
                        continue
                    if await self._recently_alerted(ticket.id):
                        continue
                    await self._ticket_alert(ticket)
                    await notify_safely(
                        self.notifier, ticket.agent_id, AlertType.REQUIRE_RESPONSE.value,
                        "Ticket requires a response", f"Ticket {ticket.id} requires a response",
                    )
                    stats["alerted"] += 1
                    if hierarchy is None:
                        hierarchy = await ManagerHierarchy.load(self.store, tenant_id)
                    if await self._maybe_escalate(ticket, hierarchy):
                        stats["escalated"] += 1
                except Exception as e:
                    stats["errors"] += 1
                    logger.error("overdue_check_failed", ticket_id=ticket.id, error=str(e), exc_info=True)

        if stats["alerted"]:
            logger.info("overdue_sweep_done", **stats)
        return stats

    async def _is_overdue(self, ticket: Ticket, threshold) -> bool:
        last = await self.store.find_messages(ticket_id=ticket.id, newest_first=True, limit=1)
        if not last or not last[0].is_incoming:
            return False
        return (last[0].sent_at or last[0].created_at) < threshold

    async def _maybe_escalate(self, ticket: Ticket, hierarchy: ManagerHierarchy) -> Optional[Alert]:
        alerts = await self.store.list_alerts(ticket_id=ticket.id, alert_type=AlertType.REQUIRE_RESPONSE)
        if len(alerts) < self.escalation_alert_count:
            return None
        if await self.store.list_alerts(ticket_id=ticket.id, alert_type=AlertType.ESCALATION):
            return None
        supervisor_id = hierarchy.nearest_supervisor(ticket.agent_id)
        if supervisor_id is None:
            logger.warning("escalation_no_supervisor", ticket_id=ticket.id, agent_id=ticket.agent_id)
            return None

        agent: Optional[User] = await self.store.get_user(ticket.agent_id)
        agent_name = agent.name if agent and agent.name else ticket.agent_id
        alert = await self.store.save_alert(Alert(
            tenant_id=ticket.tenant_id,
            user_id=supervisor_id,
            alert_type=AlertType.ESCALATION,
            severity=AlertSeverity.HIGH,
            title="Ticket escalated",
            body=f"Ticket {ticket.id} assigned to {agent_name} has {len(alerts)} unanswered alerts",
            url=ticket_url(ticket.id),
            ticket_id=ticket.id,
            sender_id=ticket.user_id,
            recipient_id=ticket.agent_id,
        ))
        await notify_safely(self.notifier, supervisor_id, AlertType.ESCALATION.value,
                            alert.title, alert.body)
        logger.warning("ticket_escalated",
                       ticket_id=ticket.id, supervisor_id=supervisor_id, alerts=len(alerts))
        return alert
