"""
Message Service: entry points for new messages.

    create_incoming_message(phone, recipient_id, ...)   webhook side
    create_outgoing_message(sender_id, recipient_id, ...)  agent side

Both persist synchronously (route → best-effort ticket → save) and then
run ``after_message_created``, which schedules the delayed pipeline and
hands outgoing replies to outbound delivery in the background. Nothing
scheduled from here can fail the caller.
"""
from __future__ import annotations

import asyncio
import re
import structlog
from datetime import datetime, timedelta
from typing import Optional

from config.tenants import TenantDirectory
from core.collaborators import EventSink, OutboundDelivery, publish_safely
from core.errors import BusinessRuleError, EntityNotFoundError
from core.kpis import KpiRecorder
from core.pipeline import MessagePipeline
from core.router import MessageRouter
from core.tickets import TicketAssigner
from database.store_base import BaseChatStore
from models.schemas import (
    Message, MessageDirection, MessageStatus, User, UserRole, to_naive_utc, utcnow,
)

logger = structlog.get_logger()

LOCAL_NUMBER_LENGTH = 9
DEFAULT_COUNTRY_CODE = "51"

DELIVERY_STATUSES = {
    "delivered": MessageStatus.SENT,
    "sent": MessageStatus.SENT,
    "read": MessageStatus.READ,
    "failed": MessageStatus.ERROR,
}


def normalize_phone(phone: str) -> str:
    """Digits only; bare local numbers get the default country code."""
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == LOCAL_NUMBER_LENGTH and not digits.startswith(DEFAULT_COUNTRY_CODE):
        digits = DEFAULT_COUNTRY_CODE + digits
    return digits


class MessageService:

    def __init__(
        self,
        store: BaseChatStore,
        router: MessageRouter,
        assigner: TicketAssigner,
        pipeline: MessagePipeline,
        kpis: KpiRecorder,
        tenants: TenantDirectory,
        delivery: OutboundDelivery,
        events: EventSink,
    ):
        self.store = store
        self.router = router
        self.assigner = assigner
        self.pipeline = pipeline
        self.kpis = kpis
        self.tenants = tenants
        self.delivery = delivery
        self.events = events
        self._deliveries: set[asyncio.Task] = set()

    async def _require_user(self, user_id: str) -> User:
        user = await self.store.get_user(user_id)
        if user is None:
            raise EntityNotFoundError("user", user_id)
        return user

    # ── Entry points ──────────────────────────────────────

    async def create_incoming_message(
        self,
        sender_phone: str,
        recipient_id: str,
        content: str,
        tenant_id: str,
        sent_at: Optional[datetime] = None,
        is_prospect: bool = False,
    ) -> Message:
        recipient = await self._require_user(recipient_id)
        sender = await self.ensure_sender_exists(sender_phone, tenant_id, recipient)

        message = Message(
            tenant_id=tenant_id,
            sender_id=sender.id,
            recipient_id=recipient.id,
            direction=MessageDirection.INCOMING,
            content=content,
            status=MessageStatus.UNREAD,
            sent_at=to_naive_utc(sent_at) if sent_at else None,
            is_prospect=is_prospect,
            processed=False,
        )
        await self.router.route_incoming(message, sender, recipient)
        if message.recipient_id != recipient.id:
            recipient = await self._require_user(message.recipient_id)
        await self.fix_sent_at(message)

        if not is_prospect:
            await self.assigner.assign(message, sender, recipient)
        await self.store.save_message(message)
        logger.info("incoming_message_created",
                    message_id=message.id, sender_id=sender.id,
                    recipient_id=message.recipient_id, ticket_id=message.ticket_id,
                    routed=message.whatsapp_routed)

        await self.after_message_created(message, sender, recipient)
        return message

    async def create_outgoing_message(
        self,
        sender_id: str,
        recipient_id: str,
        content: str,
        sent_at: Optional[datetime] = None,
        is_prospect: bool = False,
    ) -> Message:
        sender = await self._require_user(sender_id)
        recipient = await self._require_user(recipient_id)
        if sender.id == recipient.id:
            raise BusinessRuleError("sender and recipient must differ")

        message = Message(
            tenant_id=sender.tenant_id,
            sender_id=sender.id,
            recipient_id=recipient.id,
            direction=MessageDirection.OUTGOING,
            content=content,
            status=MessageStatus.SENT,
            sent_at=to_naive_utc(sent_at) if sent_at else utcnow(),
            is_prospect=is_prospect,
            processed=True,
            whatsapp_business_routed=self.tenants.is_whatsapp_business(sender.tenant_id),
        )
        if not is_prospect:
            await self.assigner.assign(message, sender, recipient)
        await self.store.save_message(message)
        logger.info("outgoing_message_created",
                    message_id=message.id, sender_id=sender.id,
                    recipient_id=recipient.id, ticket_id=message.ticket_id)

        await self.after_message_created(message, sender, recipient)
        return message

    # ── Helpers ───────────────────────────────────────────

    async def ensure_sender_exists(self, phone: str, tenant_id: str, recipient: User) -> User:
        normalized = normalize_phone(phone)
        if not normalized:
            raise BusinessRuleError("sender phone is required")
        existing = await self.store.find_user_by_phone(normalized, tenant_id)
        if existing is not None:
            return existing

        # Shared inboxes are never a sticky agent; the router assigns one
        manager_id = None if recipient.role == UserRole.WHATSAPP_BUSINESS else recipient.id
        user = User(
            tenant_id=tenant_id,
            name=f"New client {normalized}",
            phone=normalized,
            role=UserRole.STANDARD,
            manager_id=manager_id,
        )
        await self.store.save_user(user)
        logger.info("sender_created", user_id=user.id, tenant_id=tenant_id, manager_id=manager_id)
        return user

    async def fix_sent_at(self, message: Message) -> None:
        """Make ``sent_at`` usable for ordering: present, not in the future, unique per minute."""
        now = utcnow()
        if message.sent_at is None:
            message.sent_at = now
            return
        if message.sent_at > now:
            message.sent_at = message.sent_at - timedelta(days=1)

        minute_start = message.sent_at.replace(second=0, microsecond=0)
        same_minute = await self.store.find_messages(
            sender_id=message.sender_id,
            recipient_id=message.recipient_id,
            sent_from=minute_start,
            sent_before=minute_start + timedelta(minutes=1),
            newest_first=True,
            limit=1,
        )
        if same_minute:
            message.sent_at = same_minute[0].sent_at + timedelta(seconds=1)

    async def after_message_created(self, message: Message, sender: User, recipient: User) -> None:
        now = utcnow()
        for user_id in (message.sender_id, message.recipient_id):
            await self.store.update_user(user_id, last_message_at=now)

        await publish_safely(self.events, "message_created", {
            "message_id": message.id,
            "ticket_id": message.ticket_id,
            "sender_id": message.sender_id,
            "recipient_id": message.recipient_id,
            "direction": message.direction.value,
        })

        if message.is_prospect:
            logger.debug("prospect_message_skips_pipeline", message_id=message.id)
        else:
            await self.pipeline.enqueue_ticket_stage(message.id)
            if message.is_outgoing:
                try:
                    await self.kpis.log_outgoing(message, sender)
                except Exception as e:
                    logger.error("outgoing_kpis_failed", message_id=message.id, error=str(e), exc_info=True)
            else:
                await self.pipeline.enqueue_kpi_stage(message.id)
            customer_id = message.sender_id if message.is_incoming else message.recipient_id
            await self.pipeline.enqueue_flag_stage(customer_id)

        if message.is_outgoing and recipient.role == UserRole.STANDARD:
            task = asyncio.create_task(self._deliver(message, recipient))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)

    async def _deliver(self, message: Message, recipient: User) -> None:
        route = "whatsapp" if message.whatsapp_business_routed else "interceptor"
        try:
            if message.whatsapp_business_routed:
                await self.delivery.send_whatsapp(message, recipient)
            else:
                await self.delivery.send_interceptor(message, recipient)
            logger.info("message_delivered", message_id=message.id, route=route)
        except Exception as e:
            logger.error("message_delivery_failed", message_id=message.id, route=route, error=str(e))
            await self.store.update_message(message.id, status=MessageStatus.ERROR)

    async def flush_deliveries(self, timeout: float = 10) -> None:
        """Wait for background deliveries (tests and shutdown)."""
        if self._deliveries:
            await asyncio.wait(set(self._deliveries), timeout=timeout)

    async def update_delivery_status(self, message_id: str, status: str) -> Optional[Message]:
        mapped = DELIVERY_STATUSES.get((status or "").lower())
        if mapped is None:
            logger.warning("unknown_delivery_status", message_id=message_id, status=status)
            return None
        message = await self.store.get_message(message_id)
        if message is None:
            raise EntityNotFoundError("message", message_id)
        await self.store.update_message(message_id, status=mapped)
        logger.info("delivery_status_updated", message_id=message_id, status=mapped.value)
        return await self.store.get_message(message_id)
