"""
Response Tracker: "does someone owe a reply?"

Two idempotent operations, both safe to re-run:

  create_response_kpi(message_id)   KPI stage: REQUIRE_RESPONSE KPI for the
                                    agent, raise the customer's flag and
                                    schedule the no-reply alert check
  reconcile_flag(user_id)           flag stage and hourly sweep: recompute
                                    ``require_response`` from the user's
                                    latest message; write only on change

The reconcile pass is the authoritative self-healing one: it never trusts
the stored flag, only the message history.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from config.tenants import TenantDirectory
from core.kpis import KpiRecorder
from database.store_base import BaseChatStore
from job_queue.scheduler import Scheduler
from models.schemas import JobType, KpiType, Message, User, UserRole

logger = structlog.get_logger()

UNCHANGED = "unchanged"
SET = "set"
CLEARED = "cleared"


def requires_response(user: User, last: Optional[Message]) -> bool:
    """Latest message is incoming and was sent by this customer, or addressed to this internal user."""
    if last is None or not last.is_incoming:
        return False
    if user.role == UserRole.STANDARD:
        return last.sender_id == user.id
    return last.recipient_id == user.id


class ResponseTracker:

    def __init__(
        self,
        store: BaseChatStore,
        scheduler: Scheduler,
        tenants: TenantDirectory,
        kpis: KpiRecorder,
        page_size: int = 500,
    ):
        self.store = store
        self.scheduler = scheduler
        self.tenants = tenants
        self.kpis = kpis
        self.page_size = page_size

    # ── KPI stage ─────────────────────────────────────────

    async def create_response_kpi(self, message_id: str) -> Optional[str]:
        """Returns the alert job id when one was scheduled."""
        message = await self.store.get_message(message_id)
        if message is None:
            logger.warning("response_kpi_message_missing", message_id=message_id)
            return None
        if not message.is_incoming:
            logger.debug("response_kpi_skipped_outgoing", message_id=message_id)
            return None
        if not message.sender_id or not message.recipient_id:
            logger.warning("response_kpi_missing_parties", message_id=message_id)
            return None

        if await self.store.find_kpi(KpiType.REQUIRE_RESPONSE, message_id) is not None:
            logger.debug("response_kpi_exists", message_id=message_id)
            return None

        await self.kpis.record(
            KpiType.REQUIRE_RESPONSE, message.tenant_id, message.recipient_id,
            ticket_id=message.ticket_id,
            data={"message_id": message_id, "deferred": True, "ticket_id": message.ticket_id},
            at=message.created_at,
        )
        await self.store.update_user(message.sender_id, require_response=True)

        delay_minutes = self.tenants.get_alert_delay_minutes(message.tenant_id)
        job_id = await self.scheduler.schedule_delayed(
            JobType.RESPONSE_ALERT,
            {
                "message_id": message_id,
                "sender_id": message.sender_id,
                "recipient_id": message.recipient_id,
                "delay_minutes": delay_minutes,
            },
            delay_minutes * 60,
            job_name=f"RequireResponseAlert-{message_id}",
        )
        logger.info("response_kpi_created",
                    message_id=message_id, agent_id=message.recipient_id,
                    alert_delay_minutes=delay_minutes)
        return job_id

    # ── Flag stage ────────────────────────────────────────

    async def reconcile_flag(self, user_id: str) -> str:
        user = await self.store.get_user(user_id)
        if user is None:
            logger.warning("flag_reconcile_user_missing", user_id=user_id)
            return UNCHANGED
        return await self._reconcile_user(user)

    async def _reconcile_user(self, user: User) -> str:
        last = await self.store.last_message_for_user(user.id)
        wanted = requires_response(user, last)
        if wanted == user.require_response:
            return UNCHANGED

        fields: dict[str, Any] = {"require_response": wanted}
        if wanted:
            fields["last_message_at"] = last.created_at
        await self.store.update_user(user.id, **fields)
        logger.debug("require_response_updated",
                     user_id=user.id, old=user.require_response, new=wanted)
        return SET if wanted else CLEARED

    async def reconcile_all(self, tenant_id: Optional[str] = None) -> dict[str, int]:
        """Recompute the flag for every STANDARD user, a page at a time."""
        stats = {"processed": 0, "updated": 0, "cleared": 0}
        offset = 0
        while True:
            page = await self.store.list_users(
                tenant_id=tenant_id, role=UserRole.STANDARD,
                offset=offset, limit=self.page_size,
            )
            for user in page:
                try:
                    outcome = await self._reconcile_user(user)
                except Exception as e:
                    logger.error("flag_reconcile_failed", user_id=user.id, error=str(e), exc_info=True)
                    continue
                stats["processed"] += 1
                if outcome != UNCHANGED:
                    stats["updated"] += 1
                if outcome == CLEARED:
                    stats["cleared"] += 1
            if len(page) < self.page_size:
                break
            offset += self.page_size
        logger.info("require_response_sweep_done", tenant_id=tenant_id, **stats)
        return stats

    async def reconcile_tenant(self, tenant_id: str) -> dict[str, int]:
        return await self.reconcile_all(tenant_id=tenant_id)
