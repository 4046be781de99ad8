"""
Message Pipeline: the staged follow-ups every new message schedules.

    ticket (5s) ──▶ kpi (10s) ──▶ flag (20s)
                      └──▶ response alert (tenant delay)

The delays only make it *likely* that an upstream stage has run. Each
stage re-validates upstream state itself (the KPI stage re-runs the
lookup-only ticket pass first), so correctness never depends on
scheduler latency.

Usage:
    pipeline = MessagePipeline(scheduler, assigner, tracker, kpis, alerts)
    pipeline.register(registry)
    await pipeline.enqueue_ticket_stage(message.id)
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Any, Optional

from config.settings import PipelineConfig
from core.alerts import AlertEscalator
from core.kpis import KpiRecorder
from core.response_tracker import ResponseTracker
from core.tickets import TicketAssigner
from job_queue.scheduler import JobHandlerRegistry, Scheduler
from models.schemas import JobType

logger = structlog.get_logger()


@dataclass(frozen=True)
class PipelineStage:
    name: str
    job_type: JobType
    delay_seconds: float
    payload_keys: tuple[str, ...]
    job_name_prefix: str
    upstream: Optional[str] = None

    def job_name(self, key: str) -> str:
        return f"{self.job_name_prefix}-{key}"


ALERT_PAYLOAD_KEYS = ("message_id", "sender_id", "recipient_id", "delay_minutes")


def build_stages(config: PipelineConfig) -> dict[str, PipelineStage]:
    return {
        "ticket": PipelineStage("ticket", JobType.TICKET_ASSIGNMENT, config.ticket_delay_seconds,
                                ("message_id",), "TicketAssignment"),
        "kpi": PipelineStage("kpi", JobType.RESPONSE_KPI, config.kpi_delay_seconds,
                             ("message_id",), "RequireResponseKpi", upstream="ticket"),
        "flag": PipelineStage("flag", JobType.FLAG_RECONCILE, config.flag_delay_seconds,
                              ("user_id",), "ReconstructUserFlag", upstream="kpi"),
    }


class MessagePipeline:

    def __init__(
        self,
        scheduler: Scheduler,
        assigner: TicketAssigner,
        tracker: ResponseTracker,
        kpis: KpiRecorder,
        alerts: AlertEscalator,
        config: PipelineConfig = None,
    ):
        self.scheduler = scheduler
        self.assigner = assigner
        self.tracker = tracker
        self.kpis = kpis
        self.alerts = alerts
        self.stages = build_stages(config or PipelineConfig())

    def register(self, registry: JobHandlerRegistry) -> None:
        """Install one executor per job type."""
        handlers = {
            "ticket": self._run_ticket_stage,
            "kpi": self._run_kpi_stage,
            "flag": self._run_flag_stage,
        }
        for name, stage in self.stages.items():
            registry.register(stage.job_type, handlers[name], stage.payload_keys)
        registry.register(JobType.RESPONSE_ALERT, self._run_alert, ALERT_PAYLOAD_KEYS)

    # ── Enqueueing ────────────────────────────────────────

    async def _enqueue(self, stage_name: str, key: str) -> str:
        stage = self.stages[stage_name]
        payload = {stage.payload_keys[0]: key}
        return await self.scheduler.schedule_delayed(
            stage.job_type, payload, stage.delay_seconds, job_name=stage.job_name(key),
        )

    async def enqueue_ticket_stage(self, message_id: str) -> str:
        return await self._enqueue("ticket", message_id)

    async def enqueue_kpi_stage(self, message_id: str) -> str:
        return await self._enqueue("kpi", message_id)

    async def enqueue_flag_stage(self, user_id: str) -> str:
        return await self._enqueue("flag", user_id)

    # ── Executors ─────────────────────────────────────────

    async def _run_ticket_stage(self, payload: dict[str, Any]):
        return await self.assigner.reconcile(payload["message_id"])

    async def _run_kpi_stage(self, payload: dict[str, Any]):
        message_id = payload["message_id"]
        # The ticket stage may not have run yet
        await self.assigner.reconcile(message_id)
        job_id = await self.tracker.create_response_kpi(message_id)
        await self.kpis.log_new_client(message_id)
        return job_id

    async def _run_flag_stage(self, payload: dict[str, Any]):
        return await self.tracker.reconcile_flag(payload["user_id"])

    async def _run_alert(self, payload: dict[str, Any]):
        return await self.alerts.check_and_alert(
            payload["message_id"],
            payload["sender_id"],
            payload["recipient_id"],
            int(payload["delay_minutes"]),
        )
