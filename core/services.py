"""
Service wiring: builds the object graph from Settings.

Usage:
    services = build_services(settings, store, job_store)
    await services.scheduler.start()
    for task in build_maintenance_tasks(services, settings):
        await task.start_background()
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass

from config.settings import Settings
from config.tenants import TenantDirectory
from core.alerts import AlertEscalator
from core.collaborators import (
    EventSink, LoggingDelivery, LoggingEventSink, LoggingNotifier, Notifier, OutboundDelivery,
)
from core.kpis import KpiRecorder
from core.message_service import MessageService
from core.pipeline import MessagePipeline
from core.response_tracker import ResponseTracker
from core.router import MessageRouter
from core.tickets import TicketAssigner, TicketLifecycle
from core.working_hours import WorkingHours
from database.store_base import BaseChatStore
from job_queue.job_store import BaseJobStore
from job_queue.periodic import PeriodicTask
from job_queue.scheduler import JobHandlerRegistry, Scheduler

logger = structlog.get_logger()


@dataclass
class ChatServices:
    store: BaseChatStore
    job_store: BaseJobStore
    scheduler: Scheduler
    registry: JobHandlerRegistry
    tenants: TenantDirectory
    kpis: KpiRecorder
    router: MessageRouter
    assigner: TicketAssigner
    lifecycle: TicketLifecycle
    tracker: ResponseTracker
    alerts: AlertEscalator
    pipeline: MessagePipeline
    messages: MessageService
    notifier: Notifier
    delivery: OutboundDelivery
    events: EventSink


def build_services(
    settings: Settings,
    store: BaseChatStore,
    job_store: BaseJobStore,
    notifier: Notifier = None,
    delivery: OutboundDelivery = None,
    events: EventSink = None,
    tenants: TenantDirectory = None,
) -> ChatServices:
    notifier = notifier or LoggingNotifier()
    delivery = delivery or LoggingDelivery()
    events = events or LoggingEventSink()
    tenants = tenants or TenantDirectory.from_settings(settings)
    sched_cfg = settings.scheduler
    pipe_cfg = settings.pipeline

    registry = JobHandlerRegistry()
    scheduler = Scheduler(
        job_store,
        registry,
        pool_size=sched_cfg.pool_size,
        sweep_interval_seconds=sched_cfg.sweep_interval_seconds,
        stuck_timeout_minutes=sched_cfg.stuck_timeout_minutes,
        reaper_interval_seconds=sched_cfg.reaper_interval_seconds,
        retention_days=sched_cfg.retention_days,
        retention_interval_seconds=sched_cfg.retention_interval_seconds,
    )
    kpis = KpiRecorder(
        store, tenants,
        working_hours=WorkingHours.from_config(settings.working_hours),
        first_response_cap_minutes=pipe_cfg.first_response_cap_minutes,
    )
    router = MessageRouter(store)
    assigner = TicketAssigner(store, kpis)
    lifecycle = TicketLifecycle(store, kpis)
    tracker = ResponseTracker(store, scheduler, tenants, kpis, page_size=pipe_cfg.flag_sweep_page_size)
    alerts = AlertEscalator(
        store, notifier, tenants,
        escalation_alert_count=pipe_cfg.escalation_alert_count,
        overdue_threshold_minutes=pipe_cfg.overdue_threshold_minutes,
    )
    pipeline = MessagePipeline(scheduler, assigner, tracker, kpis, alerts, pipe_cfg)
    pipeline.register(registry)
    messages = MessageService(store, router, assigner, pipeline, kpis, tenants, delivery, events)

    logger.info("services_built", job_types=[t.value for t in registry.job_types])
    return ChatServices(
        store=store, job_store=job_store, scheduler=scheduler, registry=registry,
        tenants=tenants, kpis=kpis, router=router, assigner=assigner, lifecycle=lifecycle,
        tracker=tracker, alerts=alerts, pipeline=pipeline, messages=messages,
        notifier=notifier, delivery=delivery, events=events,
    )


def build_maintenance_tasks(services: ChatServices, settings: Settings) -> list[PeriodicTask]:
    """Domain sweeps: hourly flag rebuild, overdue alerts, ticket auto-close."""
    cfg = settings.pipeline
    return [
        PeriodicTask("flag_sweep", services.tracker.reconcile_all,
                     cfg.flag_sweep_interval_seconds, initial_delay_seconds=cfg.flag_sweep_interval_seconds),
        PeriodicTask("overdue_sweep", services.alerts.sweep_overdue,
                     cfg.overdue_sweep_interval_seconds, initial_delay_seconds=cfg.overdue_sweep_interval_seconds),
        PeriodicTask("auto_close", lambda: services.lifecycle.auto_close(services.tenants),
                     cfg.auto_close_interval_seconds, initial_delay_seconds=cfg.auto_close_interval_seconds),
    ]
