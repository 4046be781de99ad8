"""
Scheduler: in-process timer pool over a durable job store.

Two primitives:
  schedule_delayed(type, payload, delay)    persisted, survives restarts
  schedule_in_memory(type, payload, delay)  timer only, lost on restart

Timers fire into a bounded worker pool (asyncio.Semaphore). A persisted
job runs only after ``job_store.claim()`` wins the PENDING → RUNNING
transition, so recovery, the periodic sweep and other processes can all
re-arm the same job without executing it twice.

Background loops started by ``start()``:
  sweep      every ~10s   re-arm due PENDING jobs with no local timer
  reaper     every ~30min RUNNING longer than the timeout → FAILED
  retention  daily        delete COMPLETED/FAILED older than N days

Failure policy: a job gets exactly one automatic attempt. Whatever it
raises is logged and written to the job record; nothing is retried and
no failure escapes into the scheduler or into other jobs.
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from job_queue.job_store import BaseJobStore
from job_queue.periodic import PeriodicTask
from models.schemas import JobStatus, JobType, ScheduledJob, utcnow

logger = structlog.get_logger()

JobHandler = Callable[[dict[str, Any]], Awaitable[Any]]


# ──────────────────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────────────────

class JobExecutionError(Exception):
    """Base for failures that are fatal for a single job."""
    pass


class UnknownJobTypeError(JobExecutionError):
    pass


class PayloadError(JobExecutionError):
    """Job payload could not be decoded."""
    pass


class MissingPayloadKeyError(PayloadError):
    def __init__(self, job_type: JobType, missing: list[str]):
        self.job_type = job_type
        self.missing = missing
        super().__init__(f"Payload for {job_type.value} is missing keys: {', '.join(missing)}")


# ──────────────────────────────────────────────────────────────
#  Handler registry
# ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class HandlerSpec:
    job_type: JobType
    handler: JobHandler
    required_keys: tuple[str, ...] = ()

    def validate(self, payload: dict[str, Any]) -> None:
        missing = [k for k in self.required_keys if k not in payload]
        if missing:
            raise MissingPayloadKeyError(self.job_type, missing)


class JobHandlerRegistry:
    """job type → executor table. New job types register here; nothing else changes."""

    def __init__(self):
        self._specs: dict[JobType, HandlerSpec] = {}

    def register(self, job_type: JobType, handler: JobHandler,
                 required_keys: tuple[str, ...] = ()) -> None:
        if job_type in self._specs:
            logger.warning("job_handler_replaced", job_type=job_type.value)
        self._specs[job_type] = HandlerSpec(job_type, handler, tuple(required_keys))

    def get(self, job_type: JobType) -> HandlerSpec:
        try:
            return self._specs[job_type]
        except KeyError:
            raise UnknownJobTypeError(f"No handler registered for {job_type}") from None

    def __contains__(self, job_type: JobType) -> bool:
        return job_type in self._specs

    @property
    def job_types(self) -> list[JobType]:
        return list(self._specs)


def decode_payload(job: ScheduledJob) -> dict[str, Any]:
    try:
        payload = json.loads(job.job_data or "{}")
    except (TypeError, ValueError) as e:
        raise PayloadError(f"Malformed payload for job {job.id}: {e}") from e
    if not isinstance(payload, dict):
        raise PayloadError(f"Payload for job {job.id} is not an object")
    return payload


# ──────────────────────────────────────────────────────────────
#  Scheduler
# ──────────────────────────────────────────────────────────────

class Scheduler:
    """
    Timer pool + job store.

    Usage:
        scheduler = Scheduler(job_store, registry, pool_size=10)
        await scheduler.start()                      # recover + background loops
        await scheduler.schedule_delayed(JobType.FLAG_RECONCILE, {"user_id": uid}, 20)
        await scheduler.stop()
    """

    STUCK_REASON = "Timeout - job stuck"

    def __init__(
        self,
        job_store: BaseJobStore,
        registry: JobHandlerRegistry,
        pool_size: int = 10,
        sweep_interval_seconds: float = 10,
        stuck_timeout_minutes: int = 60,
        reaper_interval_seconds: float = 1800,
        retention_days: int = 7,
        retention_interval_seconds: float = 86400,
    ):
        self.job_store = job_store
        self.registry = registry
        self.pool_size = pool_size
        self.stuck_timeout = timedelta(minutes=stuck_timeout_minutes)
        self.retention = timedelta(days=retention_days)
        self._semaphore = asyncio.Semaphore(pool_size)
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._inflight: set[asyncio.Task] = set()
        self._running = False
        self._stopping = False
        self._loops = [
            PeriodicTask("job_sweep", self.sweep, sweep_interval_seconds),
            PeriodicTask("job_reaper", self.reap_stuck, reaper_interval_seconds),
            PeriodicTask("job_retention", self.cleanup_old_jobs, retention_interval_seconds),
        ]

    @property
    def is_running(self) -> bool:
        return self._running

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> int:
        """Connect the store, re-arm persisted work and start background loops."""
        await self.job_store.connect()
        self._running = True
        self._stopping = False
        recovered = await self.recover()
        for loop in self._loops:
            await loop.start_background()
        logger.info("scheduler_started", pool_size=self.pool_size, recovered=recovered)
        return recovered

    async def stop(self, grace_seconds: float = 10):
        """Cancel timers and loops; let in-flight jobs finish within the grace period."""
        self._running = False
        self._stopping = True
        for loop in self._loops:
            await loop.stop()
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        if self._inflight:
            await asyncio.wait(set(self._inflight), timeout=grace_seconds)
        await self.job_store.close()
        logger.info("scheduler_stopped")

    # ── Scheduling primitives ─────────────────────────────

    async def schedule_delayed(
        self, job_type: JobType, payload: dict[str, Any],
        delay_seconds: float, job_name: str = "",
    ) -> str:
        """Persist a job due in ``delay_seconds`` and arm a local timer for it."""
        delay = max(0.0, float(delay_seconds))
        job = ScheduledJob(
            job_name=job_name or f"{job_type.value}-{uuid.uuid4().hex[:8]}",
            job_type=job_type,
            job_data=json.dumps(payload, default=str),
            execute_at=utcnow() + timedelta(seconds=delay),
        )
        await self.job_store.create(job)
        self._arm(job.id, delay)
        logger.info("job_scheduled",
                    job_id=job.id,
                    job_name=job.job_name,
                    job_type=job_type.value,
                    delay_seconds=delay)
        return job.id

    def schedule_in_memory(
        self, job_type: JobType, payload: dict[str, Any], delay_seconds: float,
    ) -> str:
        """Arm a timer without persistence. Lost if the process restarts."""
        spec = self.registry.get(job_type)
        spec.validate(payload)
        token = f"mem_{uuid.uuid4().hex[:12]}"
        if self._stopping:
            logger.warning("in_memory_job_dropped_scheduler_stopping", token=token, job_type=job_type.value)
            return token
        loop = asyncio.get_running_loop()
        self._timers[token] = loop.call_later(
            max(0.0, float(delay_seconds)), self._spawn, self._run_in_memory, token, spec, dict(payload),
        )
        logger.debug("job_scheduled_in_memory", token=token, job_type=job_type.value)
        return token

    def _arm(self, job_id: str, delay_seconds: float) -> bool:
        if job_id in self._timers:
            return False
        if self._stopping:
            # Stays PENDING in the store; recover() arms it on the next start
            logger.debug("job_not_armed_scheduler_stopping", job_id=job_id)
            return False
        loop = asyncio.get_running_loop()
        self._timers[job_id] = loop.call_later(
            max(0.0, delay_seconds), self._spawn, self.execute, job_id,
        )
        return True

    def _spawn(self, func, *args):
        task = asyncio.get_running_loop().create_task(func(*args))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    # ── Execution ─────────────────────────────────────────

    async def execute(self, job_id: str) -> Optional[JobStatus]:
        """
        Claim and run one persisted job. Returns the terminal status it
        reached, or None when the job was not claimable (already taken).
        """
        try:
            async with self._semaphore:
                try:
                    job = await self.job_store.claim(job_id)
                except Exception as e:
                    logger.error("job_claim_error", job_id=job_id, error=str(e), exc_info=True)
                    return None
                if job is None:
                    logger.debug("job_not_claimed", job_id=job_id)
                    return None
                return await self._run_claimed(job)
        finally:
            self._timers.pop(job_id, None)

    async def _run_claimed(self, job: ScheduledJob) -> JobStatus:
        log = logger.bind(job_id=job.id, job_name=job.job_name, job_type=job.job_type.value)
        log.info("job_started")
        try:
            spec = self.registry.get(job.job_type)
            payload = decode_payload(job)
            spec.validate(payload)
            await spec.handler(payload)
        except Exception as e:
            log.error("job_failed", error=str(e), exc_info=True)
            await self._record_failure(job.id, str(e) or type(e).__name__)
            return JobStatus.FAILED

        try:
            await self.job_store.mark_completed(job.id)
        except Exception as e:
            # Left RUNNING; the reaper will fail it after the timeout
            log.error("job_completion_not_recorded", error=str(e), exc_info=True)
        log.info("job_completed")
        return JobStatus.COMPLETED

    async def _record_failure(self, job_id: str, error: str):
        try:
            await self.job_store.mark_failed(job_id, error[:2000])
        except Exception as e:
            logger.error("job_failure_not_recorded", job_id=job_id, error=str(e), exc_info=True)

    async def _run_in_memory(self, token: str, spec: HandlerSpec, payload: dict[str, Any]):
        try:
            async with self._semaphore:
                await spec.handler(payload)
                logger.debug("in_memory_job_completed", token=token, job_type=spec.job_type.value)
        except Exception as e:
            logger.error("in_memory_job_failed",
                         token=token, job_type=spec.job_type.value,
                         error=str(e), exc_info=True)
        finally:
            self._timers.pop(token, None)

    # ── Recovery and maintenance ──────────────────────────

    async def recover(self) -> int:
        """Re-arm every PENDING job; overdue ones fire immediately."""
        pending = await self.job_store.list_pending()
        now = utcnow()
        armed = 0
        for job in pending:
            delay = (job.execute_at - now).total_seconds()
            if self._arm(job.id, max(0.0, delay)):
                armed += 1
        logger.info("jobs_recovered", pending=len(pending), armed=armed)
        return armed

    async def sweep(self) -> int:
        """Re-arm due PENDING jobs that have no local timer."""
        due = await self.job_store.list_pending(due_before=utcnow())
        armed = sum(1 for job in due if self._arm(job.id, 0))
        if armed:
            logger.info("jobs_swept", due=len(due), armed=armed)
        return armed

    async def reap_stuck(self) -> int:
        cutoff = utcnow() - self.stuck_timeout
        failed = await self.job_store.fail_stuck(cutoff, self.STUCK_REASON)
        if failed:
            logger.warning("stuck_jobs_failed", count=failed)
        return failed

    async def cleanup_old_jobs(self) -> int:
        cutoff = utcnow() - self.retention
        deleted = await self.job_store.delete_finished(cutoff)
        if deleted:
            logger.info("old_jobs_deleted", count=deleted)
        return deleted

    # ── Introspection ─────────────────────────────────────

    @property
    def pending_timer_count(self) -> int:
        return len(self._timers)

    async def stats(self) -> dict[str, Any]:
        by_status = await self.job_store.count_by_status()
        return {
            "running": self._running,
            "active_timers": len(self._timers),
            "in_flight": len(self._inflight),
            "persisted_pending": by_status.get(JobStatus.PENDING.value, 0),
            "by_status": by_status,
        }

    async def wait_idle(self, timeout: float = 5.0, horizon_seconds: Optional[float] = None) -> bool:
        """
        Wait until no job is running and no timer is armed. With
        ``horizon_seconds``, timers due further out than that are ignored.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        def busy() -> bool:
            if self._inflight:
                return True
            if horizon_seconds is None:
                return bool(self._timers)
            cutoff = loop.time() + horizon_seconds
            return any(h.when() <= cutoff for h in self._timers.values())

        while busy():
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(0.01)
        return True
