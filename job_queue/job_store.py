"""
Job Store: durable record of scheduled work, with four backends.

Lifecycle of a record:
  PENDING ──claim()──▶ RUNNING ──▶ COMPLETED | FAILED

``claim()`` is the single-writer-wins transition: when several timers
(recovery, sweep, another process) race for the same due job, exactly
one caller gets the record back and everyone else gets ``None``.
Terminal records are never reopened.

Backends:
  - InMemoryJobStore  dict-backed, single process (dev/test)
  - FileJobStore      JSON file, survives restarts, single process
  - SqlJobStore       scheduled_jobs table, conditional UPDATE for claim
  - RedisJobStore     sorted sets per status, ZREM-guarded Lua move for claim

Record layout (SQL):
  scheduled_jobs(id, job_name, job_type, job_data, execute_at, status,
                 created_at, started_at, executed_at, error_message)
  indexed on (status, execute_at) for the sweep query.
"""
from __future__ import annotations

import json
import structlog
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from models.schemas import JobStatus, ScheduledJob, utcnow

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class BaseJobStore(ABC):
    """Abstract job store interface."""

    async def connect(self):
        """Establish connection to the backend (no-op for local stores)."""

    async def close(self):
        """Gracefully shut down."""

    @abstractmethod
    async def create(self, job: ScheduledJob) -> ScheduledJob:
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[ScheduledJob]:
        ...

    @abstractmethod
    async def claim(self, job_id: str) -> Optional[ScheduledJob]:
        """Atomically move PENDING → RUNNING; None when another caller won."""
        ...

    @abstractmethod
    async def mark_completed(self, job_id: str) -> bool:
        ...

    @abstractmethod
    async def mark_failed(self, job_id: str, error: str) -> bool:
        ...

    @abstractmethod
    async def list_pending(
        self, due_before: Optional[datetime] = None, limit: Optional[int] = None,
    ) -> list[ScheduledJob]:
        """PENDING jobs ordered by execute_at, optionally only those due by ``due_before``."""
        ...

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]:
        ...

    @abstractmethod
    async def fail_stuck(self, started_before: datetime, reason: str) -> int:
        """Mark RUNNING jobs that started before the cutoff as FAILED."""
        ...

    @abstractmethod
    async def delete_finished(self, created_before: datetime) -> int:
        """Delete COMPLETED/FAILED jobs created before the cutoff."""
        ...


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation
# ──────────────────────────────────────────────────────────────

class InMemoryJobStore(BaseJobStore):
    """
    Dict-backed job store. Check-and-set in ``claim`` has no await in
    between, so it is atomic on a single event loop.
    """

    def __init__(self):
        self._jobs: dict[str, ScheduledJob] = {}

    def _changed(self):
        """Hook for persistence subclasses."""

    async def create(self, job: ScheduledJob) -> ScheduledJob:
        self._jobs[job.id] = job.model_copy()
        self._changed()
        return job

    async def get(self, job_id: str) -> Optional[ScheduledJob]:
        job = self._jobs.get(job_id)
        return job.model_copy() if job else None

    async def claim(self, job_id: str) -> Optional[ScheduledJob]:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return None
        claimed = job.model_copy(update={"status": JobStatus.RUNNING, "started_at": utcnow()})
        self._jobs[job_id] = claimed
        self._changed()
        return claimed.model_copy()

    def _finish(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.RUNNING:
            return False
        self._jobs[job_id] = job.model_copy(update={
            "status": status, "executed_at": utcnow(), "error_message": error,
        })
        self._changed()
        return True

    async def mark_completed(self, job_id: str) -> bool:
        return self._finish(job_id, JobStatus.COMPLETED)

    async def mark_failed(self, job_id: str, error: str) -> bool:
        return self._finish(job_id, JobStatus.FAILED, error)

    async def list_pending(
        self, due_before: Optional[datetime] = None, limit: Optional[int] = None,
    ) -> list[ScheduledJob]:
        pending = [
            j for j in self._jobs.values()
            if j.status == JobStatus.PENDING
            and (due_before is None or j.execute_at <= due_before)
        ]
        pending.sort(key=lambda j: j.execute_at)
        if limit is not None:
            pending = pending[:limit]
        return [j.model_copy() for j in pending]

    async def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return counts

    async def fail_stuck(self, started_before: datetime, reason: str) -> int:
        stuck = [
            j.id for j in self._jobs.values()
            if j.status == JobStatus.RUNNING
            and j.started_at is not None and j.started_at < started_before
        ]
        for job_id in stuck:
            self._finish(job_id, JobStatus.FAILED, reason)
        return len(stuck)

    async def delete_finished(self, created_before: datetime) -> int:
        old = [
            j.id for j in self._jobs.values()
            if j.is_terminal and j.created_at < created_before
        ]
        for job_id in old:
            del self._jobs[job_id]
        if old:
            self._changed()
        return len(old)


# ──────────────────────────────────────────────────────────────
#  JSON File Implementation
# ──────────────────────────────────────────────────────────────

class FileJobStore(InMemoryJobStore):
    """InMemoryJobStore that rewrites {data_dir}/scheduled_jobs.json after every change."""

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._path = Path(data_dir) / "scheduled_jobs.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._load()
        logger.info("file_job_store_initialized", path=str(self._path), jobs=len(self._jobs))

    def _load(self):
        if not self._path.exists():
            return
        try:
            with open(self._path) as f:
                raw = json.load(f)
            self._jobs = {jid: ScheduledJob.model_validate(data) for jid, data in raw.items()}
        except (json.JSONDecodeError, ValidationError, AttributeError) as e:
            logger.warning("file_job_store_load_error", path=str(self._path), error=str(e))

    def _changed(self):
        data = {jid: job.model_dump(mode="json") for jid, job in self._jobs.items()}
        tmp_path = self._path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(self._path)


# ──────────────────────────────────────────────────────────────
#  SQL Implementation
# ──────────────────────────────────────────────────────────────

class SqlJobStore(BaseJobStore):
    """scheduled_jobs table via the shared SQLAlchemy engine."""

    @staticmethod
    def _to_model(row) -> ScheduledJob:
        return ScheduledJob.model_validate(
            {col.key: getattr(row, col.key) for col in row.__table__.columns}
        )

    async def create(self, job: ScheduledJob) -> ScheduledJob:
        from database.models import ScheduledJobRow
        from database.session import get_session
        values = job.model_dump()
        values["job_type"] = job.job_type.value
        values["status"] = job.status.value
        async with get_session() as db:
            db.add(ScheduledJobRow(**values))
        return job

    async def get(self, job_id: str) -> Optional[ScheduledJob]:
        from database.models import ScheduledJobRow
        from database.session import get_session
        async with get_session() as db:
            row = await db.get(ScheduledJobRow, job_id)
            return self._to_model(row) if row else None

    async def claim(self, job_id: str) -> Optional[ScheduledJob]:
        from sqlalchemy import update
        from database.models import ScheduledJobRow
        from database.session import get_session
        async with get_session() as db:
            result = await db.execute(
                update(ScheduledJobRow)
                .where(ScheduledJobRow.id == job_id,
                       ScheduledJobRow.status == JobStatus.PENDING.value)
                .values(status=JobStatus.RUNNING.value, started_at=utcnow())
            )
            if result.rowcount != 1:
                return None
            row = await db.get(ScheduledJobRow, job_id)
            return self._to_model(row)

    async def _finish(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> bool:
        from sqlalchemy import update
        from database.models import ScheduledJobRow
        from database.session import get_session
        async with get_session() as db:
            result = await db.execute(
                update(ScheduledJobRow)
                .where(ScheduledJobRow.id == job_id,
                       ScheduledJobRow.status == JobStatus.RUNNING.value)
                .values(status=status.value, executed_at=utcnow(), error_message=error)
            )
            return result.rowcount == 1

    async def mark_completed(self, job_id: str) -> bool:
        return await self._finish(job_id, JobStatus.COMPLETED)

    async def mark_failed(self, job_id: str, error: str) -> bool:
        return await self._finish(job_id, JobStatus.FAILED, error)

    async def list_pending(
        self, due_before: Optional[datetime] = None, limit: Optional[int] = None,
    ) -> list[ScheduledJob]:
        from sqlalchemy import select
        from database.models import ScheduledJobRow
        from database.session import get_session
        stmt = select(ScheduledJobRow).where(ScheduledJobRow.status == JobStatus.PENDING.value)
        if due_before is not None:
            stmt = stmt.where(ScheduledJobRow.execute_at <= due_before)
        stmt = stmt.order_by(ScheduledJobRow.execute_at, ScheduledJobRow.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with get_session() as db:
            rows = (await db.execute(stmt)).scalars().all()
            return [self._to_model(r) for r in rows]

    async def count_by_status(self) -> dict[str, int]:
        from sqlalchemy import select, func
        from database.models import ScheduledJobRow
        from database.session import get_session
        counts = {s.value: 0 for s in JobStatus}
        async with get_session() as db:
            result = await db.execute(
                select(ScheduledJobRow.status, func.count()).group_by(ScheduledJobRow.status)
            )
            for status, count in result.all():
                counts[status] = count
        return counts

    async def fail_stuck(self, started_before: datetime, reason: str) -> int:
        from sqlalchemy import update
        from database.models import ScheduledJobRow
        from database.session import get_session
        async with get_session() as db:
            result = await db.execute(
                update(ScheduledJobRow)
                .where(ScheduledJobRow.status == JobStatus.RUNNING.value,
                       ScheduledJobRow.started_at < started_before)
                .values(status=JobStatus.FAILED.value, executed_at=utcnow(), error_message=reason)
            )
            return result.rowcount

    async def delete_finished(self, created_before: datetime) -> int:
        from sqlalchemy import delete
        from database.models import ScheduledJobRow
        from database.session import get_session
        async with get_session() as db:
            result = await db.execute(
                delete(ScheduledJobRow)
                .where(ScheduledJobRow.status.in_([JobStatus.COMPLETED.value, JobStatus.FAILED.value]),
                       ScheduledJobRow.created_at < created_before)
            )
            return result.rowcount


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

def _score(value: datetime) -> float:
    return value.replace(tzinfo=timezone.utc).timestamp()


# KEYS: source set, target set, job key. ARGV: job id, target score, job JSON.
_MOVE_SCRIPT = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 1 then
  redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
  redis.call('SET', KEYS[3], ARGV[3])
  return 1
end
return 0
"""


class RedisJobStore(BaseJobStore):
    """
    Multi-process job store backed by Redis.

    - Each job is a JSON string at ``{prefix}:job:{id}``
    - One sorted set per status; PENDING is scored by execute_at,
      RUNNING by started_at, COMPLETED/FAILED by created_at
    - Status changes run as one Lua script: ZREM from the source set,
      and only when that removed the id, ZADD to the target set and SET
      the record. The ZREM result picks the single winner of a claim.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", prefix: str = "chatflow:jobs"):
        self._redis_url = redis_url
        self._prefix = prefix
        self._redis = None
        self._move = None

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _set_key(self, status: JobStatus) -> str:
        return f"{self._prefix}:{status.value}"

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        self._move = self._redis.register_script(_MOVE_SCRIPT)
        logger.info("redis_job_store_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.close()

    async def _transition(self, job: ScheduledJob, source: JobStatus, score_at: datetime) -> bool:
        moved = await self._move(
            keys=[self._set_key(source), self._set_key(job.status), self._job_key(job.id)],
            args=[job.id, _score(score_at), job.model_dump_json()],
        )
        return moved == 1

    async def create(self, job: ScheduledJob) -> ScheduledJob:
        pipe = self._redis.pipeline()
        pipe.set(self._job_key(job.id), job.model_dump_json())
        pipe.zadd(self._set_key(JobStatus.PENDING), {job.id: _score(job.execute_at)})
        await pipe.execute()
        return job

    async def get(self, job_id: str) -> Optional[ScheduledJob]:
        raw = await self._redis.get(self._job_key(job_id))
        return ScheduledJob.model_validate_json(raw) if raw else None

    async def claim(self, job_id: str) -> Optional[ScheduledJob]:
        job = await self.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return None
        job = job.model_copy(update={"status": JobStatus.RUNNING, "started_at": utcnow()})
        if not await self._transition(job, JobStatus.PENDING, job.started_at):
            return None
        return job

    async def _finish(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> bool:
        job = await self.get(job_id)
        if job is None or job.status != JobStatus.RUNNING:
            return False
        job = job.model_copy(update={
            "status": status, "executed_at": utcnow(), "error_message": error,
        })
        return await self._transition(job, JobStatus.RUNNING, job.created_at)

    async def mark_completed(self, job_id: str) -> bool:
        return await self._finish(job_id, JobStatus.COMPLETED)

    async def mark_failed(self, job_id: str, error: str) -> bool:
        return await self._finish(job_id, JobStatus.FAILED, error)

    async def _load_many(self, job_ids: list[str]) -> list[ScheduledJob]:
        if not job_ids:
            return []
        raws = await self._redis.mget([self._job_key(j) for j in job_ids])
        return [ScheduledJob.model_validate_json(r) for r in raws if r]

    async def list_pending(
        self, due_before: Optional[datetime] = None, limit: Optional[int] = None,
    ) -> list[ScheduledJob]:
        max_score: Any = _score(due_before) if due_before is not None else "+inf"
        kwargs = {"start": 0, "num": limit} if limit is not None else {}
        job_ids = await self._redis.zrangebyscore(
            self._set_key(JobStatus.PENDING), "-inf", max_score, **kwargs
        )
        return await self._load_many(job_ids)

    async def count_by_status(self) -> dict[str, int]:
        return {s.value: await self._redis.zcard(self._set_key(s)) for s in JobStatus}

    async def fail_stuck(self, started_before: datetime, reason: str) -> int:
        job_ids = await self._redis.zrangebyscore(
            self._set_key(JobStatus.RUNNING), "-inf", _score(started_before)
        )
        failed = 0
        for job_id in job_ids:
            if await self._finish(job_id, JobStatus.FAILED, reason):
                failed += 1
        return failed

    async def delete_finished(self, created_before: datetime) -> int:
        deleted = 0
        for status in (JobStatus.COMPLETED, JobStatus.FAILED):
            key = self._set_key(status)
            job_ids = await self._redis.zrangebyscore(key, "-inf", _score(created_before))
            if not job_ids:
                continue
            pipe = self._redis.pipeline()
            for job_id in job_ids:
                pipe.delete(self._job_key(job_id))
                pipe.zrem(key, job_id)
            await pipe.execute()
            deleted += len(job_ids)
        return deleted


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[BaseJobStore] = None


def create_job_store(config: dict[str, Any] = None) -> BaseJobStore:
    """Factory: create the configured job store backend (memory by default).

    Raises:
        ValueError: ``backend`` names no known job store.
    """
    global _instance
    if _instance:
        return _instance

    config = config or {}
    backend = config.get("backend") or "memory"

    if backend == "redis":
        _instance = RedisJobStore(redis_url=config.get("redis_url", "redis://localhost:6379"))
    elif backend == "sql":
        _instance = SqlJobStore()
    elif backend == "file":
        _instance = FileJobStore(data_dir=config.get("data_dir", "./data"))
    elif backend == "memory":
        _instance = InMemoryJobStore()
    else:
        raise ValueError(f"Unknown job store backend {backend!r}")

    logger.info("job_store_created", backend=backend)
    return _instance


def get_job_store() -> BaseJobStore:
    """Return the singleton job store instance."""
    global _instance
    if _instance is None:
        _instance = create_job_store()
    return _instance


def reset_job_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
