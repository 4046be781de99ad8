"""
Job Queue: durable delayed jobs for the message pipeline.

- job_store: PENDING → RUNNING → COMPLETED | FAILED records with an atomic
  claim (memory, file, SQL and Redis backends)
- scheduler: timer pool, handler registry, recovery/sweep/reaper/retention
- periodic: fixed-interval background loops
"""
from job_queue.job_store import (
    BaseJobStore, InMemoryJobStore, FileJobStore, SqlJobStore, RedisJobStore,
    create_job_store, get_job_store, reset_job_store,
)
from job_queue.periodic import PeriodicTask
from job_queue.scheduler import (
    Scheduler, JobHandlerRegistry, HandlerSpec,
    JobExecutionError, UnknownJobTypeError, PayloadError, MissingPayloadKeyError,
)

__all__ = [
    "BaseJobStore", "InMemoryJobStore", "FileJobStore", "SqlJobStore", "RedisJobStore",
    "create_job_store", "get_job_store", "reset_job_store",
    "PeriodicTask",
    "Scheduler", "JobHandlerRegistry", "HandlerSpec",
    "JobExecutionError", "UnknownJobTypeError", "PayloadError", "MissingPayloadKeyError",
]
