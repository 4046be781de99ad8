"""
FastAPI Application: webhooks and a thin REST surface over the pipeline.

Provides:
- Incoming message webhook (sender phone + shared inbox or roster name)
- Outgoing agent replies
- Delivery status callbacks
- Ticket close
- Scheduler stats and health

Authentication is handled by the gateway in front of this service.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from channels.notifications import create_notifier
from channels.outbound import create_delivery
from config.settings import get_settings
from core.errors import BusinessRuleError, EntityNotFoundError
from core.services import build_maintenance_tasks, build_services
from database.session import close_db, init_db
from database.store_factory import create_configured_store
from job_queue.job_store import create_job_store
from models.schemas import utcnow

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()
store = create_configured_store(_settings_boot)
job_store = create_job_store({
    "backend": _settings_boot.scheduler.job_store_backend,
    "redis_url": _settings_boot.scheduler.redis_url,
    "data_dir": _settings_boot.scheduler.job_store_file_dir,
})
services = build_services(
    _settings_boot, store, job_store,
    notifier=create_notifier(_settings_boot.notifications),
    delivery=create_delivery(_settings_boot.delivery),
)
maintenance_tasks = build_maintenance_tasks(services, _settings_boot)


def _uses_sql(settings) -> bool:
    return settings.database.store_backend == "sql" or settings.scheduler.job_store_backend == "sql"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if _uses_sql(settings):
        await init_db()

    await services.scheduler.start()
    for task in maintenance_tasks:
        await task.start_background()

    logger.info("chatflow_started",
                store=type(store).__name__,
                job_store=type(job_store).__name__)
    yield

    for task in maintenance_tasks:
        await task.stop()
    await services.scheduler.stop()
    await services.messages.flush_deliveries()
    await services.delivery.close()
    await services.notifier.close()
    if _uses_sql(settings):
        await close_db()
    logger.info("chatflow_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="ChatFlow API",
    description="Delayed-consistency chat pipeline: tickets, response tracking, alerts",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(EntityNotFoundError)
async def not_found_handler(request: Request, exc: EntityNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(BusinessRuleError)
async def business_rule_handler(request: Request, exc: BusinessRuleError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class IncomingMessageRequest(BaseModel):
    tenant_id: str
    sender_phone: str
    content: str
    recipient_id: Optional[str] = None
    recipient_name: Optional[str] = None     # agent roster name
    sent_at: Optional[datetime] = None
    is_prospect: bool = False


class OutgoingMessageRequest(BaseModel):
    sender_id: str
    recipient_id: str
    content: str
    sent_at: Optional[datetime] = None
    is_prospect: bool = False


class DeliveryStatusRequest(BaseModel):
    message_id: str
    status: str


class CloseTicketRequest(BaseModel):
    close_type: Optional[str] = None


# ══════════════════════════════════════════════════════════════
#  HEALTH
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "scheduler_running": services.scheduler.is_running,
        "job_types": [t.value for t in services.registry.job_types],
    }


@app.get("/jobs/stats")
async def job_stats() -> dict[str, Any]:
    return await services.scheduler.stats()


# ══════════════════════════════════════════════════════════════
#  MESSAGES
# ══════════════════════════════════════════════════════════════

@app.post("/webhooks/messages")
async def receive_incoming_message(req: IncomingMessageRequest):
    recipient_id = req.recipient_id
    if recipient_id is None and req.recipient_name:
        recipient_id = services.tenants.resolve_agent(req.tenant_id, req.recipient_name)
    if recipient_id is None:
        raise HTTPException(422, "recipient_id or a known recipient_name is required")

    message = await services.messages.create_incoming_message(
        req.sender_phone, recipient_id, req.content, req.tenant_id,
        sent_at=req.sent_at, is_prospect=req.is_prospect,
    )
    return message.model_dump(mode="json")


@app.post("/messages")
async def send_outgoing_message(req: OutgoingMessageRequest):
    message = await services.messages.create_outgoing_message(
        req.sender_id, req.recipient_id, req.content,
        sent_at=req.sent_at, is_prospect=req.is_prospect,
    )
    return message.model_dump(mode="json")


@app.post("/webhooks/status")
async def delivery_status(req: DeliveryStatusRequest):
    message = await services.messages.update_delivery_status(req.message_id, req.status)
    if message is None:
        return {"status": "ignored"}
    return {"status": "updated", "message_status": message.status.value}


# ══════════════════════════════════════════════════════════════
#  TICKETS
# ══════════════════════════════════════════════════════════════

@app.post("/tickets/{ticket_id}/close")
async def close_ticket(ticket_id: str, req: Optional[CloseTicketRequest] = None):
    ticket = await services.lifecycle.close_ticket(ticket_id, req.close_type if req else None)
    return ticket.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
