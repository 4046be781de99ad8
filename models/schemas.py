"""
Core data models for the ChatFlow pipeline.
These are the universal types shared across the store, scheduler and services.

All timestamps are naive UTC. SQLite drops tzinfo on read, so every value
crossing a module boundary is normalized with ``to_naive_utc``.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class MessageStatus(str, Enum):
    UNREAD = "unread"
    READ = "read"
    SENT = "sent"
    ERROR = "error"


class TicketStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class UserRole(str, Enum):
    STANDARD = "standard"
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MANAGER_LEVEL_1 = "manager_level_1"
    MANAGER_LEVEL_2 = "manager_level_2"
    MANAGER_LEVEL_3 = "manager_level_3"
    MANAGER_LEVEL_4 = "manager_level_4"
    AGENT = "agent"
    STAFF = "staff"
    WHATSAPP_BUSINESS = "whatsapp_business"

    @property
    def is_internal(self) -> bool:
        return self not in (UserRole.STANDARD, UserRole.WHATSAPP_BUSINESS)

    @property
    def is_supervisor(self) -> bool:
        return self in SUPERVISOR_ROLES


SUPERVISOR_ROLES = frozenset({
    UserRole.SUPER_ADMIN, UserRole.ADMIN,
    UserRole.MANAGER_LEVEL_1, UserRole.MANAGER_LEVEL_2,
    UserRole.MANAGER_LEVEL_3, UserRole.MANAGER_LEVEL_4,
})


class KpiType(str, Enum):
    NEW_CLIENT = "new_client"
    NEW_TICKET = "new_ticket"
    OPEN_CASE = "open_case"
    FIRST_RESPONSE_TIME = "first_response_time"
    RESPONDED_TO_CLIENT = "responded_to_client"
    CLOSED_TICKET = "closed_ticket"
    SENT_MESSAGE = "sent_message"
    REQUIRE_RESPONSE = "require_response"
    AUTO_CLOSED_TICKET = "auto_closed_ticket"
    CLOSED_CON_ACUERDO = "closed_con_acuerdo"
    CLOSED_SIN_ACUERDO = "closed_sin_acuerdo"
    TMO = "tmo"
    UNIQUE_RESPONDED_TO_CLIENT = "unique_responded_to_client"


class AlertType(str, Enum):
    CONVERSATION_RESPONSE_OVERDUE = "conversation_response_overdue"
    REQUIRE_RESPONSE = "require_response"
    ESCALATION = "escalation"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    PRIORITY = "priority"
    SUCCESS = "success"
    HIGH = "high"


class JobType(str, Enum):
    TICKET_ASSIGNMENT = "ticket_assignment"
    RESPONSE_KPI = "response_kpi"
    RESPONSE_ALERT = "response_alert"
    FLAG_RECONCILE = "flag_reconcile"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ──────────────────────────────────────────────────────────────
#  Users: customers, agents and shared inboxes
# ──────────────────────────────────────────────────────────────

class User(BaseModel):
    """A participant. ``manager_id`` doubles as the sticky agent for customers."""
    id: str = Field(default_factory=new_id)
    tenant_id: str = ""
    name: str = ""
    phone: str = ""                           # digits only
    role: UserRole = UserRole.STANDARD
    manager_id: Optional[str] = None
    active: bool = True
    require_response: bool = False
    last_message_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str = ""
    sender_id: Optional[str] = None
    recipient_id: Optional[str] = None
    direction: MessageDirection
    content: str = ""
    status: MessageStatus = MessageStatus.UNREAD
    sent_at: Optional[datetime] = None        # may be backdated for ordering
    ticket_id: Optional[str] = None
    is_prospect: bool = False                 # opts out of ticket/KPI processing
    processed: bool = False
    whatsapp_routed: bool = False             # rerouted by random-agent fallback
    whatsapp_business_routed: bool = False
    original_recipient_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_incoming(self) -> bool:
        return self.direction == MessageDirection.INCOMING

    @property
    def is_outgoing(self) -> bool:
        return self.direction == MessageDirection.OUTGOING


# ──────────────────────────────────────────────────────────────
#  Tickets
# ──────────────────────────────────────────────────────────────

class Ticket(BaseModel):
    """A conversation session between one customer (user) and one agent."""
    id: str = Field(default_factory=new_id)
    tenant_id: str = ""
    user_id: str
    agent_id: str
    status: TicketStatus = TicketStatus.OPEN
    subject: str = ""
    notes: str = ""
    close_type: Optional[str] = None
    closed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  KPI events and alerts
# ──────────────────────────────────────────────────────────────

class Kpi(BaseModel):
    """Append-only metric fact."""
    id: str = Field(default_factory=new_id)
    tenant_id: str = ""
    user_id: Optional[str] = None
    kpi_type: KpiType
    value: int = 1
    ticket_id: Optional[str] = None
    message_id: Optional[str] = None     # triggering message
    data: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Alert(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str = ""
    user_id: str
    alert_type: AlertType
    severity: AlertSeverity = AlertSeverity.WARNING
    title: str = ""
    body: str = ""
    read: bool = False
    url: Optional[str] = None
    ticket_id: Optional[str] = None
    message_id: Optional[str] = None
    sender_id: Optional[str] = None
    recipient_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Scheduled jobs
# ──────────────────────────────────────────────────────────────

class ScheduledJob(BaseModel):
    """Durable unit of deferred work. ``job_data`` holds the JSON-encoded payload."""
    id: str = Field(default_factory=new_id)
    job_name: str = ""
    job_type: JobType
    job_data: str = "{}"
    execute_at: datetime
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)
