"""
Persistence for users, messages, tickets, KPIs and alerts.

``BaseChatStore`` is the contract the pipeline codes against;
``create_configured_store()`` picks the SQL, file or memory backend
named in ``database.store_backend``. The SQL engine and the
``scheduled_jobs`` table are shared with the SQL job store.

    from database import create_configured_store
    store = create_configured_store()
    user = await store.get_user("u1")
"""
from database.models import (
    Base, UserRow, TicketRow, MessageRow, KpiRow, AlertRow, ScheduledJobRow,
)
from database.session import configure_engine, get_engine, get_session, init_db, close_db
from database.store_base import BaseChatStore
from database.store import SqlChatStore
from database.store_memory import InMemoryChatStore
from database.store_file import FileChatStore
from database.store_factory import create_store, get_store, reset_store, create_configured_store

__all__ = [
    # rows
    "Base", "UserRow", "TicketRow", "MessageRow", "KpiRow", "AlertRow", "ScheduledJobRow",
    # engine
    "configure_engine", "get_engine", "get_session", "init_db", "close_db",
    # contract
    "BaseChatStore",
    # backends
    "SqlChatStore", "InMemoryChatStore", "FileChatStore",
    # selection
    "create_store", "get_store", "reset_store", "create_configured_store",
]
