"""
JSON-file persistence on top of the in-memory chat store.

Each collection lives in ``{data_dir}/{collection}.json`` as an
``{id: record}`` object. Reads are served from memory; writes update
memory and then rewrite the touched file through a ``.tmp`` sibling
and an atomic replace. With ``flush_interval_s > 0`` rewrites are
coalesced and happen at most once per interval.

One process per data directory.
"""
from __future__ import annotations

import asyncio
import functools
import json
import structlog
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from database.store_memory import InMemoryChatStore, _kpi_key
from models.schemas import Alert, Kpi, Message, Ticket, User

logger = structlog.get_logger()

# collection -> (attribute on InMemoryChatStore, record model)
_LAYOUT: dict[str, tuple[str, type[BaseModel]]] = {
    "users": ("_users", User),
    "messages": ("_messages", Message),
    "tickets": ("_tickets", Ticket),
    "kpis": ("_kpis", Kpi),
    "alerts": ("_alerts", Alert),
}


def _persists(collection: str):
    """Write ``collection`` to disk after the wrapped mutation returns."""
    def decorator(method):
        @functools.wraps(method)
        async def wrapper(self: "FileChatStore", *args, **kwargs):
            result = await method(self, *args, **kwargs)
            self._changed(collection)
            return result
        return wrapper
    return decorator


class FileChatStore(InMemoryChatStore):

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._root = Path(data_dir)
        self._root.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._pending: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        loaded = {name: self._restore(name) for name in _LAYOUT}
        self._reindex()
        logger.info("file_store_opened", data_dir=str(self._root), records=loaded)

    def _path(self, collection: str) -> Path:
        return self._root / f"{collection}.json"

    def _restore(self, collection: str) -> int:
        """Load one collection into memory; an unreadable file leaves it empty."""
        path = self._path(collection)
        if not path.exists():
            return 0
        attr, model = _LAYOUT[collection]
        try:
            raw = json.loads(path.read_text())
            records = {rid: model.model_validate(doc) for rid, doc in raw.items()}
        except (json.JSONDecodeError, ValidationError, AttributeError) as e:
            logger.warning("file_store_collection_unreadable",
                           collection=collection, path=str(path), error=str(e))
            return 0
        setattr(self, attr, records)
        for rid in records:
            self._track(rid)
        return len(records)

    def _reindex(self) -> None:
        self._phone_index.clear()
        for uid, user in self._users.items():
            if user.phone:
                self._phone_index[f"{user.tenant_id}:{user.phone}"] = uid
        self._kpi_message_index.clear()
        for kpi in sorted(self._kpis.values(), key=lambda k: self._seq[k.id]):
            if kpi.message_id:
                self._kpi_message_index.setdefault(_kpi_key(kpi.kpi_type, kpi.message_id), kpi.id)

    def _write(self, collection: str) -> None:
        attr, _ = _LAYOUT[collection]
        doc = {rid: record.model_dump(mode="json") for rid, record in getattr(self, attr).items()}
        target = self._path(collection)
        staging = target.with_suffix(".tmp")
        staging.write_text(json.dumps(doc, indent=2))
        staging.replace(target)

    def _changed(self, collection: str) -> None:
        if self._flush_interval <= 0:
            self._write(collection)
            return
        self._pending.add(collection)
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._flush_later())

    async def _flush_later(self) -> None:
        await asyncio.sleep(self._flush_interval)
        self._write_pending()

    def _write_pending(self) -> None:
        pending, self._pending = self._pending, set()
        for collection in sorted(pending):
            self._write(collection)

    async def flush(self) -> None:
        """Write any coalesced changes now."""
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        self._flush_task = None
        self._write_pending()

    # ── Mutations ─────────────────────────────────────────

    @_persists("users")
    async def save_user(self, user: User) -> User:
        return await super().save_user(user)

    @_persists("users")
    async def update_user(self, user_id: str, **fields: Any) -> None:
        await super().update_user(user_id, **fields)

    @_persists("messages")
    async def save_message(self, message: Message) -> Message:
        return await super().save_message(message)

    @_persists("messages")
    async def update_message(self, message_id: str, **fields: Any) -> None:
        await super().update_message(message_id, **fields)

    @_persists("tickets")
    async def save_ticket(self, ticket: Ticket) -> Ticket:
        return await super().save_ticket(ticket)

    @_persists("tickets")
    async def update_ticket(self, ticket_id: str, **fields: Any) -> None:
        await super().update_ticket(ticket_id, **fields)

    @_persists("kpis")
    async def save_kpi(self, kpi: Kpi) -> Kpi:
        return await super().save_kpi(kpi)

    @_persists("alerts")
    async def save_alert(self, alert: Alert) -> Alert:
        return await super().save_alert(alert)
