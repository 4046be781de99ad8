"""
Chat store selection.

``database.store_backend`` picks where users, messages, tickets, KPIs and
alerts live:

    sql     tables at ``database.url`` (shared with the SQL job store)
    file    one JSON document per collection under ``store_file_dir``
    memory  process-local dicts; lost on restart

The first store built becomes the process-wide instance returned by
``get_store()``; call ``reset_store()`` between tests.
"""
from __future__ import annotations

import structlog
from typing import Any, Callable, Optional

from database.store_base import BaseChatStore

logger = structlog.get_logger()

_instance: Optional[BaseChatStore] = None


def _build_sql(config: dict[str, Any]) -> BaseChatStore:
    from database.store import SqlChatStore
    return SqlChatStore()


def _build_file(config: dict[str, Any]) -> BaseChatStore:
    from database.store_file import FileChatStore
    return FileChatStore(
        data_dir=config.get("store_file_dir", "./data"),
        flush_interval_s=float(config.get("store_flush_interval_s", 0)),
    )


def _build_memory(config: dict[str, Any]) -> BaseChatStore:
    from database.store_memory import InMemoryChatStore
    return InMemoryChatStore()


_BUILDERS: dict[str, Callable[[dict[str, Any]], BaseChatStore]] = {
    "sql": _build_sql,
    "file": _build_file,
    "memory": _build_memory,
}


def create_store(config: Optional[dict[str, Any]] = None) -> BaseChatStore:
    """Build the configured store once; later calls return the same instance.

    Raises:
        ValueError: ``store_backend`` names no known backend.
    """
    global _instance
    if _instance is not None:
        return _instance

    config = config or {}
    backend = str(config.get("store_backend") or "memory").lower()
    builder = _BUILDERS.get(backend)
    if builder is None:
        raise ValueError(
            f"Unknown store_backend {backend!r}; expected one of {sorted(_BUILDERS)}"
        )
    _instance = builder(config)
    logger.info("chat_store_ready", backend=backend, store=type(_instance).__name__)
    return _instance


def get_store() -> BaseChatStore:
    return _instance if _instance is not None else create_store()


def reset_store() -> None:
    global _instance
    _instance = None


def create_configured_store(settings=None) -> BaseChatStore:
    """Build the store described by ``settings.database`` (loaded settings by default)."""
    if settings is None:
        from config.settings import get_settings
        settings = get_settings()
    db = settings.database
    return create_store({
        "store_backend": db.store_backend,
        "store_file_dir": db.store_file_dir,
    })
