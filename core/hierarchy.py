"""
Manager hierarchy as an id → manager-id adjacency map.

Users reference their manager by id only. Walks are iterative with a
visited set, so an accidental cycle (A → B → A) ends the walk instead
of looping forever.
"""
from __future__ import annotations

import structlog
from typing import Mapping, Optional

from database.store_base import BaseChatStore
from models.schemas import UserRole

logger = structlog.get_logger()


class ManagerHierarchy:

    def __init__(self, parents: Mapping[str, Optional[str]], roles: Mapping[str, UserRole] = None):
        self._parents = dict(parents)
        self._roles = dict(roles or {})

    @classmethod
    async def load(cls, store: BaseChatStore, tenant_id: Optional[str] = None) -> ManagerHierarchy:
        users = await store.list_users(tenant_id=tenant_id)
        return cls(
            {u.id: u.manager_id for u in users},
            {u.id: u.role for u in users},
        )

    def parent(self, user_id: str) -> Optional[str]:
        return self._parents.get(user_id)

    def chain(self, user_id: str) -> list[str]:
        """Managers above ``user_id``, nearest first."""
        chain: list[str] = []
        visited = {user_id}
        current = self._parents.get(user_id)
        while current is not None:
            if current in visited:
                logger.warning("manager_cycle_detected", user_id=user_id, at=current)
                break
            visited.add(current)
            chain.append(current)
            current = self._parents.get(current)
        return chain

    def nearest_supervisor(self, user_id: str) -> Optional[str]:
        """First manager up the chain holding a supervisor role."""
        for manager_id in self.chain(user_id):
            role = self._roles.get(manager_id)
            if role is not None and role.is_supervisor:
                return manager_id
        return None

    def subordinates(self, manager_id: str) -> list[str]:
        """Direct reports of ``manager_id``."""
        return [uid for uid, parent in self._parents.items() if parent == manager_id]
