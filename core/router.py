"""
Message Router: sticky-agent routing for shared WhatsApp-Business inboxes.

Only customer messages addressed to a WHATSAPP_BUSINESS user are routed:

  1. Sender has a sticky agent (manager) other than the inbox → reroute there.
  2. Sticky agent is the inbox itself → leave as is.
  3. No sticky agent → pick a random active AGENT of the tenant, mark the
     message ``whatsapp_routed``, remember the inbox as the original
     recipient and pin the agent as the sender's new sticky agent.
"""
from __future__ import annotations

import random
import structlog
from typing import Optional

from database.store_base import BaseChatStore
from models.schemas import Message, User, UserRole

logger = structlog.get_logger()


class MessageRouter:

    def __init__(self, store: BaseChatStore, rng: Optional[random.Random] = None):
        self.store = store
        self.rng = rng or random.Random()

    @staticmethod
    def applies_to(sender: User, recipient: User) -> bool:
        return recipient.role == UserRole.WHATSAPP_BUSINESS and sender.role == UserRole.STANDARD

    async def route_incoming(self, message: Message, sender: User, recipient: User) -> Message:
        """Mutates ``message`` (and the sender's sticky agent) in place; returns it."""
        if not self.applies_to(sender, recipient):
            return message

        if sender.manager_id:
            if sender.manager_id != recipient.id:
                message.recipient_id = sender.manager_id
                logger.info("message_routed_sticky",
                            message_id=message.id, sender_id=sender.id, agent_id=sender.manager_id)
            return message

        agents = await self.eligible_agents(recipient.tenant_id)
        if not agents:
            logger.warning("no_agents_for_routing",
                           tenant_id=recipient.tenant_id, inbox_id=recipient.id, sender_id=sender.id)
            return message

        agent = self.rng.choice(agents)
        message.whatsapp_routed = True
        message.original_recipient_id = recipient.id
        message.recipient_id = agent.id
        await self.store.update_user(sender.id, manager_id=agent.id)
        sender.manager_id = agent.id
        logger.info("message_routed_random",
                    message_id=message.id, sender_id=sender.id,
                    agent_id=agent.id, candidates=len(agents))
        return message

    async def eligible_agents(self, tenant_id: str) -> list[User]:
        agents = await self.store.list_users(tenant_id=tenant_id, role=UserRole.AGENT)
        return [a for a in agents if a.active]
