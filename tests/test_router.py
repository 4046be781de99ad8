"""
Tests for sticky-agent routing of shared WhatsApp-Business inboxes.
"""
import random

import pytest

from models.schemas import Message, MessageDirection, UserRole


def _incoming(sender, recipient) -> Message:
    return Message(
        tenant_id=sender.tenant_id, sender_id=sender.id, recipient_id=recipient.id,
        direction=MessageDirection.INCOMING, content="hola",
    )


class TestMessageRouter:

    @pytest.fixture
    def router(self, store):
        from core.router import MessageRouter
        return MessageRouter(store, rng=random.Random(7))

    @pytest.mark.asyncio
    async def test_non_inbox_recipient_untouched(self, router, make_user):
        customer = await make_user()
        agent = await make_user(UserRole.AGENT)
        msg = _incoming(customer, agent)
        await router.route_incoming(msg, customer, agent)
        assert msg.recipient_id == agent.id
        assert msg.whatsapp_routed is False

    @pytest.mark.asyncio
    async def test_internal_sender_untouched(self, router, make_user):
        staff = await make_user(UserRole.STAFF)
        inbox = await make_user(UserRole.WHATSAPP_BUSINESS)
        await make_user(UserRole.AGENT)
        msg = _incoming(staff, inbox)
        await router.route_incoming(msg, staff, inbox)
        assert msg.recipient_id == inbox.id

    @pytest.mark.asyncio
    async def test_sticky_agent_reroutes(self, router, make_user):
        inbox = await make_user(UserRole.WHATSAPP_BUSINESS)
        agent = await make_user(UserRole.AGENT)
        customer = await make_user(manager_id=agent.id)
        msg = _incoming(customer, inbox)
        await router.route_incoming(msg, customer, inbox)
        assert msg.recipient_id == agent.id
        assert msg.whatsapp_routed is False
        assert msg.original_recipient_id is None

    @pytest.mark.asyncio
    async def test_sticky_to_inbox_is_noop(self, router, make_user):
        inbox = await make_user(UserRole.WHATSAPP_BUSINESS)
        await make_user(UserRole.AGENT)
        customer = await make_user(manager_id=inbox.id)
        msg = _incoming(customer, inbox)
        await router.route_incoming(msg, customer, inbox)
        assert msg.recipient_id == inbox.id

    @pytest.mark.asyncio
    async def test_random_agent_is_pinned(self, router, store, make_user):
        inbox = await make_user(UserRole.WHATSAPP_BUSINESS)
        agents = [await make_user(UserRole.AGENT) for _ in range(3)]
        customer = await make_user()
        msg = _incoming(customer, inbox)

        await router.route_incoming(msg, customer, inbox)

        assert msg.recipient_id in {a.id for a in agents}
        assert msg.whatsapp_routed is True
        assert msg.original_recipient_id == inbox.id
        persisted = await store.get_user(customer.id)
        assert persisted.manager_id == msg.recipient_id

        # Next message follows the sticky agent
        follow_up = _incoming(persisted, inbox)
        await router.route_incoming(follow_up, persisted, inbox)
        assert follow_up.recipient_id == msg.recipient_id
        assert follow_up.whatsapp_routed is False

    @pytest.mark.asyncio
    async def test_inactive_and_foreign_agents_skipped(self, router, make_user):
        inbox = await make_user(UserRole.WHATSAPP_BUSINESS)
        await make_user(UserRole.AGENT, active=False)
        await make_user(UserRole.AGENT, tenant_id="other")
        active = await make_user(UserRole.AGENT)
        customer = await make_user()
        msg = _incoming(customer, inbox)
        await router.route_incoming(msg, customer, inbox)
        assert msg.recipient_id == active.id

    @pytest.mark.asyncio
    async def test_no_agents_leaves_message(self, router, store, make_user):
        inbox = await make_user(UserRole.WHATSAPP_BUSINESS)
        customer = await make_user()
        msg = _incoming(customer, inbox)
        await router.route_incoming(msg, customer, inbox)
        assert msg.recipient_id == inbox.id
        assert msg.whatsapp_routed is False
        assert (await store.get_user(customer.id)).manager_id is None
