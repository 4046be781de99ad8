"""
Tests for no-reply alerts, the overdue sweep and supervisor escalation.
"""
from datetime import timedelta

import pytest

from core.collaborators import Notifier
from models.schemas import (
    Alert, AlertSeverity, AlertType, MessageDirection, Ticket, UserRole, utcnow,
)


class BrokenNotifier(Notifier):
    async def notify_agent(self, user_id, event_type, title, body):
        raise ConnectionError("gateway unreachable")


class TestCheckAndAlert:

    @pytest.mark.asyncio
    async def test_answered_clears_flag(self, services, store, notifier, make_user, make_message):
        customer = await make_user(require_response=True)
        agent = await make_user(UserRole.AGENT)
        t = utcnow() - timedelta(minutes=40)
        msg = await make_message(customer, agent, MessageDirection.INCOMING, created_at=t)
        await make_message(agent, customer, MessageDirection.OUTGOING, created_at=t + timedelta(minutes=5))

        result = await services.alerts.check_and_alert(msg.id, customer.id, agent.id, 30)

        assert result is None
        assert (await store.get_user(customer.id)).require_response is False
        assert await store.list_alerts() == []
        assert notifier.calls == []

    @pytest.mark.asyncio
    async def test_unanswered_ticket_alerts_agent(self, services, store, notifier, make_user, make_message):
        customer = await make_user(name="Ana")
        agent = await make_user(UserRole.AGENT)
        ticket = Ticket(tenant_id="t1", user_id=customer.id, agent_id=agent.id, subject="Order")
        await store.save_ticket(ticket)
        msg = await make_message(customer, agent, MessageDirection.INCOMING,
                                 created_at=utcnow() - timedelta(minutes=31), ticket_id=ticket.id)

        alert = await services.alerts.check_and_alert(msg.id, customer.id, agent.id, 30)

        assert alert.alert_type == AlertType.REQUIRE_RESPONSE
        assert alert.user_id == agent.id
        assert alert.ticket_id == ticket.id
        assert alert.url == f"/tickets/{ticket.id}"
        assert [c["user_id"] for c in notifier.calls] == [agent.id]
        assert "Ana" in notifier.calls[0]["body"]
        user = await store.get_user(customer.id)
        assert user.require_response is True
        assert user.last_message_at == msg.created_at

    @pytest.mark.asyncio
    async def test_ticket_alert_deduplicated_within_hour(self, services, store, make_user, make_message):
        customer = await make_user()
        agent = await make_user(UserRole.AGENT)
        ticket = Ticket(tenant_id="t1", user_id=customer.id, agent_id=agent.id)
        await store.save_ticket(ticket)
        first = await make_message(customer, agent, MessageDirection.INCOMING, ticket_id=ticket.id)
        second = await make_message(customer, agent, MessageDirection.INCOMING, ticket_id=ticket.id)

        assert await services.alerts.check_and_alert(first.id, customer.id, agent.id, 30) is not None
        assert await services.alerts.check_and_alert(second.id, customer.id, agent.id, 30) is None
        assert len(await store.list_alerts(ticket_id=ticket.id)) == 1

    @pytest.mark.asyncio
    async def test_untracked_message_gets_message_alert(self, services, store, make_user, make_message):
        staff = await make_user(UserRole.STAFF)
        agent = await make_user(UserRole.AGENT)
        msg = await make_message(staff, agent, MessageDirection.INCOMING)

        alert = await services.alerts.check_and_alert(msg.id, staff.id, agent.id, 30)

        assert alert.message_id == msg.id
        assert alert.ticket_id is None
        assert alert.sender_id == staff.id

    @pytest.mark.asyncio
    async def test_missing_message(self, services, store):
        assert await services.alerts.check_and_alert("missing", "a", "b", 30) is None

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_propagate(self, store, tenants, make_user, make_message):
        from core.alerts import AlertEscalator
        escalator = AlertEscalator(store, BrokenNotifier(), tenants)
        customer = await make_user()
        agent = await make_user(UserRole.AGENT)
        msg = await make_message(customer, agent, MessageDirection.INCOMING)

        alert = await escalator.check_and_alert(msg.id, customer.id, agent.id, 30)

        assert alert is not None
        assert (await store.get_user(customer.id)).require_response is True


class TestOverdueSweep:

    async def _overdue_ticket(self, store, make_user, make_message, minutes_ago=45, manager=None):
        customer = await make_user()
        agent = await make_user(UserRole.AGENT, manager_id=manager.id if manager else None)
        ticket = Ticket(tenant_id="t1", user_id=customer.id, agent_id=agent.id)
        await store.save_ticket(ticket)
        await make_message(customer, agent, MessageDirection.INCOMING,
                           sent_at=utcnow() - timedelta(minutes=minutes_ago), ticket_id=ticket.id)
        return ticket

    @pytest.mark.asyncio
    async def test_alerts_overdue_ticket_once(self, services, store, notifier, make_user, make_message):
        ticket = await self._overdue_ticket(store, make_user, make_message)

        stats = await services.alerts.sweep_overdue()
        assert stats == {"checked": 1, "alerted": 1, "escalated": 0, "errors": 0}
        assert len(notifier.calls) == 1

        again = await services.alerts.sweep_overdue()
        assert again["alerted"] == 0
        assert len(await store.list_alerts(ticket_id=ticket.id)) == 1

    @pytest.mark.asyncio
    async def test_recent_or_answered_not_alerted(self, services, store, make_user, make_message):
        await self._overdue_ticket(store, make_user, make_message, minutes_ago=5)
        answered = await self._overdue_ticket(store, make_user, make_message)
        await make_message(await store.get_user(answered.agent_id), await store.get_user(answered.user_id),
                           MessageDirection.OUTGOING, ticket_id=answered.id)

        stats = await services.alerts.sweep_overdue()
        assert stats["checked"] == 2
        assert stats["alerted"] == 0

    @pytest.mark.asyncio
    async def test_escalates_to_nearest_supervisor(self, services, store, notifier, make_user, make_message):
        manager = await make_user(UserRole.MANAGER_LEVEL_1)
        ticket = await self._overdue_ticket(store, make_user, make_message, manager=manager)
        for hours in (3, 2):
            await store.save_alert(Alert(
                tenant_id="t1", user_id=ticket.agent_id, alert_type=AlertType.REQUIRE_RESPONSE,
                ticket_id=ticket.id, created_at=utcnow() - timedelta(hours=hours),
            ))

        stats = await services.alerts.sweep_overdue()

        assert stats["alerted"] == 1
        assert stats["escalated"] == 1
        escalations = await store.list_alerts(alert_type=AlertType.ESCALATION)
        assert len(escalations) == 1
        assert escalations[0].user_id == manager.id
        assert escalations[0].severity == AlertSeverity.HIGH
        assert [c["user_id"] for c in notifier.calls] == [ticket.agent_id, manager.id]

    @pytest.mark.asyncio
    async def test_no_supervisor_no_escalation(self, services, store, make_user, make_message):
        ticket = await self._overdue_ticket(store, make_user, make_message)
        for hours in (3, 2):
            await store.save_alert(Alert(
                tenant_id="t1", user_id=ticket.agent_id, alert_type=AlertType.REQUIRE_RESPONSE,
                ticket_id=ticket.id, created_at=utcnow() - timedelta(hours=hours),
            ))
        stats = await services.alerts.sweep_overdue()
        assert stats["escalated"] == 0
        assert await store.list_alerts(alert_type=AlertType.ESCALATION) == []
