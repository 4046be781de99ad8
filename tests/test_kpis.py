"""
Tests for KPI recording and working-hours arithmetic.
"""
from datetime import datetime, time, timedelta

import pytest

from models.schemas import KpiType, MessageDirection, Ticket, UserRole


class TestWorkingHours:

    def test_same_day_inside_hours(self):
        from core.working_hours import WorkingHours
        wh = WorkingHours()
        # 10:00 → 10:45 Lima on a Monday
        start = datetime(2026, 3, 2, 15, 0)
        assert wh.minutes_between(start, start + timedelta(minutes=45), "America/Lima") == 45

    def test_skips_night_and_weekend(self):
        from core.working_hours import WorkingHours
        wh = WorkingHours()
        friday_1750_lima = datetime(2026, 3, 6, 22, 50)
        monday_0910_lima = datetime(2026, 3, 9, 14, 10)
        assert wh.minutes_between(friday_1750_lima, monday_0910_lima, "America/Lima") == 20

    def test_reversed_interval_is_zero(self):
        from core.working_hours import WorkingHours
        start = datetime(2026, 3, 2, 15, 0)
        assert WorkingHours().minutes_between(start, start - timedelta(hours=1)) == 0

    def test_from_config(self):
        from config.settings import WorkingHoursConfig
        from core.working_hours import WorkingHours
        wh = WorkingHours.from_config(WorkingHoursConfig(start="08:30", end="13", workdays=[5]))
        assert wh.start == time(8, 30)
        assert wh.end == time(13, 0)
        assert wh.workdays == frozenset({5})


class TestKpiRecorder:

    @pytest.fixture
    def conversation(self, store, make_user):
        async def _setup():
            customer = await make_user()
            agent = await make_user(UserRole.AGENT)
            ticket = Ticket(tenant_id="t1", user_id=customer.id, agent_id=agent.id)
            await store.save_ticket(ticket)
            return customer, agent, ticket
        return _setup

    @pytest.mark.asyncio
    async def test_record_uses_given_timestamp(self, services, store, t0):
        kpi = await services.kpis.record(KpiType.NEW_TICKET, "t1", "a1", at=t0)
        assert kpi.created_at == t0
        assert (await store.list_kpis())[0].created_at == t0

    @pytest.mark.asyncio
    async def test_untracked_outgoing_logs_nothing(self, services, make_user, make_message):
        customer = await make_user()
        agent = await make_user(UserRole.AGENT)
        reply = await make_message(agent, customer, MessageDirection.OUTGOING)
        assert await services.kpis.log_outgoing(reply, agent) == []

    @pytest.mark.asyncio
    async def test_first_response_time_in_working_minutes(
        self, services, store, conversation, make_message, t0,
    ):
        customer, agent, ticket = await conversation()
        await store.update_user(customer.id, require_response=True)
        await make_message(customer, agent, MessageDirection.INCOMING, sent_at=t0, ticket_id=ticket.id)
        reply = await make_message(agent, customer, MessageDirection.OUTGOING,
                                   sent_at=t0 + timedelta(minutes=2), ticket_id=ticket.id)

        recorded = await services.kpis.log_outgoing(reply, agent)

        types = [k.kpi_type for k in recorded]
        assert types == [
            KpiType.SENT_MESSAGE, KpiType.RESPONDED_TO_CLIENT,
            KpiType.FIRST_RESPONSE_TIME, KpiType.UNIQUE_RESPONDED_TO_CLIENT,
        ]
        frt = recorded[2]
        assert frt.value == 2
        assert frt.user_id == agent.id
        assert frt.data["message_id"] == reply.id
        assert (await store.get_user(customer.id)).require_response is False

    @pytest.mark.asyncio
    async def test_first_response_credited_once(
        self, services, conversation, make_message, t0,
    ):
        customer, agent, ticket = await conversation()
        await make_message(customer, agent, MessageDirection.INCOMING, sent_at=t0, ticket_id=ticket.id)
        first = await make_message(agent, customer, MessageDirection.OUTGOING,
                                   sent_at=t0 + timedelta(minutes=2), ticket_id=ticket.id)
        second = await make_message(agent, customer, MessageDirection.OUTGOING,
                                    sent_at=t0 + timedelta(minutes=3), ticket_id=ticket.id)
        await services.kpis.log_outgoing(first, agent)
        recorded = await services.kpis.log_outgoing(second, agent)
        assert [k.kpi_type for k in recorded] == [KpiType.SENT_MESSAGE, KpiType.RESPONDED_TO_CLIENT]

    @pytest.mark.asyncio
    async def test_first_response_capped(self, store, tenants, conversation, make_message, t0):
        from core.kpis import KpiRecorder
        kpis = KpiRecorder(store, tenants, first_response_cap_minutes=60)
        customer, agent, ticket = await conversation()
        await make_message(customer, agent, MessageDirection.INCOMING, sent_at=t0, ticket_id=ticket.id)
        reply = await make_message(agent, customer, MessageDirection.OUTGOING,
                                   sent_at=t0 + timedelta(days=1), ticket_id=ticket.id)
        recorded = await kpis.log_outgoing(reply, agent)
        frt = [k for k in recorded if k.kpi_type == KpiType.FIRST_RESPONSE_TIME]
        assert frt[0].value == 60

    @pytest.mark.asyncio
    async def test_non_agent_sender_skips_agent_kpis(
        self, services, store, conversation, make_user, make_message, t0,
    ):
        customer, agent, ticket = await conversation()
        staff = await make_user(UserRole.STAFF)
        await make_message(customer, agent, MessageDirection.INCOMING, sent_at=t0, ticket_id=ticket.id)
        reply = await make_message(staff, customer, MessageDirection.OUTGOING,
                                   sent_at=t0 + timedelta(minutes=1), ticket_id=ticket.id)
        recorded = await services.kpis.log_outgoing(reply, staff)
        assert [k.kpi_type for k in recorded] == [KpiType.RESPONDED_TO_CLIENT]
        assert recorded[0].user_id == agent.id

    @pytest.mark.asyncio
    async def test_new_client_once_per_ticket(self, services, store, conversation, make_message, t0):
        customer, agent, ticket = await conversation()
        first = await make_message(customer, agent, MessageDirection.INCOMING, sent_at=t0, ticket_id=ticket.id)
        second = await make_message(customer, agent, MessageDirection.INCOMING,
                                    sent_at=t0 + timedelta(minutes=1), ticket_id=ticket.id)

        assert await services.kpis.log_new_client(second.id) is None
        kpi = await services.kpis.log_new_client(first.id)
        assert kpi.kpi_type == KpiType.NEW_CLIENT
        assert await services.kpis.log_new_client(first.id) is None
        assert len(await store.list_kpis(kpi_type=KpiType.NEW_CLIENT)) == 1
