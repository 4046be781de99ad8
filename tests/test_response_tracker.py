"""
Tests for the require-response flag and the REQUIRE_RESPONSE KPI stage.
"""
import json
from datetime import timedelta

import pytest

from models.schemas import JobType, KpiType, MessageDirection, UserRole, utcnow


class TestRequiresResponse:

    def test_rules(self):
        from core.response_tracker import requires_response
        from models.schemas import Message, User
        customer = User(role=UserRole.STANDARD)
        agent = User(role=UserRole.AGENT)
        incoming = Message(sender_id=customer.id, recipient_id=agent.id,
                           direction=MessageDirection.INCOMING)
        outgoing = Message(sender_id=agent.id, recipient_id=customer.id,
                           direction=MessageDirection.OUTGOING)

        assert requires_response(customer, incoming) is True
        assert requires_response(agent, incoming) is True
        assert requires_response(customer, outgoing) is False
        assert requires_response(agent, outgoing) is False
        assert requires_response(customer, None) is False


class TestCreateResponseKpi:

    @pytest.mark.asyncio
    async def test_records_kpi_raises_flag_and_schedules_alert(
        self, services, store, job_store, make_user, make_message, t0,
    ):
        customer = await make_user()
        agent = await make_user(UserRole.AGENT)
        msg = await make_message(customer, agent, MessageDirection.INCOMING, created_at=t0, ticket_id="k1")

        job_id = await services.tracker.create_response_kpi(msg.id)

        kpis = await store.list_kpis(kpi_type=KpiType.REQUIRE_RESPONSE)
        assert len(kpis) == 1
        assert kpis[0].user_id == agent.id
        assert kpis[0].created_at == t0
        assert kpis[0].data == {"message_id": msg.id, "deferred": True, "ticket_id": "k1"}
        assert (await store.get_user(customer.id)).require_response is True

        job = await job_store.get(job_id)
        assert job.job_type == JobType.RESPONSE_ALERT
        assert job.job_name == f"RequireResponseAlert-{msg.id}"
        assert json.loads(job.job_data) == {
            "message_id": msg.id, "sender_id": customer.id,
            "recipient_id": agent.id, "delay_minutes": 30,
        }
        assert job.execute_at > utcnow() + timedelta(minutes=29)
        await services.scheduler.stop()

    @pytest.mark.asyncio
    async def test_idempotent(self, services, store, job_store, make_user, make_message):
        customer = await make_user()
        agent = await make_user(UserRole.AGENT)
        msg = await make_message(customer, agent, MessageDirection.INCOMING)

        assert await services.tracker.create_response_kpi(msg.id) is not None
        assert await services.tracker.create_response_kpi(msg.id) is None
        assert len(await store.list_kpis(kpi_type=KpiType.REQUIRE_RESPONSE)) == 1
        assert len(await job_store.list_pending()) == 1
        await services.scheduler.stop()

    @pytest.mark.asyncio
    async def test_duplicate_check_does_not_scan_agent_history(
        self, services, store, make_user, make_message,
    ):
        from unittest.mock import AsyncMock, patch
        from models.schemas import Kpi
        customer = await make_user()
        agent = await make_user(UserRole.AGENT)
        for i in range(200):
            await store.save_kpi(Kpi(tenant_id="t1", user_id=agent.id, kpi_type=KpiType.REQUIRE_RESPONSE,
                                     message_id=f"old{i}", data={"message_id": f"old{i}"}))
        msg = await make_message(customer, agent, MessageDirection.INCOMING)

        with patch.object(store, "list_kpis", new=AsyncMock(wraps=store.list_kpis)) as list_kpis:
            assert await services.tracker.create_response_kpi(msg.id) is not None

        list_kpis.assert_not_awaited()
        recorded = await store.find_kpi(KpiType.REQUIRE_RESPONSE, msg.id)
        assert recorded.user_id == agent.id
        await services.scheduler.stop()

    @pytest.mark.asyncio
    async def test_outgoing_and_missing_skipped(self, services, store, make_user, make_message):
        customer = await make_user()
        agent = await make_user(UserRole.AGENT)
        reply = await make_message(agent, customer, MessageDirection.OUTGOING)
        assert await services.tracker.create_response_kpi(reply.id) is None
        assert await services.tracker.create_response_kpi("missing") is None
        assert await store.list_kpis() == []


class TestReconcileFlag:

    @pytest.mark.asyncio
    async def test_sets_flag_with_last_message_time(self, services, store, make_user, make_message, t0):
        customer = await make_user()
        agent = await make_user(UserRole.AGENT)
        await make_message(customer, agent, MessageDirection.INCOMING, created_at=t0)

        from core.response_tracker import SET, UNCHANGED
        assert await services.tracker.reconcile_flag(customer.id) == SET
        user = await store.get_user(customer.id)
        assert user.require_response is True
        assert user.last_message_at == t0
        assert await services.tracker.reconcile_flag(customer.id) == UNCHANGED

    @pytest.mark.asyncio
    async def test_clears_after_reply(self, services, store, make_user, make_message, t0):
        from core.response_tracker import CLEARED
        customer = await make_user(require_response=True)
        agent = await make_user(UserRole.AGENT)
        await make_message(customer, agent, MessageDirection.INCOMING, created_at=t0)
        await make_message(agent, customer, MessageDirection.OUTGOING, created_at=t0 + timedelta(minutes=1))

        assert await services.tracker.reconcile_flag(customer.id) == CLEARED
        assert (await store.get_user(customer.id)).require_response is False

    @pytest.mark.asyncio
    async def test_unknown_user(self, services):
        from core.response_tracker import UNCHANGED
        assert await services.tracker.reconcile_flag("nobody") == UNCHANGED

    @pytest.mark.asyncio
    async def test_sweep_pages_through_customers(self, store, services, make_user, make_message, t0):
        from core.response_tracker import ResponseTracker
        tracker = ResponseTracker(store, services.scheduler, services.tenants, services.kpis, page_size=2)
        agent = await make_user(UserRole.AGENT)
        waiting = [await make_user() for _ in range(3)]
        stale = [await make_user(require_response=True) for _ in range(2)]
        for i, customer in enumerate(waiting):
            await make_message(customer, agent, MessageDirection.INCOMING,
                               created_at=t0 + timedelta(minutes=i))
        for customer in stale:
            await make_message(agent, customer, MessageDirection.OUTGOING, created_at=t0)

        stats = await tracker.reconcile_all()

        assert stats == {"processed": 5, "updated": 5, "cleared": 2}
        for customer in waiting:
            assert (await store.get_user(customer.id)).require_response is True
        for customer in stale:
            assert (await store.get_user(customer.id)).require_response is False
        # Second pass is a no-op
        assert (await tracker.reconcile_all())["updated"] == 0

    @pytest.mark.asyncio
    async def test_tenant_scoped_sweep(self, services, store, make_user, make_message):
        agent = await make_user(UserRole.AGENT)
        here = await make_user()
        elsewhere_agent = await make_user(UserRole.AGENT, tenant_id="t2")
        elsewhere = await make_user(tenant_id="t2")
        await make_message(here, agent, MessageDirection.INCOMING)
        await make_message(elsewhere, elsewhere_agent, MessageDirection.INCOMING)

        stats = await services.tracker.reconcile_tenant("t1")
        assert stats["processed"] == 1
        assert (await store.get_user(elsewhere.id)).require_response is False
