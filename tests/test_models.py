"""Tests for data models and timestamp helpers."""
from datetime import datetime, timedelta, timezone

import pytest
from models.schemas import (
    JobStatus, JobType, Message, MessageDirection, ScheduledJob, User, UserRole,
    to_naive_utc, utcnow,
)


class TestTimestamps:
    def test_utcnow_is_naive(self):
        assert utcnow().tzinfo is None

    def test_aware_converted_to_naive_utc(self):
        lima = timezone(timedelta(hours=-5))
        aware = datetime(2026, 3, 2, 10, 0, tzinfo=lima)
        assert to_naive_utc(aware) == datetime(2026, 3, 2, 15, 0)

    def test_naive_and_none_pass_through(self):
        naive = datetime(2026, 3, 2, 10, 0)
        assert to_naive_utc(naive) is naive
        assert to_naive_utc(None) is None


class TestUserRole:
    def test_internal_roles(self):
        assert UserRole.AGENT.is_internal
        assert UserRole.STAFF.is_internal
        assert not UserRole.STANDARD.is_internal
        assert not UserRole.WHATSAPP_BUSINESS.is_internal

    @pytest.mark.parametrize("role", [
        UserRole.SUPER_ADMIN, UserRole.ADMIN, UserRole.MANAGER_LEVEL_1, UserRole.MANAGER_LEVEL_4,
    ])
    def test_supervisor_roles(self, role):
        assert role.is_supervisor

    def test_agent_is_not_supervisor(self):
        assert not UserRole.AGENT.is_supervisor


class TestMessage:
    def test_direction_helpers(self):
        msg = Message(direction=MessageDirection.INCOMING)
        assert msg.is_incoming and not msg.is_outgoing

    def test_json_dump_uses_enum_values(self):
        user = User(role=UserRole.AGENT)
        assert user.model_dump(mode="json")["role"] == "agent"

    def test_ids_are_unique(self):
        assert Message(direction=MessageDirection.OUTGOING).id != Message(direction=MessageDirection.OUTGOING).id


class TestScheduledJob:
    def test_terminal_states(self):
        job = ScheduledJob(job_type=JobType.FLAG_RECONCILE, execute_at=utcnow())
        assert not job.is_terminal
        assert job.model_copy(update={"status": JobStatus.COMPLETED}).is_terminal
        assert job.model_copy(update={"status": JobStatus.FAILED}).is_terminal
        assert not job.model_copy(update={"status": JobStatus.RUNNING}).is_terminal
