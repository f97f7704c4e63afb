"""
Tests for the scheduled message sweeper.

Covers batch selection, the attempt ceiling, reschedule-on-transient,
lead/phone failures, per-item error isolation and the summary counts.
"""
import pytest
from datetime import timedelta

from config.settings import SweeperConfig
from core.errors import TransportNotConfiguredError
from database.store_memory import InMemoryStore
from messaging.sweeper import (
    INVALID_PHONE, LEAD_NOT_FOUND, MAX_ATTEMPTS_EXCEEDED, ScheduledMessageSweeper,
)
from models.schemas import Channel, Lead, MessageStatus, ScheduledMessage

from tests.fakes import NOW, TENANT, ScriptedTransport


@pytest.fixture
def sweeper(store, transport):
    return ScheduledMessageSweeper(store, transport)


class TestSelection:
    @pytest.mark.asyncio
    async def test_only_due_pending_undeleted(self, sweeper, store, channels, make_message):
        due = await make_message()
        await make_message(scheduled_at=NOW + timedelta(hours=1))
        await make_message(deleted_at=NOW - timedelta(minutes=5))
        await make_message(status=MessageStatus.CANCELLED)

        summary = await sweeper.run(now=NOW)

        assert summary.processed == 1
        assert (await store.get_scheduled_message(due.id)).status == MessageStatus.SENT

    @pytest.mark.asyncio
    async def test_sent_message_never_reselected(self, sweeper, store, transport, channels, make_message):
        msg = await make_message()
        await sweeper.run(now=NOW)
        second = await sweeper.run(now=NOW + timedelta(days=3))

        assert second.processed == 0
        assert len(transport.calls) == 1
        assert (await store.get_scheduled_message(msg.id)).attempt_count == 1

    @pytest.mark.asyncio
    async def test_batch_size_oldest_first(self, store, transport, channels, make_message):
        late = await make_message(scheduled_at=NOW - timedelta(minutes=1))
        early = await make_message(scheduled_at=NOW - timedelta(minutes=30))
        middle = await make_message(scheduled_at=NOW - timedelta(minutes=10))
        sweeper = ScheduledMessageSweeper(store, transport, SweeperConfig(batch_size=2))

        summary = await sweeper.run(now=NOW)

        assert summary.processed == 2
        assert (await store.get_scheduled_message(early.id)).status == MessageStatus.SENT
        assert (await store.get_scheduled_message(middle.id)).status == MessageStatus.SENT
        assert (await store.get_scheduled_message(late.id)).status == MessageStatus.PENDING


class TestAttemptCeiling:
    @pytest.mark.asyncio
    async def test_three_transient_failures_end_failed(self, sweeper, store, transport, channels, make_message):
        msg = await make_message(primary="ch_a", max_attempts=3)
        transport.fail("inst-a", "timeout", times=3)

        first = await sweeper.run(now=NOW)
        second = await sweeper.run(now=NOW + timedelta(minutes=5))
        third = await sweeper.run(now=NOW + timedelta(minutes=10))

        assert first.rescheduled == 1 and second.rescheduled == 1
        assert third.failed == 1
        stored = await store.get_scheduled_message(msg.id)
        assert stored.status == MessageStatus.FAILED_OTHER
        assert stored.attempt_count == 3
        assert stored.failure_reason == "Todas as 1 instâncias falharam: timeout"

    @pytest.mark.asyncio
    async def test_two_failures_then_success(self, sweeper, store, transport, channels, make_message):
        msg = await make_message(primary="ch_a", max_attempts=3)
        transport.fail("inst-a", "timeout", times=2)

        for minutes in (0, 5, 10):
            await sweeper.run(now=NOW + timedelta(minutes=minutes))

        stored = await store.get_scheduled_message(msg.id)
        assert stored.status == MessageStatus.SENT
        assert stored.attempt_count == 3
        assert stored.failure_reason is None
        assert stored.sent_at == NOW + timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_already_over_ceiling_is_not_sent(self, sweeper, store, transport, channels, make_message):
        msg = await make_message(attempt_count=3, max_attempts=3)

        summary = await sweeper.run(now=NOW)

        assert summary.failed == 1
        assert transport.calls == []
        stored = await store.get_scheduled_message(msg.id)
        assert stored.status == MessageStatus.FAILED_OTHER
        assert stored.failure_reason == MAX_ATTEMPTS_EXCEEDED
        assert stored.attempt_count == 4


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_transient_failure_reschedules(self, sweeper, store, transport, channels, make_message):
        msg = await make_message(primary="ch_a")
        transport.fail("inst-a", "Internal Server Error")

        summary = await sweeper.run(now=NOW)

        assert summary.model_dump() == {
            "success": True, "processed": 1, "sent": 0, "failed": 0, "rescheduled": 1,
        }
        stored = await store.get_scheduled_message(msg.id)
        assert stored.status == MessageStatus.PENDING
        assert stored.scheduled_at == NOW + timedelta(minutes=5)
        assert stored.attempt_count == 1
        assert stored.last_attempt_at == NOW
        assert "Internal Server Error" in stored.failure_reason

    @pytest.mark.asyncio
    async def test_permanent_failure_fails_immediately(self, sweeper, store, transport, channels, make_message):
        msg = await make_message(primary="ch_a", fallbacks=["ch_b"])
        transport.fail("inst-a", "Número não registrado")

        summary = await sweeper.run(now=NOW)

        assert summary.failed == 1
        stored = await store.get_scheduled_message(msg.id)
        assert stored.status == MessageStatus.FAILED_OTHER
        assert stored.failure_reason == "Número não registrado"
        assert transport.instances_called == ["inst-a"]

    @pytest.mark.asyncio
    async def test_missing_lead(self, sweeper, store, transport, channels, make_message):
        msg = await make_message(lead_id="ghost")
        await sweeper.run(now=NOW)
        stored = await store.get_scheduled_message(msg.id)
        assert stored.status == MessageStatus.FAILED_OTHER
        assert stored.failure_reason == LEAD_NOT_FOUND
        assert stored.attempt_count == 1
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_lead_without_phone(self, sweeper, store, transport, channels, make_message):
        await store.upsert_lead(Lead(id="no_phone", tenant_id=TENANT, whatsapp=""))
        msg = await make_message(lead_id="no_phone")
        await sweeper.run(now=NOW)
        stored = await store.get_scheduled_message(msg.id)
        assert stored.failure_reason == INVALID_PHONE
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_sends_to_normalized_phone(self, sweeper, transport, channels, make_message):
        await make_message()
        await sweeper.run(now=NOW)
        assert transport.calls[0]["phone"] == "5511987654321"

    @pytest.mark.asyncio
    async def test_substitution_scenario(self, sweeper, store, transport, channels, make_message):
        msg = await make_message(primary=None)

        summary = await sweeper.run(now=NOW)

        assert summary.sent == 1
        stored = await store.get_scheduled_message(msg.id)
        assert stored.status == MessageStatus.SENT
        assert stored.current_instance_index == 0
        assert stored.whatsapp_instance_id == "ch_a"

    @pytest.mark.asyncio
    async def test_every_processed_message_counted_once(self, sweeper, transport, channels, make_message):
        await make_message(primary="ch_a")
        await make_message(primary="ch_b")
        await make_message(primary="ch_c")
        transport.fail("inst-b", "Bad Request")
        transport.fail("inst-c", "timeout")

        summary = await sweeper.run(now=NOW)

        assert (summary.sent, summary.failed, summary.rescheduled) == (1, 1, 1)
        assert summary.processed == summary.sent + summary.failed + summary.rescheduled


class ExplodingLeadStore(InMemoryStore):
    async def get_lead(self, lead_id):
        if lead_id == "boom":
            raise RuntimeError("database went away")
        return await super().get_lead(lead_id)


class TestErrorIsolation:
    @pytest.mark.asyncio
    async def test_one_bad_message_does_not_abort_the_batch(self, lead):
        store = ExplodingLeadStore()
        await store.upsert_lead(lead)
        transport = ScriptedTransport()
        await store.upsert_channel(Channel(id="ch_a", tenant_id=TENANT, instance_name="inst-a",
                                           is_connected=True))
        bad = ScheduledMessage(tenant_id=TENANT, lead_id="boom", whatsapp_instance_id="ch_a",
                               scheduled_at=NOW - timedelta(minutes=2))
        good = ScheduledMessage(tenant_id=TENANT, lead_id=lead.id, whatsapp_instance_id="ch_a",
                                scheduled_at=NOW - timedelta(minutes=1))
        await store.add_scheduled_message(bad)
        await store.add_scheduled_message(good)

        summary = await ScheduledMessageSweeper(store, transport).run(now=NOW)

        assert (summary.processed, summary.sent, summary.failed) == (2, 1, 1)
        failed = await store.get_scheduled_message(bad.id)
        assert failed.status == MessageStatus.FAILED_OTHER
        assert failed.failure_reason == "database went away"

    @pytest.mark.asyncio
    async def test_unconfigured_transport_aborts_the_run(self, store, channels, make_message):
        msg = await make_message()
        sweeper = ScheduledMessageSweeper(store, ScriptedTransport(configured=False))

        with pytest.raises(TransportNotConfiguredError):
            await sweeper.run(now=NOW)
        assert (await store.get_scheduled_message(msg.id)).attempt_count == 0
