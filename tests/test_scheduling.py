"""Tests for scheduled message management (create, cancel, reschedule, retry, ...)."""
import pytest
from datetime import timedelta

from core.errors import InvalidTransitionError, NotFoundError
from messaging.scheduling import DEFAULT_CANCEL_REASON, ScheduledMessageService
from models.schemas import MediaAttachment, MediaType, MessageStatus

from tests.fakes import NOW, TENANT


@pytest.fixture
def service(store):
    return ScheduledMessageService(store)


class TestSchedule:
    @pytest.mark.asyncio
    async def test_schedule_with_media(self, service, store, lead):
        media = MediaAttachment(type=MediaType.DOCUMENT, url="https://cdn/nf.pdf", filename="nf.pdf")
        msg = await service.schedule(TENANT, lead.id, "Segue a nota", NOW + timedelta(hours=2),
                                     whatsapp_instance_id="ch_a", fallback_instance_ids=["ch_b"],
                                     media=media)
        stored = await store.get_scheduled_message(msg.id)
        assert stored.status == MessageStatus.PENDING
        assert stored.max_attempts == 3
        assert stored.media == media
        assert stored.fallback_instance_ids == ["ch_b"]

    @pytest.mark.asyncio
    async def test_unknown_lead(self, service):
        with pytest.raises(NotFoundError):
            await service.schedule(TENANT, "ghost", "oi", NOW)

    @pytest.mark.asyncio
    async def test_list_hides_deleted(self, service, make_message):
        kept = await make_message()
        gone = await make_message()
        await service.soft_delete(gone.id, now=NOW)
        assert [m.id for m in await service.list_messages(TENANT)] == [kept.id]
        with pytest.raises(NotFoundError):
            await service.get(gone.id)


class TestPendingOnlyEdits:
    @pytest.mark.asyncio
    async def test_cancel(self, service, make_message):
        msg = await make_message()
        cancelled = await service.cancel(msg.id, now=NOW)
        assert cancelled.status == MessageStatus.CANCELLED
        assert cancelled.cancel_reason == DEFAULT_CANCEL_REASON
        assert cancelled.cancelled_at == NOW

    @pytest.mark.asyncio
    async def test_cannot_cancel_sent(self, service, make_message):
        msg = await make_message(status=MessageStatus.SENT)
        with pytest.raises(InvalidTransitionError):
            await service.cancel(msg.id)

    @pytest.mark.asyncio
    async def test_reschedule_and_update(self, service, make_message):
        msg = await make_message()
        later = NOW + timedelta(days=1)
        await service.reschedule(msg.id, later)
        updated = await service.update(msg.id, final_message="Novo texto")
        assert updated.scheduled_at == later
        assert updated.final_message == "Novo texto"

    @pytest.mark.asyncio
    async def test_update_failed_message_rejected(self, service, make_message):
        msg = await make_message(status=MessageStatus.FAILED_OTHER)
        with pytest.raises(InvalidTransitionError):
            await service.update(msg.id, final_message="x")


class TestRetryFailed:
    @pytest.mark.asyncio
    async def test_resets_attempt_budget(self, service, channels, make_message):
        msg = await make_message(status=MessageStatus.FAILED_OTHER, attempt_count=3,
                                 current_instance_index=2, failure_reason="Todas as 3 instâncias falharam")

        retried = await service.retry_failed([msg.id], now=NOW)

        assert len(retried) == 1
        again = retried[0]
        assert again.status == MessageStatus.PENDING
        assert again.scheduled_at == NOW + timedelta(minutes=1)
        assert again.attempt_count == 0
        assert again.current_instance_index == 0
        assert again.failure_reason is None
        assert again.whatsapp_instance_id == "ch_a"

    @pytest.mark.asyncio
    async def test_can_switch_instance(self, service, channels, make_message):
        msg = await make_message(status=MessageStatus.FAILED_OTHER)
        retried = await service.retry_failed([msg.id], new_instance_id="ch_c", now=NOW)
        assert retried[0].whatsapp_instance_id == "ch_c"

    @pytest.mark.asyncio
    async def test_skips_non_failed(self, service, channels, make_message):
        sent = await make_message(status=MessageStatus.SENT)
        cancelled = await make_message(status=MessageStatus.CANCELLED)
        assert await service.retry_failed([sent.id, cancelled.id, "ghost"], now=NOW) == []

    @pytest.mark.asyncio
    async def test_unknown_instance(self, service, make_message):
        msg = await make_message(status=MessageStatus.FAILED_OTHER)
        with pytest.raises(NotFoundError):
            await service.retry_failed([msg.id], new_instance_id="nope")


class TestChangeInstance:
    @pytest.mark.asyncio
    async def test_bulk_change(self, service, store, channels, make_message):
        a = await make_message()
        b = await make_message()
        assert await service.change_instance([a.id, b.id, "ghost"], "ch_b") == 2
        assert (await store.get_scheduled_message(a.id)).whatsapp_instance_id == "ch_b"
