"""
Tests for the store backends.

Every test in TestStoreContract runs against both:
  - InMemoryStore
  - SqlStore (via SQLite for test portability)

plus the store factory and an end-to-end sweep on SQL.
"""
import pytest
import pytest_asyncio
from sqlalchemy.exc import IntegrityError
from datetime import timedelta

from config.settings import DatabaseConfig
from core.errors import ConflictError
from database.session import _redact, _to_async_url, close_db, configure_engine, init_db
from database.store import SqlStore
from database.store_factory import create_store, get_store, reset_store
from database.store_memory import InMemoryStore
from messaging.sweeper import ScheduledMessageSweeper
from models.schemas import (
    AutoCloseConfig, Channel, CheckpointHistoryEntry, CheckpointAction, CheckpointType,
    Conversation, ConversationMessage, ConversationStatus, Lead, MediaAttachment, MediaType,
    MessageDirection, MessageStatus, PickupClosing, PickupClosingSale, Sale, SaleCheckpoint,
    SatisfactionRating, ScheduledMessage,
)

from tests.fakes import NOW, TENANT, ScriptedTransport


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(params=["memory", "sql"])
async def backend(request, tmp_path):
    if request.param == "memory":
        yield InMemoryStore()
        return
    configure_engine(f"sqlite:///{tmp_path / 'store.db'}")
    await init_db()
    yield SqlStore()
    await close_db()


def scheduled(**fields) -> ScheduledMessage:
    fields.setdefault("tenant_id", TENANT)
    fields.setdefault("lead_id", "lead_1")
    fields.setdefault("scheduled_at", NOW - timedelta(minutes=1))
    return ScheduledMessage(**fields)


# ──────────────────────────────────────────────────────────────
#  Contract shared by both backends
# ──────────────────────────────────────────────────────────────

class TestStoreContract:

    @pytest.mark.asyncio
    async def test_lead_and_channel_round_trip(self, backend):
        await backend.upsert_lead(Lead(id="lead_1", tenant_id=TENANT, whatsapp="11987654321"))
        await backend.upsert_channel(Channel(id="ch_a", tenant_id=TENANT, instance_name="inst-a",
                                             is_connected=True, created_at=NOW))
        assert (await backend.get_lead("lead_1")).whatsapp == "11987654321"
        channel = await backend.get_channel("ch_a")
        assert channel.is_eligible
        assert channel.created_at == NOW
        assert await backend.get_channel("missing") is None

    @pytest.mark.asyncio
    async def test_channel_listings(self, backend):
        for i, (cid, connected, status) in enumerate([
            ("c2", True, "active"), ("c1", True, "active"),
            ("off", False, "active"), ("gone", True, "inactive"),
        ]):
            await backend.upsert_channel(Channel(
                id=cid, tenant_id=TENANT, instance_name=cid, is_connected=connected,
                status=status, created_at=NOW + timedelta(minutes=i),
            ))
        await backend.upsert_channel(Channel(id="x", tenant_id="other", instance_name="x", is_connected=True))

        assert [c.id for c in await backend.list_connected_channels(TENANT)] == ["c2", "c1"]
        assert [c.id for c in await backend.list_active_channels(TENANT)] == ["c2", "c1", "off"]

    @pytest.mark.asyncio
    async def test_due_messages(self, backend):
        early = scheduled(scheduled_at=NOW - timedelta(hours=1))
        late = scheduled(scheduled_at=NOW - timedelta(minutes=1))
        for msg in [
            late, early,
            scheduled(scheduled_at=NOW + timedelta(minutes=1)),
            scheduled(status=MessageStatus.SENT),
            scheduled(deleted_at=NOW - timedelta(minutes=2)),
        ]:
            await backend.add_scheduled_message(msg)

        assert [m.id for m in await backend.list_due_messages(NOW)] == [early.id, late.id]
        assert [m.id for m in await backend.list_due_messages(NOW, limit=1)] == [early.id]

    @pytest.mark.asyncio
    async def test_message_update_and_media(self, backend):
        media = MediaAttachment(type=MediaType.DOCUMENT, url="https://cdn/nf.pdf", filename="nf.pdf")
        msg = scheduled(fallback_instance_ids=["ch_b", "ch_c"], media=media)
        await backend.add_scheduled_message(msg)

        updated = await backend.update_scheduled_message(
            msg.id, attempt_count=2, status=MessageStatus.FAILED_OTHER, failure_reason="Bad Request",
        )
        stored = await backend.get_scheduled_message(msg.id)

        assert updated.attempt_count == stored.attempt_count == 2
        assert stored.status == MessageStatus.FAILED_OTHER
        assert stored.media == media
        assert stored.fallback_instance_ids == ["ch_b", "ch_c"]
        assert stored.scheduled_at == msg.scheduled_at
        assert await backend.update_scheduled_message("missing", attempt_count=1) is None

    @pytest.mark.asyncio
    async def test_list_scheduled_messages(self, backend):
        a = scheduled()
        b = scheduled(status=MessageStatus.FAILED_OTHER)
        c = scheduled(deleted_at=NOW)
        for msg in (a, b, c):
            await backend.add_scheduled_message(msg)
        assert {m.id for m in await backend.list_scheduled_messages(TENANT)} == {a.id, b.id}
        failed = await backend.list_scheduled_messages(TENANT, status=MessageStatus.FAILED_OTHER)
        assert [m.id for m in failed] == [b.id]
        assert len(await backend.list_scheduled_messages(TENANT, include_deleted=True)) == 3

    @pytest.mark.asyncio
    async def test_sales_newest_first_by_type(self, backend):
        await backend.upsert_sale(Sale(id="old", tenant_id=TENANT, created_at=NOW - timedelta(days=1)))
        await backend.upsert_sale(Sale(id="new", tenant_id=TENANT, created_at=NOW))
        await backend.upsert_sale(Sale(id="ship", tenant_id=TENANT, delivery_type="delivery", created_at=NOW))
        assert [s.id for s in await backend.list_sales(TENANT, delivery_type="pickup")] == ["new", "old"]
        updated = await backend.update_sale("old", total_cents=990, printed_at=NOW)
        assert (await backend.get_sale("old")).printed_at == NOW == updated.printed_at

    @pytest.mark.asyncio
    async def test_one_checkpoint_row_per_type(self, backend):
        await backend.upsert_sale(Sale(id="s1", tenant_id=TENANT))
        first = await backend.save_checkpoint(SaleCheckpoint(
            sale_id="s1", tenant_id=TENANT, checkpoint_type=CheckpointType.PRINTED, completed_at=NOW,
        ))
        second = await backend.save_checkpoint(SaleCheckpoint(
            sale_id="s1", tenant_id=TENANT, checkpoint_type=CheckpointType.PRINTED,
        ))
        rows = await backend.list_checkpoints("s1")
        assert len(rows) == 1
        assert second.id == first.id == rows[0].id
        assert rows[0].completed_at is None
        assert (await backend.get_checkpoint("s1", "printed")).id == first.id

    @pytest.mark.asyncio
    async def test_history_oldest_first(self, backend):
        await backend.upsert_sale(Sale(id="s1", tenant_id=TENANT))
        cp = await backend.save_checkpoint(SaleCheckpoint(
            sale_id="s1", tenant_id=TENANT, checkpoint_type=CheckpointType.DELIVERED,
        ))
        for minutes, action in [(5, CheckpointAction.UNCOMPLETED), (1, CheckpointAction.COMPLETED)]:
            await backend.add_checkpoint_history(CheckpointHistoryEntry(
                checkpoint_id=cp.id, sale_id="s1", tenant_id=TENANT,
                checkpoint_type=CheckpointType.DELIVERED, action=action,
                changed_at=NOW + timedelta(minutes=minutes),
            ))
        history = await backend.list_checkpoint_history("s1")
        assert [h.action for h in history] == [CheckpointAction.COMPLETED, CheckpointAction.UNCOMPLETED]

    @pytest.mark.asyncio
    async def test_closing_uniqueness(self, backend):
        assert await backend.next_closing_number(TENANT) == 1
        closing = PickupClosing(tenant_id=TENANT, closing_number=1, closing_date=NOW.date())
        await backend.add_closing(closing)
        assert await backend.next_closing_number(TENANT) == 2

        with pytest.raises(ConflictError):
            await backend.add_closing(PickupClosing(tenant_id=TENANT, closing_number=1,
                                                    closing_date=NOW.date()))

        await backend.add_closing_sales([
            PickupClosingSale(closing_id=closing.id, sale_id="s1", tenant_id=TENANT),
        ])
        with pytest.raises(ConflictError):
            await backend.add_closing_sales([
                PickupClosingSale(closing_id=closing.id, sale_id="s2", tenant_id=TENANT),
                PickupClosingSale(closing_id=closing.id, sale_id="s1", tenant_id=TENANT),
            ])
        assert await backend.list_closed_sale_ids(TENANT) == {"s1"}

        await backend.delete_closing(closing.id)
        assert await backend.get_closing(closing.id) is None
        assert await backend.list_closed_sale_ids(TENANT) == set()

    @pytest.mark.asyncio
    async def test_idle_conversations(self, backend):
        def conv(cid, status, idle, **fields):
            return Conversation(id=cid, tenant_id=TENANT, instance_id="ch_a", status=status,
                                last_message_at=NOW - timedelta(minutes=idle), **fields)

        for c in [
            conv("bot_old", ConversationStatus.WITH_BOT, 120),
            conv("bot_new", ConversationStatus.WITH_BOT, 10),
            conv("assigned_old", ConversationStatus.ASSIGNED, 120),
            conv("waiting", ConversationStatus.WITH_BOT, 120, awaiting_satisfaction_response=True),
            Conversation(id="silent", tenant_id=TENANT, instance_id="ch_a",
                         status=ConversationStatus.WITH_BOT),
        ]:
            await backend.upsert_conversation(c)

        idle = await backend.list_idle_conversations(
            "ch_a", [ConversationStatus.WITH_BOT], NOW - timedelta(minutes=60),
        )
        assert [c.id for c in idle] == ["bot_old"]
        assert [c.id for c in await backend.list_awaiting_satisfaction()] == ["waiting"]

    @pytest.mark.asyncio
    async def test_latest_inbound_and_open_rating(self, backend):
        await backend.upsert_conversation(Conversation(id="c1", tenant_id=TENANT, instance_id="ch_a"))
        for minutes, direction, text in [
            (1, MessageDirection.INBOUND, "antes"),
            (10, MessageDirection.INBOUND, "9"),
            (20, MessageDirection.OUTBOUND, "obrigado"),
        ]:
            await backend.add_conversation_message(ConversationMessage(
                conversation_id="c1", direction=direction, content=text,
                created_at=NOW + timedelta(minutes=minutes),
            ))
        latest = await backend.latest_inbound_message("c1", after=NOW + timedelta(minutes=5))
        assert latest.content == "9"
        assert await backend.latest_inbound_message("c1", after=NOW + timedelta(minutes=15)) is None

        await backend.add_rating(SatisfactionRating(id="r_done", tenant_id=TENANT, conversation_id="c1",
                                                    rating=10, created_at=NOW))
        await backend.add_rating(SatisfactionRating(id="r_open", tenant_id=TENANT, conversation_id="c1",
                                                    created_at=NOW + timedelta(minutes=1)))
        assert (await backend.find_open_rating("c1")).id == "r_open"
        await backend.update_rating("r_open", rating=4, is_pending_review=True)
        assert await backend.find_open_rating("c1") is None
        assert [r.rating for r in await backend.list_ratings("c1")] == [10, 4]

    @pytest.mark.asyncio
    async def test_enabled_auto_close_configs(self, backend):
        await backend.upsert_auto_close_config(AutoCloseConfig(tenant_id=TENANT, enabled=True))
        (bare,) = await backend.list_enabled_auto_close_configs()
        assert (bare.bot_minutes, bare.assigned_minutes, bare.business_start) == (None, None, None)
        await backend.upsert_auto_close_config(AutoCloseConfig(tenant_id="off", enabled=False))
        await backend.upsert_auto_close_config(AutoCloseConfig(tenant_id=TENANT, enabled=True,
                                                               bot_minutes=15))
        configs = await backend.list_enabled_auto_close_configs()
        assert [(c.tenant_id, c.bot_minutes) for c in configs] == [(TENANT, 15)]


# ──────────────────────────────────────────────────────────────
#  End to end on SQL
# ──────────────────────────────────────────────────────────────

class TestSqlSweep:
    @pytest_asyncio.fixture
    async def sql_store(self, tmp_path):
        configure_engine(f"sqlite:///{tmp_path / 'sweep.db'}")
        await init_db()
        yield SqlStore()
        await close_db()

    @pytest.mark.asyncio
    async def test_fallback_sweep_persists_resume_point(self, sql_store):
        await sql_store.upsert_lead(Lead(id="lead_1", tenant_id=TENANT, whatsapp="(11) 8765-4321"))
        for i, cid in enumerate(["ch_a", "ch_b"]):
            await sql_store.upsert_channel(Channel(id=cid, tenant_id=TENANT, instance_name=f"inst-{cid}",
                                                   is_connected=True, created_at=NOW + timedelta(minutes=i)))
        msg = scheduled(whatsapp_instance_id="ch_a", fallback_instance_ids=["ch_b"])
        await sql_store.add_scheduled_message(msg)
        transport = ScriptedTransport()
        transport.fail("inst-ch_a", "timeout")

        summary = await ScheduledMessageSweeper(sql_store, transport).run(now=NOW)

        assert summary.sent == 1
        stored = await sql_store.get_scheduled_message(msg.id)
        assert stored.status == MessageStatus.SENT
        assert stored.current_instance_index == 1
        assert stored.whatsapp_instance_id == "ch_b"
        assert stored.sent_at == NOW
        assert transport.calls[-1]["phone"] == "5511987654321"


class TestSession:
    @pytest.mark.parametrize("url, expected", [
        ("postgresql://u:p@db/shop", "postgresql+asyncpg://u:p@db/shop"),
        ("postgres://u:p@db/shop", "postgresql+asyncpg://u:p@db/shop"),
        ("mysql://u:p@db/shop", "mysql+aiomysql://u:p@db/shop"),
        ("mysql+pymysql://u:p@db/shop", "mysql+aiomysql://u:p@db/shop"),
        ("sqlite:///./backoffice.db", "sqlite+aiosqlite:///./backoffice.db"),
        ("sqlite+aiosqlite:///x.db", "sqlite+aiosqlite:///x.db"),
    ])
    def test_async_driver_mapping(self, url, expected):
        assert _to_async_url(url) == expected

    def test_redact_drops_credentials(self):
        assert _redact("postgresql+asyncpg://u:secret@db:5432/shop") == "db:5432/shop"
        assert _redact("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"

    @pytest.mark.asyncio
    async def test_sqlite_enforces_foreign_keys(self, tmp_path):
        configure_engine(f"sqlite:///{tmp_path / 'fk.db'}")
        await init_db()
        store = SqlStore()
        try:
            with pytest.raises(IntegrityError):
                await store.save_checkpoint(SaleCheckpoint(
                    sale_id="ghost", tenant_id=TENANT, checkpoint_type=CheckpointType.PRINTED,
                ))
        finally:
            await close_db()


# ──────────────────────────────────────────────────────────────
#  Store factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def setup_method(self):
        reset_store()

    def teardown_method(self):
        reset_store()

    def test_memory_default(self):
        store = create_store(DatabaseConfig(store_backend="memory"))
        assert isinstance(store, InMemoryStore)
        assert get_store() is store

    @pytest.mark.asyncio
    async def test_sql_backend(self, tmp_path):
        store = create_store(DatabaseConfig(url=f"sqlite:///{tmp_path / 'f.db'}", store_backend="sql"))
        assert isinstance(store, SqlStore)
        await close_db()

    def test_singleton(self):
        first = create_store(DatabaseConfig(store_backend="memory"))
        assert create_store(DatabaseConfig(store_backend="sql")) is first
