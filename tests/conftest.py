"""Shared test fixtures for the back-office sweepers."""
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from typing import Optional

from database.store_memory import InMemoryStore
from models.schemas import Channel, Lead, Sale, ScheduledMessage

from tests.fakes import NOW, TENANT, ScriptedTransport


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest_asyncio.fixture
async def channels(store) -> dict[str, Channel]:
    """Three connected, active instances plus one disconnected, created in order a, b, c, d."""
    base = NOW - timedelta(days=30)
    specs = [
        ("ch_a", "inst-a", True),
        ("ch_b", "inst-b", True),
        ("ch_c", "inst-c", True),
        ("ch_off", "inst-off", False),
    ]
    created = {}
    for offset, (cid, name, connected) in enumerate(specs):
        channel = Channel(id=cid, tenant_id=TENANT, name=name, instance_name=name,
                          is_connected=connected, created_at=base + timedelta(minutes=offset))
        await store.upsert_channel(channel)
        created[cid] = channel
    return created


@pytest_asyncio.fixture
async def lead(store) -> Lead:
    lead = Lead(id="lead_1", tenant_id=TENANT, name="Maria Souza", whatsapp="(11) 98765-4321")
    await store.upsert_lead(lead)
    return lead


@pytest.fixture
def make_message(store, lead):
    async def _make(
        primary: Optional[str] = "ch_a",
        fallbacks: Optional[list[str]] = None,
        scheduled_at: Optional[datetime] = None,
        **fields,
    ) -> ScheduledMessage:
        message = ScheduledMessage(
            tenant_id=TENANT,
            lead_id=fields.pop("lead_id", lead.id),
            whatsapp_instance_id=primary,
            fallback_instance_ids=fallbacks or [],
            final_message=fields.pop("final_message", "Olá Maria, seu pedido chegou!"),
            scheduled_at=scheduled_at or NOW - timedelta(minutes=1),
            **fields,
        )
        await store.add_scheduled_message(message)
        return message
    return _make


@pytest.fixture
def make_sale(store):
    async def _make(sale_id: str, **fields) -> Sale:
        fields.setdefault("tenant_id", TENANT)
        sale = Sale(id=sale_id, **fields)
        await store.upsert_sale(sale)
        return sale
    return _make
