"""
InMemoryStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlStore, including the uniqueness
    rules the SQL schema enforces
  - Records are copied on the way in and out, so callers never share state
    with the store
  - All data lost on process restart
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Optional, Sequence, TypeVar

from pydantic import BaseModel

from core.errors import ConflictError
from database.store_base import BaseStore
from models.schemas import (
    AutoCloseConfig, Channel, CheckpointHistoryEntry, CheckpointType,
    Conversation, ConversationMessage, ConversationStatus, Lead, MessageDirection,
    MessageStatus, PickupClosing, PickupClosingSale, Sale, SaleCheckpoint,
    SatisfactionRating, ScheduledMessage,
)

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _copy(record: Optional[M]) -> Optional[M]:
    return record.model_copy(deep=True) if record is not None else None


def _apply(record: M, fields: dict) -> M:
    """Return a validated copy of `record` with `fields` applied."""
    return type(record).model_validate({**record.model_dump(), **fields})


class InMemoryStore(BaseStore):
    """Full-featured in-memory store with the same interface as SqlStore."""

    def __init__(self):
        self._leads: dict[str, Lead] = {}
        self._channels: dict[str, Channel] = {}
        self._messages: dict[str, ScheduledMessage] = {}
        self._sales: dict[str, Sale] = {}
        self._checkpoints: dict[tuple[str, str], SaleCheckpoint] = {}   # (sale_id, type) → row
        self._history: list[CheckpointHistoryEntry] = []
        self._closings: dict[str, PickupClosing] = {}
        self._closing_sales: dict[str, PickupClosingSale] = {}          # sale_id → line item
        self._conversations: dict[str, Conversation] = {}
        self._conversation_messages: list[ConversationMessage] = []
        self._ratings: dict[str, SatisfactionRating] = {}
        self._auto_close: dict[str, AutoCloseConfig] = {}
        logger.info("inmemory_store_initialized")

    # ── Leads ─────────────────────────────────────────────

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        return _copy(self._leads.get(lead_id))

    async def upsert_lead(self, lead: Lead) -> Lead:
        self._leads[lead.id] = _copy(lead)
        return lead

    # ── Channels ──────────────────────────────────────────

    async def get_channel(self, channel_id: str) -> Optional[Channel]:
        return _copy(self._channels.get(channel_id))

    async def upsert_channel(self, channel: Channel) -> Channel:
        self._channels[channel.id] = _copy(channel)
        return channel

    def _tenant_channels(self, tenant_id: str) -> list[Channel]:
        channels = [c for c in self._channels.values() if c.tenant_id == tenant_id]
        channels.sort(key=lambda c: (c.created_at, c.id))
        return channels

    async def list_connected_channels(self, tenant_id: str) -> list[Channel]:
        return [_copy(c) for c in self._tenant_channels(tenant_id) if c.is_eligible]

    async def list_active_channels(self, tenant_id: str) -> list[Channel]:
        return [_copy(c) for c in self._tenant_channels(tenant_id) if c.status == "active"]

    # ── Scheduled messages ────────────────────────────────

    async def add_scheduled_message(self, message: ScheduledMessage) -> ScheduledMessage:
        self._messages[message.id] = _copy(message)
        return message

    async def get_scheduled_message(self, message_id: str) -> Optional[ScheduledMessage]:
        return _copy(self._messages.get(message_id))

    async def update_scheduled_message(self, message_id: str, **fields) -> Optional[ScheduledMessage]:
        current = self._messages.get(message_id)
        if current is None:
            return None
        fields.setdefault("updated_at", _utcnow())
        updated = _apply(current, fields)
        self._messages[message_id] = updated
        return _copy(updated)

    async def list_due_messages(self, now: datetime, limit: int = 50) -> list[ScheduledMessage]:
        due = [
            m for m in self._messages.values()
            if m.status == MessageStatus.PENDING
            and m.deleted_at is None
            and m.scheduled_at <= now
        ]
        due.sort(key=lambda m: m.scheduled_at)
        return [_copy(m) for m in due[:limit]]

    async def list_scheduled_messages(
        self, tenant_id: str, status: Optional[MessageStatus] = None,
        include_deleted: bool = False,
    ) -> list[ScheduledMessage]:
        found = [
            m for m in self._messages.values()
            if m.tenant_id == tenant_id
            and (status is None or m.status == status)
            and (include_deleted or m.deleted_at is None)
        ]
        found.sort(key=lambda m: m.scheduled_at)
        return [_copy(m) for m in found]

    # ── Sales ─────────────────────────────────────────────

    async def get_sale(self, sale_id: str) -> Optional[Sale]:
        return _copy(self._sales.get(sale_id))

    async def upsert_sale(self, sale: Sale) -> Sale:
        self._sales[sale.id] = _copy(sale)
        return sale

    async def update_sale(self, sale_id: str, **fields) -> Optional[Sale]:
        current = self._sales.get(sale_id)
        if current is None:
            return None
        updated = _apply(current, fields)
        self._sales[sale_id] = updated
        return _copy(updated)

    async def list_sales(self, tenant_id: str, delivery_type: Optional[str] = None) -> list[Sale]:
        sales = [
            s for s in self._sales.values()
            if s.tenant_id == tenant_id
            and (delivery_type is None or s.delivery_type == delivery_type)
        ]
        sales.sort(key=lambda s: s.created_at, reverse=True)
        return [_copy(s) for s in sales]

    # ── Checkpoints ───────────────────────────────────────

    async def get_checkpoint(self, sale_id: str, checkpoint_type: CheckpointType) -> Optional[SaleCheckpoint]:
        return _copy(self._checkpoints.get((sale_id, CheckpointType(checkpoint_type).value)))

    async def list_checkpoints(self, sale_id: str) -> list[SaleCheckpoint]:
        return [_copy(c) for (sid, _), c in self._checkpoints.items() if sid == sale_id]

    async def save_checkpoint(self, checkpoint: SaleCheckpoint) -> SaleCheckpoint:
        key = (checkpoint.sale_id, checkpoint.checkpoint_type.value)
        existing = self._checkpoints.get(key)
        if existing is not None and existing.id != checkpoint.id:
            # One row per (sale, type): keep the original id.
            checkpoint = checkpoint.model_copy(update={"id": existing.id})
        self._checkpoints[key] = _copy(checkpoint)
        return checkpoint

    async def add_checkpoint_history(self, entry: CheckpointHistoryEntry) -> CheckpointHistoryEntry:
        self._history.append(entry)
        return entry

    async def list_checkpoint_history(self, sale_id: str) -> list[CheckpointHistoryEntry]:
        entries = [e for e in self._history if e.sale_id == sale_id]
        entries.sort(key=lambda e: e.changed_at)
        return entries

    # ── Pickup closings ───────────────────────────────────

    async def next_closing_number(self, tenant_id: str) -> int:
        numbers = [c.closing_number for c in self._closings.values() if c.tenant_id == tenant_id]
        return max(numbers, default=0) + 1

    async def add_closing(self, closing: PickupClosing) -> PickupClosing:
        for other in self._closings.values():
            if other.tenant_id == closing.tenant_id and other.closing_number == closing.closing_number:
                raise ConflictError(f"Closing number {closing.closing_number} already exists")
        self._closings[closing.id] = _copy(closing)
        return closing

    async def get_closing(self, closing_id: str) -> Optional[PickupClosing]:
        return _copy(self._closings.get(closing_id))

    async def update_closing(self, closing_id: str, **fields) -> Optional[PickupClosing]:
        current = self._closings.get(closing_id)
        if current is None:
            return None
        updated = _apply(current, fields)
        self._closings[closing_id] = updated
        return _copy(updated)

    async def delete_closing(self, closing_id: str) -> None:
        self._closings.pop(closing_id, None)
        for sale_id in [s for s, item in self._closing_sales.items() if item.closing_id == closing_id]:
            del self._closing_sales[sale_id]

    async def list_closings(self, tenant_id: str) -> list[PickupClosing]:
        closings = [c for c in self._closings.values() if c.tenant_id == tenant_id]
        closings.sort(key=lambda c: c.closing_number, reverse=True)
        return [_copy(c) for c in closings]

    async def add_closing_sales(self, items: Sequence[PickupClosingSale]) -> list[PickupClosingSale]:
        seen: set[str] = set()
        for item in items:
            if item.sale_id in self._closing_sales or item.sale_id in seen:
                raise ConflictError(f"Sale '{item.sale_id}' already belongs to a closing")
            seen.add(item.sale_id)
        for item in items:
            self._closing_sales[item.sale_id] = _copy(item)
        return list(items)

    async def list_closing_sales(self, closing_id: str) -> list[PickupClosingSale]:
        items = [i for i in self._closing_sales.values() if i.closing_id == closing_id]
        items.sort(key=lambda i: i.created_at)
        return [_copy(i) for i in items]

    async def list_closed_sale_ids(self, tenant_id: str) -> set[str]:
        return {i.sale_id for i in self._closing_sales.values() if i.tenant_id == tenant_id}

    # ── Conversations ─────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return _copy(self._conversations.get(conversation_id))

    async def upsert_conversation(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = _copy(conversation)
        return conversation

    async def update_conversation(self, conversation_id: str, **fields) -> Optional[Conversation]:
        current = self._conversations.get(conversation_id)
        if current is None:
            return None
        updated = _apply(current, fields)
        self._conversations[conversation_id] = updated
        return _copy(updated)

    async def list_idle_conversations(
        self, instance_id: str, statuses: Sequence[ConversationStatus], before: datetime,
    ) -> list[Conversation]:
        wanted = {ConversationStatus(s) for s in statuses}
        idle = [
            c for c in self._conversations.values()
            if c.instance_id == instance_id
            and c.status in wanted
            and not c.awaiting_satisfaction_response
            and c.last_message_at is not None
            and c.last_message_at < before
        ]
        idle.sort(key=lambda c: c.last_message_at)
        return [_copy(c) for c in idle]

    async def list_awaiting_satisfaction(self) -> list[Conversation]:
        return [_copy(c) for c in self._conversations.values() if c.awaiting_satisfaction_response]

    async def add_conversation_message(self, message: ConversationMessage) -> ConversationMessage:
        self._conversation_messages.append(_copy(message))
        return message

    async def latest_inbound_message(
        self, conversation_id: str, after: Optional[datetime] = None,
    ) -> Optional[ConversationMessage]:
        candidates = [
            m for m in self._conversation_messages
            if m.conversation_id == conversation_id
            and m.direction == MessageDirection.INBOUND
            and (after is None or m.created_at > after)
        ]
        if not candidates:
            return None
        return _copy(max(candidates, key=lambda m: m.created_at))

    # ── Satisfaction ratings ──────────────────────────────

    async def add_rating(self, rating: SatisfactionRating) -> SatisfactionRating:
        self._ratings[rating.id] = _copy(rating)
        return rating

    async def find_open_rating(self, conversation_id: str) -> Optional[SatisfactionRating]:
        open_rows = [
            r for r in self._ratings.values()
            if r.conversation_id == conversation_id and r.rating is None
        ]
        if not open_rows:
            return None
        return _copy(max(open_rows, key=lambda r: r.created_at))

    async def update_rating(self, rating_id: str, **fields) -> Optional[SatisfactionRating]:
        current = self._ratings.get(rating_id)
        if current is None:
            return None
        updated = _apply(current, fields)
        self._ratings[rating_id] = updated
        return _copy(updated)

    async def list_ratings(self, conversation_id: str) -> list[SatisfactionRating]:
        rows = [r for r in self._ratings.values() if r.conversation_id == conversation_id]
        rows.sort(key=lambda r: r.created_at)
        return [_copy(r) for r in rows]

    # ── Auto-close config ─────────────────────────────────

    async def upsert_auto_close_config(self, config: AutoCloseConfig) -> AutoCloseConfig:
        self._auto_close[config.tenant_id] = _copy(config)
        return config

    async def list_enabled_auto_close_configs(self) -> list[AutoCloseConfig]:
        return [_copy(c) for c in self._auto_close.values() if c.enabled]
