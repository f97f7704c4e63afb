"""
SqlStore — Portable SQL persistence for PostgreSQL, MySQL, SQLite.

Each public method runs in its own transactional session. Rows are converted
to the typed records in models/schemas.py on the way out, and every update
goes through record validation before it is written.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError

from core.errors import ConflictError
from database.models import (
    AutoCloseConfigRow, Base, ChannelRow, CheckpointHistoryRow, ConversationMessageRow,
    ConversationRow, LeadRow, PickupClosingRow, PickupClosingSaleRow, SaleCheckpointRow,
    SaleRow, SatisfactionRatingRow, ScheduledMessageRow,
)
from database.session import get_session
from database.store_base import BaseStore
from models.schemas import (
    AutoCloseConfig, Channel, CheckpointHistoryEntry, CheckpointType,
    Conversation, ConversationMessage, ConversationStatus, Lead, MediaAttachment,
    MessageDirection, MessageStatus, PickupClosing, PickupClosingSale, Sale,
    SaleCheckpoint, SatisfactionRating, ScheduledMessage,
)

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _columns(record: BaseModel, exclude: Sequence[str] = ()) -> dict[str, Any]:
    return {k: _plain(v) for k, v in record.model_dump().items() if k not in exclude}


# ── Scheduled message media is flattened into three columns ──

def _message_columns(message: ScheduledMessage) -> dict[str, Any]:
    cols = _columns(message, exclude=("media",))
    media = message.media
    cols["media_type"] = media.type.value if media else None
    cols["media_url"] = media.url if media else None
    cols["media_filename"] = media.filename if media else None
    return cols


def _row_to_message(row: ScheduledMessageRow) -> ScheduledMessage:
    data = {c.key: getattr(row, c.key) for c in ScheduledMessageRow.__table__.columns}
    media_type = data.pop("media_type")
    media_url = data.pop("media_url")
    media_filename = data.pop("media_filename")
    if media_type and media_url:
        data["media"] = MediaAttachment(type=media_type, url=media_url, filename=media_filename)
    return ScheduledMessage.model_validate(data)


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Generic helpers ────────────────────────────────────

    @staticmethod
    async def _get(row_cls: Type[Base], model_cls: Type[M], pk: str) -> Optional[M]:
        async with get_session() as db:
            row = await db.get(row_cls, pk)
            return model_cls.model_validate(row) if row else None

    @staticmethod
    async def _merge(row_cls: Type[Base], record: M) -> M:
        async with get_session() as db:
            await db.merge(row_cls(**_columns(record)))
        return record

    @staticmethod
    async def _update(row_cls: Type[Base], model_cls: Type[M], pk: str, fields: dict) -> Optional[M]:
        async with get_session() as db:
            row = await db.get(row_cls, pk)
            if row is None:
                return None
            current = model_cls.model_validate(row)
            updated = model_cls.model_validate({**current.model_dump(), **fields})
            for key, value in _columns(updated).items():
                setattr(row, key, value)
            return updated

    @staticmethod
    async def _select(stmt, model_cls: Type[M]) -> list[M]:
        async with get_session() as db:
            result = await db.execute(stmt)
            return [model_cls.model_validate(row) for row in result.scalars()]

    # ── Leads ──────────────────────────────────────────────

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        return await self._get(LeadRow, Lead, lead_id)

    async def upsert_lead(self, lead: Lead) -> Lead:
        return await self._merge(LeadRow, lead)

    # ── Channels ───────────────────────────────────────────

    async def get_channel(self, channel_id: str) -> Optional[Channel]:
        return await self._get(ChannelRow, Channel, channel_id)

    async def upsert_channel(self, channel: Channel) -> Channel:
        return await self._merge(ChannelRow, channel)

    async def list_connected_channels(self, tenant_id: str) -> list[Channel]:
        stmt = (
            select(ChannelRow)
            .where(and_(
                ChannelRow.tenant_id == tenant_id,
                ChannelRow.is_connected.is_(True),
                ChannelRow.status == "active",
            ))
            .order_by(ChannelRow.created_at, ChannelRow.id)
        )
        return await self._select(stmt, Channel)

    async def list_active_channels(self, tenant_id: str) -> list[Channel]:
        stmt = (
            select(ChannelRow)
            .where(and_(ChannelRow.tenant_id == tenant_id, ChannelRow.status == "active"))
            .order_by(ChannelRow.created_at, ChannelRow.id)
        )
        return await self._select(stmt, Channel)

    # ── Scheduled messages ─────────────────────────────────

    async def add_scheduled_message(self, message: ScheduledMessage) -> ScheduledMessage:
        async with get_session() as db:
            db.add(ScheduledMessageRow(**_message_columns(message)))
        return message

    async def get_scheduled_message(self, message_id: str) -> Optional[ScheduledMessage]:
        async with get_session() as db:
            row = await db.get(ScheduledMessageRow, message_id)
            return _row_to_message(row) if row else None

    async def update_scheduled_message(self, message_id: str, **fields) -> Optional[ScheduledMessage]:
        async with get_session() as db:
            row = await db.get(ScheduledMessageRow, message_id)
            if row is None:
                return None
            current = _row_to_message(row)
            updated = ScheduledMessage.model_validate({**current.model_dump(), **fields})
            for key, value in _message_columns(updated).items():
                setattr(row, key, value)
            return updated

    async def list_due_messages(self, now: datetime, limit: int = 50) -> list[ScheduledMessage]:
        stmt = (
            select(ScheduledMessageRow)
            .where(and_(
                ScheduledMessageRow.status == MessageStatus.PENDING.value,
                ScheduledMessageRow.deleted_at.is_(None),
                ScheduledMessageRow.scheduled_at <= now,
            ))
            .order_by(ScheduledMessageRow.scheduled_at)
            .limit(limit)
        )
        async with get_session() as db:
            result = await db.execute(stmt)
            return [_row_to_message(row) for row in result.scalars()]

    async def list_scheduled_messages(
        self, tenant_id: str, status: Optional[MessageStatus] = None,
        include_deleted: bool = False,
    ) -> list[ScheduledMessage]:
        conditions = [ScheduledMessageRow.tenant_id == tenant_id]
        if status is not None:
            conditions.append(ScheduledMessageRow.status == MessageStatus(status).value)
        if not include_deleted:
            conditions.append(ScheduledMessageRow.deleted_at.is_(None))
        stmt = select(ScheduledMessageRow).where(and_(*conditions)).order_by(ScheduledMessageRow.scheduled_at)
        async with get_session() as db:
            result = await db.execute(stmt)
            return [_row_to_message(row) for row in result.scalars()]

    # ── Sales ──────────────────────────────────────────────

    async def get_sale(self, sale_id: str) -> Optional[Sale]:
        return await self._get(SaleRow, Sale, sale_id)

    async def upsert_sale(self, sale: Sale) -> Sale:
        return await self._merge(SaleRow, sale)

    async def update_sale(self, sale_id: str, **fields) -> Optional[Sale]:
        return await self._update(SaleRow, Sale, sale_id, fields)

    async def list_sales(self, tenant_id: str, delivery_type: Optional[str] = None) -> list[Sale]:
        conditions = [SaleRow.tenant_id == tenant_id]
        if delivery_type is not None:
            conditions.append(SaleRow.delivery_type == delivery_type)
        stmt = select(SaleRow).where(and_(*conditions)).order_by(SaleRow.created_at.desc())
        return await self._select(stmt, Sale)

    # ── Checkpoints ────────────────────────────────────────

    async def get_checkpoint(self, sale_id: str, checkpoint_type: CheckpointType) -> Optional[SaleCheckpoint]:
        stmt = select(SaleCheckpointRow).where(and_(
            SaleCheckpointRow.sale_id == sale_id,
            SaleCheckpointRow.checkpoint_type == CheckpointType(checkpoint_type).value,
        ))
        rows = await self._select(stmt, SaleCheckpoint)
        return rows[0] if rows else None

    async def list_checkpoints(self, sale_id: str) -> list[SaleCheckpoint]:
        stmt = select(SaleCheckpointRow).where(SaleCheckpointRow.sale_id == sale_id)
        return await self._select(stmt, SaleCheckpoint)

    async def save_checkpoint(self, checkpoint: SaleCheckpoint) -> SaleCheckpoint:
        async with get_session() as db:
            result = await db.execute(select(SaleCheckpointRow).where(and_(
                SaleCheckpointRow.sale_id == checkpoint.sale_id,
                SaleCheckpointRow.checkpoint_type == checkpoint.checkpoint_type.value,
            )))
            row = result.scalar_one_or_none()
            if row is None:
                db.add(SaleCheckpointRow(**_columns(checkpoint)))
                return checkpoint
            for key, value in _columns(checkpoint, exclude=("id",)).items():
                setattr(row, key, value)
            return checkpoint.model_copy(update={"id": row.id})

    async def add_checkpoint_history(self, entry: CheckpointHistoryEntry) -> CheckpointHistoryEntry:
        async with get_session() as db:
            db.add(CheckpointHistoryRow(**_columns(entry)))
        return entry

    async def list_checkpoint_history(self, sale_id: str) -> list[CheckpointHistoryEntry]:
        stmt = (
            select(CheckpointHistoryRow)
            .where(CheckpointHistoryRow.sale_id == sale_id)
            .order_by(CheckpointHistoryRow.changed_at)
        )
        return await self._select(stmt, CheckpointHistoryEntry)

    # ── Pickup closings ────────────────────────────────────

    async def next_closing_number(self, tenant_id: str) -> int:
        async with get_session() as db:
            result = await db.execute(
                select(func.max(PickupClosingRow.closing_number))
                .where(PickupClosingRow.tenant_id == tenant_id)
            )
            return (result.scalar() or 0) + 1

    async def add_closing(self, closing: PickupClosing) -> PickupClosing:
        try:
            async with get_session() as db:
                db.add(PickupClosingRow(**_columns(closing)))
        except IntegrityError as e:
            raise ConflictError(f"Closing number {closing.closing_number} already exists") from e
        return closing

    async def get_closing(self, closing_id: str) -> Optional[PickupClosing]:
        return await self._get(PickupClosingRow, PickupClosing, closing_id)

    async def update_closing(self, closing_id: str, **fields) -> Optional[PickupClosing]:
        return await self._update(PickupClosingRow, PickupClosing, closing_id, fields)

    async def delete_closing(self, closing_id: str) -> None:
        async with get_session() as db:
            result = await db.execute(
                select(PickupClosingSaleRow).where(PickupClosingSaleRow.closing_id == closing_id)
            )
            for item in result.scalars():
                await db.delete(item)
            await db.flush()
            row = await db.get(PickupClosingRow, closing_id)
            if row is not None:
                await db.delete(row)

    async def list_closings(self, tenant_id: str) -> list[PickupClosing]:
        stmt = (
            select(PickupClosingRow)
            .where(PickupClosingRow.tenant_id == tenant_id)
            .order_by(PickupClosingRow.closing_number.desc())
        )
        return await self._select(stmt, PickupClosing)

    async def add_closing_sales(self, items: Sequence[PickupClosingSale]) -> list[PickupClosingSale]:
        try:
            async with get_session() as db:
                db.add_all([PickupClosingSaleRow(**_columns(item)) for item in items])
        except IntegrityError as e:
            logger.warning("closing_sales_conflict", error=str(e.orig))
            raise ConflictError("One or more sales already belong to a closing") from e
        return list(items)

    async def list_closing_sales(self, closing_id: str) -> list[PickupClosingSale]:
        stmt = (
            select(PickupClosingSaleRow)
            .where(PickupClosingSaleRow.closing_id == closing_id)
            .order_by(PickupClosingSaleRow.created_at)
        )
        return await self._select(stmt, PickupClosingSale)

    async def list_closed_sale_ids(self, tenant_id: str) -> set[str]:
        async with get_session() as db:
            result = await db.execute(
                select(PickupClosingSaleRow.sale_id).where(PickupClosingSaleRow.tenant_id == tenant_id)
            )
            return set(result.scalars())

    # ── Conversations ──────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return await self._get(ConversationRow, Conversation, conversation_id)

    async def upsert_conversation(self, conversation: Conversation) -> Conversation:
        return await self._merge(ConversationRow, conversation)

    async def update_conversation(self, conversation_id: str, **fields) -> Optional[Conversation]:
        return await self._update(ConversationRow, Conversation, conversation_id, fields)

    async def list_idle_conversations(
        self, instance_id: str, statuses: Sequence[ConversationStatus], before: datetime,
    ) -> list[Conversation]:
        stmt = (
            select(ConversationRow)
            .where(and_(
                ConversationRow.instance_id == instance_id,
                ConversationRow.status.in_([ConversationStatus(s).value for s in statuses]),
                ConversationRow.awaiting_satisfaction_response.is_(False),
                ConversationRow.last_message_at < before,
            ))
            .order_by(ConversationRow.last_message_at)
        )
        return await self._select(stmt, Conversation)

    async def list_awaiting_satisfaction(self) -> list[Conversation]:
        stmt = select(ConversationRow).where(ConversationRow.awaiting_satisfaction_response.is_(True))
        return await self._select(stmt, Conversation)

    async def add_conversation_message(self, message: ConversationMessage) -> ConversationMessage:
        async with get_session() as db:
            db.add(ConversationMessageRow(**_columns(message)))
        return message

    async def latest_inbound_message(
        self, conversation_id: str, after: Optional[datetime] = None,
    ) -> Optional[ConversationMessage]:
        conditions = [
            ConversationMessageRow.conversation_id == conversation_id,
            ConversationMessageRow.direction == MessageDirection.INBOUND.value,
        ]
        if after is not None:
            conditions.append(ConversationMessageRow.created_at > after)
        stmt = (
            select(ConversationMessageRow)
            .where(and_(*conditions))
            .order_by(ConversationMessageRow.created_at.desc())
            .limit(1)
        )
        rows = await self._select(stmt, ConversationMessage)
        return rows[0] if rows else None

    # ── Satisfaction ratings ───────────────────────────────

    async def add_rating(self, rating: SatisfactionRating) -> SatisfactionRating:
        async with get_session() as db:
            db.add(SatisfactionRatingRow(**_columns(rating)))
        return rating

    async def find_open_rating(self, conversation_id: str) -> Optional[SatisfactionRating]:
        stmt = (
            select(SatisfactionRatingRow)
            .where(and_(
                SatisfactionRatingRow.conversation_id == conversation_id,
                SatisfactionRatingRow.rating.is_(None),
            ))
            .order_by(SatisfactionRatingRow.created_at.desc())
            .limit(1)
        )
        rows = await self._select(stmt, SatisfactionRating)
        return rows[0] if rows else None

    async def update_rating(self, rating_id: str, **fields) -> Optional[SatisfactionRating]:
        return await self._update(SatisfactionRatingRow, SatisfactionRating, rating_id, fields)

    async def list_ratings(self, conversation_id: str) -> list[SatisfactionRating]:
        stmt = (
            select(SatisfactionRatingRow)
            .where(SatisfactionRatingRow.conversation_id == conversation_id)
            .order_by(SatisfactionRatingRow.created_at)
        )
        return await self._select(stmt, SatisfactionRating)

    # ── Auto-close config ──────────────────────────────────

    async def upsert_auto_close_config(self, config: AutoCloseConfig) -> AutoCloseConfig:
        return await self._merge(AutoCloseConfigRow, config)

    async def list_enabled_auto_close_configs(self) -> list[AutoCloseConfig]:
        stmt = select(AutoCloseConfigRow).where(AutoCloseConfigRow.enabled.is_(True))
        return await self._select(stmt, AutoCloseConfig)
