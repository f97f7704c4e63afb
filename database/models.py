"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

  - JSON type for list-valued columns (jsonb on PG, native JSON on MySQL,
    TEXT on SQLite).
  - String primary keys (uuid hex) — no database-specific sequences.
  - Uniqueness that the business rules depend on lives in the schema:
    one checkpoint row per (sale, type), one closing line item per sale.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Index, Integer, JSON, String, Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Leads & channels
# ──────────────────────────────────────────────────────────────

class LeadRow(Base):
    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    whatsapp: Mapped[str] = mapped_column(String(64), default="")


class ChannelRow(Base):
    __tablename__ = "whatsapp_instances"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    instance_name: Mapped[str] = mapped_column(String(256))
    is_connected: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(32), default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Scheduled messages
# ──────────────────────────────────────────────────────────────

class ScheduledMessageRow(Base):
    __tablename__ = "scheduled_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    lead_id: Mapped[str] = mapped_column(String(64))
    whatsapp_instance_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    fallback_instance_ids: Mapped[Any] = mapped_column(JSON, default=list)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    current_instance_index: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    final_message: Mapped[str] = mapped_column(Text, default="")
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[str] = mapped_column(String(32), default="pending")

    media_type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    media_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media_filename: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_scheduled_due", "status", "scheduled_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Sales & checkpoints
# ──────────────────────────────────────────────────────────────

class SaleRow(Base):
    __tablename__ = "sales"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(32), default="draft")
    delivery_type: Mapped[str] = mapped_column(String(32), default="pickup")
    total_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    romaneio_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    lead_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    printed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    printed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    expedition_validated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expedition_validated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    dispatched_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payment_confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_confirmed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    delivery_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finalized_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class SaleCheckpointRow(Base):
    __tablename__ = "sale_checkpoints"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    sale_id: Mapped[str] = mapped_column(String(64), ForeignKey("sales.id"), index=True)
    tenant_id: Mapped[str] = mapped_column(String(64))
    checkpoint_type: Mapped[str] = mapped_column(String(32))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("sale_id", "checkpoint_type", name="uq_sale_checkpoint_type"),
    )


class CheckpointHistoryRow(Base):
    __tablename__ = "sale_checkpoint_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    checkpoint_id: Mapped[str] = mapped_column(String(64), ForeignKey("sale_checkpoints.id"))
    sale_id: Mapped[str] = mapped_column(String(64), index=True)
    tenant_id: Mapped[str] = mapped_column(String(64))
    checkpoint_type: Mapped[str] = mapped_column(String(32))
    action: Mapped[str] = mapped_column(String(16))
    changed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


# ──────────────────────────────────────────────────────────────
#  Pickup closings
# ──────────────────────────────────────────────────────────────

class PickupClosingRow(Base):
    __tablename__ = "pickup_point_closings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    closing_number: Mapped[int] = mapped_column(Integer)
    closing_date: Mapped[date] = mapped_column(Date)
    total_sales: Mapped[int] = mapped_column(Integer, default=0)
    total_amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    total_card_cents: Mapped[int] = mapped_column(Integer, default=0)
    total_pix_cents: Mapped[int] = mapped_column(Integer, default=0)
    total_cash_cents: Mapped[int] = mapped_column(Integer, default=0)
    total_other_cents: Mapped[int] = mapped_column(Integer, default=0)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    confirmed_by_auxiliar: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    confirmed_at_auxiliar: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_by_admin: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    confirmed_at_admin: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="pending")
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "closing_number", name="uq_closing_number"),
    )


class PickupClosingSaleRow(Base):
    __tablename__ = "pickup_point_closing_sales"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    closing_id: Mapped[str] = mapped_column(String(64), ForeignKey("pickup_point_closings.id"), index=True)
    sale_id: Mapped[str] = mapped_column(String(64), unique=True)
    tenant_id: Mapped[str] = mapped_column(String(64))
    sale_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lead_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    total_cents: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    payment_method: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Conversations & satisfaction
# ──────────────────────────────────────────────────────────────

class ConversationRow(Base):
    __tablename__ = "whatsapp_conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    instance_id: Mapped[str] = mapped_column(String(64), index=True)
    lead_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    assigned_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    phone: Mapped[str] = mapped_column(String(64), default="")
    status: Mapped[str] = mapped_column(String(32), default="pending")
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    awaiting_satisfaction_response: Mapped[bool] = mapped_column(Boolean, default=False)
    satisfaction_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_conversations_idle", "instance_id", "status", "last_message_at"),
    )


class ConversationMessageRow(Base):
    __tablename__ = "whatsapp_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(String(64), ForeignKey("whatsapp_conversations.id"), index=True)
    direction: Mapped[str] = mapped_column(String(16))
    content: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class SatisfactionRatingRow(Base):
    __tablename__ = "conversation_satisfaction_ratings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), index=True)
    conversation_id: Mapped[str] = mapped_column(String(64), index=True)
    instance_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    assigned_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    lead_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    raw_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_pending_review: Mapped[bool] = mapped_column(Boolean, default=False)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class AutoCloseConfigRow(Base):
    __tablename__ = "conversation_auto_close_config"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    bot_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    assigned_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    only_business_hours: Mapped[bool] = mapped_column(Boolean, default=False)
    business_start: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    business_end: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    send_closing_message: Mapped[bool] = mapped_column(Boolean, default=False)
    closing_message: Mapped[str] = mapped_column(Text, default="")
    survey_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    survey_message: Mapped[str] = mapped_column(Text, default="")
