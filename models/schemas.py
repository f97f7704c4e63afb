"""
Core data models for the back-office sweepers.
These are the typed records shared across messaging, sales and conversations.
"""
from __future__ import annotations

import re
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _as_utc(value: Any) -> Any:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return value


class Record(BaseModel):
    """Base for persisted records: attribute loading and UTC datetimes."""

    model_config = ConfigDict(from_attributes=True, validate_assignment=True)

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_datetimes(cls, value: Any) -> Any:
        return _as_utc(value)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED_OTHER = "failed_other"
    CANCELLED = "cancelled"


class MediaType(str, Enum):
    IMAGE = "image"
    AUDIO = "audio"
    DOCUMENT = "document"


class SaleStatus(str, Enum):
    DRAFT = "draft"
    PENDING_EXPEDITION = "pending_expedition"
    DISPATCHED = "dispatched"
    DELIVERED = "delivered"
    PAYMENT_CONFIRMED = "payment_confirmed"
    CLOSED = "closed"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class CheckpointType(str, Enum):
    PRINTED = "printed"
    PENDING_EXPEDITION = "pending_expedition"
    DISPATCHED = "dispatched"
    DELIVERED = "delivered"
    PAYMENT_CONFIRMED = "payment_confirmed"


class CheckpointAction(str, Enum):
    COMPLETED = "completed"
    UNCOMPLETED = "uncompleted"


class ClosingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED_AUXILIAR = "confirmed_auxiliar"
    CONFIRMED_FINAL = "confirmed_final"


class ConversationStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    WITH_BOT = "with_bot"
    CLOSED = "closed"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


# ──────────────────────────────────────────────────────────────
#  Leads & channels
# ──────────────────────────────────────────────────────────────

class Lead(Record):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    name: str = ""
    whatsapp: str = ""                        # raw, as typed by the seller


class Channel(Record):
    """A WhatsApp instance a tenant can send from."""
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    name: str = ""
    instance_name: str                        # identifier used by the transport
    is_connected: bool = False
    status: str = "active"
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_eligible(self) -> bool:
        return self.is_connected and self.status == "active"


# ──────────────────────────────────────────────────────────────
#  Scheduled messages
# ──────────────────────────────────────────────────────────────

class MediaAttachment(BaseModel):
    type: MediaType
    url: str
    filename: Optional[str] = None


class ScheduledMessage(Record):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    lead_id: str
    whatsapp_instance_id: Optional[str] = None
    fallback_instance_ids: list[str] = Field(default_factory=list)
    attempt_count: int = Field(default=0, ge=0)
    current_instance_index: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    final_message: str = ""
    scheduled_at: datetime
    status: MessageStatus = MessageStatus.PENDING
    media: Optional[MediaAttachment] = None
    failure_reason: Optional[str] = None
    sent_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    deleted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("fallback_instance_ids", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


# ──────────────────────────────────────────────────────────────
#  Sales & checkpoints
# ──────────────────────────────────────────────────────────────

# Never overwritten by checkpoint derivation and never toggled.
TERMINAL_SALE_STATUSES = (SaleStatus.CANCELLED, SaleStatus.RETURNED)


class Sale(Record):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    status: SaleStatus = SaleStatus.DRAFT
    delivery_type: str = "pickup"
    total_cents: Optional[int] = None
    payment_method: Optional[str] = None
    romaneio_number: Optional[int] = None
    lead_name: Optional[str] = None

    printed_at: Optional[datetime] = None
    printed_by: Optional[str] = None
    expedition_validated_at: Optional[datetime] = None
    expedition_validated_by: Optional[str] = None
    dispatched_at: Optional[datetime] = None
    dispatched_by: Optional[str] = None
    delivered_at: Optional[datetime] = None
    delivered_by: Optional[str] = None
    payment_confirmed_at: Optional[datetime] = None
    payment_confirmed_by: Optional[str] = None

    delivery_status: Optional[str] = None
    closed_at: Optional[datetime] = None
    closed_by: Optional[str] = None
    finalized_at: Optional[datetime] = None
    finalized_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SALE_STATUSES


class SaleCheckpoint(Record):
    id: str = Field(default_factory=_new_id)
    sale_id: str
    tenant_id: str
    checkpoint_type: CheckpointType
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None


class CheckpointHistoryEntry(Record):
    """Immutable log of a single checkpoint toggle."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str = Field(default_factory=_new_id)
    checkpoint_id: str
    sale_id: str
    tenant_id: str
    checkpoint_type: CheckpointType
    action: CheckpointAction
    changed_by: Optional[str] = None
    changed_at: datetime = Field(default_factory=_utcnow)
    notes: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Pickup closings
# ──────────────────────────────────────────────────────────────

class PickupClosing(Record):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    closing_number: int = Field(default=1, ge=1)
    closing_date: date
    total_sales: int = Field(default=0, ge=0)
    total_amount_cents: int = 0
    total_card_cents: int = 0
    total_pix_cents: int = 0
    total_cash_cents: int = 0
    total_other_cents: int = 0
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    confirmed_by_auxiliar: Optional[str] = None
    confirmed_at_auxiliar: Optional[datetime] = None
    confirmed_by_admin: Optional[str] = None
    confirmed_at_admin: Optional[datetime] = None
    status: ClosingStatus = ClosingStatus.PENDING
    notes: Optional[str] = None


class PickupClosingSale(Record):
    id: str = Field(default_factory=_new_id)
    closing_id: str
    sale_id: str
    tenant_id: str
    sale_number: Optional[str] = None
    lead_name: Optional[str] = None
    total_cents: Optional[int] = None
    payment_method: Optional[str] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Conversations & satisfaction
# ──────────────────────────────────────────────────────────────

class Conversation(Record):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    instance_id: str
    lead_id: Optional[str] = None
    assigned_user_id: Optional[str] = None
    phone: str = ""                           # chat id / sendable number
    status: ConversationStatus = ConversationStatus.PENDING
    last_message_at: Optional[datetime] = None
    awaiting_satisfaction_response: bool = False
    satisfaction_sent_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None


class ConversationMessage(Record):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    direction: MessageDirection
    content: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


class SatisfactionRating(Record):
    id: str = Field(default_factory=_new_id)
    tenant_id: str
    conversation_id: str
    instance_id: Optional[str] = None
    assigned_user_id: Optional[str] = None
    lead_id: Optional[str] = None
    rating: Optional[int] = Field(default=None, ge=0, le=10)
    raw_response: Optional[str] = None
    is_pending_review: bool = False
    responded_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)


_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class AutoCloseConfig(Record):
    """Per-tenant auto-close settings. Read by the sweeper, owned elsewhere."""
    tenant_id: str
    enabled: bool = False
    # None falls back to the deployment-wide auto_close defaults
    bot_minutes: Optional[int] = Field(default=None, ge=1)
    assigned_minutes: Optional[int] = Field(default=None, ge=1)
    only_business_hours: bool = False
    business_start: Optional[str] = None
    business_end: Optional[str] = None
    send_closing_message: bool = False
    closing_message: str = ""
    survey_enabled: bool = False
    survey_message: str = ""

    @field_validator("business_start", "business_end")
    @classmethod
    def _check_hhmm(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _HHMM.match(value):
            raise ValueError(f"expected HH:MM, got {value!r}")
        return value

    @property
    def has_closing_message(self) -> bool:
        return self.send_closing_message and bool(self.closing_message.strip())

    @property
    def has_survey(self) -> bool:
        return self.survey_enabled and bool(self.survey_message.strip())


# ──────────────────────────────────────────────────────────────
#  Sweep summaries
# ──────────────────────────────────────────────────────────────

class SweepSummary(BaseModel):
    success: bool = True
    processed: int = 0
    sent: int = 0
    failed: int = 0
    rescheduled: int = 0


class AutoCloseSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    closed: int = 0
    surveys_sent: int = Field(default=0, serialization_alias="surveysSent")
    ratings_processed: int = Field(default=0, serialization_alias="ratingsProcessed")
    timestamp: datetime = Field(default_factory=_utcnow)
