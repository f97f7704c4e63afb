"""
Abstract Store — Interface for all storage backends.

Implementations:
  - SqlStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStore (dict-based, single-process, no persistence)

Every method returns typed records from models/schemas.py. `update_*`
methods take the changed fields as keyword arguments and return the updated
record, or None when the id does not exist.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Sequence

from models.schemas import (
    AutoCloseConfig, Channel, CheckpointHistoryEntry, CheckpointType,
    Conversation, ConversationMessage, ConversationStatus, Lead, MessageStatus,
    PickupClosing, PickupClosingSale, Sale, SaleCheckpoint, SatisfactionRating,
    ScheduledMessage,
)


class BaseStore(ABC):
    """Interface that all store backends must implement."""

    # ── Leads ─────────────────────────────────────────────────

    @abstractmethod
    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        ...

    @abstractmethod
    async def upsert_lead(self, lead: Lead) -> Lead:
        ...

    # ── Channels ──────────────────────────────────────────────

    @abstractmethod
    async def get_channel(self, channel_id: str) -> Optional[Channel]:
        ...

    @abstractmethod
    async def upsert_channel(self, channel: Channel) -> Channel:
        ...

    @abstractmethod
    async def list_connected_channels(self, tenant_id: str) -> list[Channel]:
        """Connected and active channels, oldest first (stable order)."""
        ...

    @abstractmethod
    async def list_active_channels(self, tenant_id: str) -> list[Channel]:
        ...

    # ── Scheduled messages ────────────────────────────────────

    @abstractmethod
    async def add_scheduled_message(self, message: ScheduledMessage) -> ScheduledMessage:
        ...

    @abstractmethod
    async def get_scheduled_message(self, message_id: str) -> Optional[ScheduledMessage]:
        ...

    @abstractmethod
    async def update_scheduled_message(self, message_id: str, **fields) -> Optional[ScheduledMessage]:
        ...

    @abstractmethod
    async def list_due_messages(self, now: datetime, limit: int = 50) -> list[ScheduledMessage]:
        """Pending, not soft-deleted, scheduled_at <= now, oldest due first."""
        ...

    @abstractmethod
    async def list_scheduled_messages(
        self, tenant_id: str, status: Optional[MessageStatus] = None,
        include_deleted: bool = False,
    ) -> list[ScheduledMessage]:
        ...

    # ── Sales ─────────────────────────────────────────────────

    @abstractmethod
    async def get_sale(self, sale_id: str) -> Optional[Sale]:
        ...

    @abstractmethod
    async def upsert_sale(self, sale: Sale) -> Sale:
        ...

    @abstractmethod
    async def update_sale(self, sale_id: str, **fields) -> Optional[Sale]:
        ...

    @abstractmethod
    async def list_sales(self, tenant_id: str, delivery_type: Optional[str] = None) -> list[Sale]:
        """Newest first."""
        ...

    # ── Checkpoints ───────────────────────────────────────────

    @abstractmethod
    async def get_checkpoint(self, sale_id: str, checkpoint_type: CheckpointType) -> Optional[SaleCheckpoint]:
        ...

    @abstractmethod
    async def list_checkpoints(self, sale_id: str) -> list[SaleCheckpoint]:
        ...

    @abstractmethod
    async def save_checkpoint(self, checkpoint: SaleCheckpoint) -> SaleCheckpoint:
        """Insert or update the single row for (sale_id, checkpoint_type)."""
        ...

    @abstractmethod
    async def add_checkpoint_history(self, entry: CheckpointHistoryEntry) -> CheckpointHistoryEntry:
        ...

    @abstractmethod
    async def list_checkpoint_history(self, sale_id: str) -> list[CheckpointHistoryEntry]:
        """Oldest first."""
        ...

    # ── Pickup closings ───────────────────────────────────────

    @abstractmethod
    async def next_closing_number(self, tenant_id: str) -> int:
        ...

    @abstractmethod
    async def add_closing(self, closing: PickupClosing) -> PickupClosing:
        ...

    @abstractmethod
    async def get_closing(self, closing_id: str) -> Optional[PickupClosing]:
        ...

    @abstractmethod
    async def update_closing(self, closing_id: str, **fields) -> Optional[PickupClosing]:
        ...

    @abstractmethod
    async def delete_closing(self, closing_id: str) -> None:
        ...

    @abstractmethod
    async def list_closings(self, tenant_id: str) -> list[PickupClosing]:
        """Newest (highest closing number) first."""
        ...

    @abstractmethod
    async def add_closing_sales(self, items: Sequence[PickupClosingSale]) -> list[PickupClosingSale]:
        """
        Insert all line items or none.

        Raises:
            ConflictError: If any sale already belongs to a closing.
        """
        ...

    @abstractmethod
    async def list_closing_sales(self, closing_id: str) -> list[PickupClosingSale]:
        ...

    @abstractmethod
    async def list_closed_sale_ids(self, tenant_id: str) -> set[str]:
        ...

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def upsert_conversation(self, conversation: Conversation) -> Conversation:
        ...

    @abstractmethod
    async def update_conversation(self, conversation_id: str, **fields) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def list_idle_conversations(
        self, instance_id: str, statuses: Sequence[ConversationStatus], before: datetime,
    ) -> list[Conversation]:
        """Not awaiting a survey reply, last_message_at < before."""
        ...

    @abstractmethod
    async def list_awaiting_satisfaction(self) -> list[Conversation]:
        ...

    @abstractmethod
    async def add_conversation_message(self, message: ConversationMessage) -> ConversationMessage:
        ...

    @abstractmethod
    async def latest_inbound_message(
        self, conversation_id: str, after: Optional[datetime] = None,
    ) -> Optional[ConversationMessage]:
        ...

    # ── Satisfaction ratings ──────────────────────────────────

    @abstractmethod
    async def add_rating(self, rating: SatisfactionRating) -> SatisfactionRating:
        ...

    @abstractmethod
    async def find_open_rating(self, conversation_id: str) -> Optional[SatisfactionRating]:
        """Most recent row for the conversation that still has no rating."""
        ...

    @abstractmethod
    async def update_rating(self, rating_id: str, **fields) -> Optional[SatisfactionRating]:
        ...

    @abstractmethod
    async def list_ratings(self, conversation_id: str) -> list[SatisfactionRating]:
        ...

    # ── Auto-close config ─────────────────────────────────────

    @abstractmethod
    async def upsert_auto_close_config(self, config: AutoCloseConfig) -> AutoCloseConfig:
        ...

    @abstractmethod
    async def list_enabled_auto_close_configs(self) -> list[AutoCloseConfig]:
        ...
