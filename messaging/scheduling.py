"""
Scheduled message management — the user-facing actions around the sweeper.

Editing actions (cancel, reschedule, update) only apply to pending messages;
retrying puts failed messages back in the queue with a fresh attempt budget.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from config.settings import SweeperConfig
from core.errors import InvalidTransitionError, NotFoundError
from database.store_base import BaseStore
from models.schemas import MediaAttachment, MessageStatus, ScheduledMessage

logger = structlog.get_logger()

DEFAULT_CANCEL_REASON = "Cancelado pelo usuário"


class ScheduledMessageService:

    def __init__(self, store: BaseStore, config: Optional[SweeperConfig] = None):
        self.store = store
        self.config = config or SweeperConfig()

    async def schedule(
        self,
        tenant_id: str,
        lead_id: str,
        final_message: str,
        scheduled_at: datetime,
        whatsapp_instance_id: Optional[str] = None,
        fallback_instance_ids: Optional[list[str]] = None,
        media: Optional[MediaAttachment] = None,
        max_attempts: Optional[int] = None,
    ) -> ScheduledMessage:
        if await self.store.get_lead(lead_id) is None:
            raise NotFoundError("Lead", lead_id)
        message = ScheduledMessage(
            tenant_id=tenant_id,
            lead_id=lead_id,
            final_message=final_message,
            scheduled_at=scheduled_at,
            whatsapp_instance_id=whatsapp_instance_id,
            fallback_instance_ids=fallback_instance_ids or [],
            media=media,
            max_attempts=max_attempts or self.config.default_max_attempts,
        )
        await self.store.add_scheduled_message(message)
        logger.info("scheduled_message_created", message_id=message.id,
                    lead_id=lead_id, scheduled_at=message.scheduled_at.isoformat())
        return message

    async def get(self, message_id: str) -> ScheduledMessage:
        message = await self.store.get_scheduled_message(message_id)
        if message is None or message.is_deleted:
            raise NotFoundError("ScheduledMessage", message_id)
        return message

    async def list_messages(self, tenant_id: str, status: Optional[MessageStatus] = None) -> list[ScheduledMessage]:
        return await self.store.list_scheduled_messages(tenant_id, status=status)

    async def _get_pending(self, message_id: str) -> ScheduledMessage:
        message = await self.get(message_id)
        if message.status != MessageStatus.PENDING:
            raise InvalidTransitionError(
                f"Message '{message_id}' is {message.status.value}; only pending messages can be changed",
                current=message.status.value,
            )
        return message

    async def cancel(self, message_id: str, reason: Optional[str] = None,
                     now: Optional[datetime] = None) -> ScheduledMessage:
        await self._get_pending(message_id)
        updated = await self.store.update_scheduled_message(
            message_id,
            status=MessageStatus.CANCELLED,
            cancelled_at=now or datetime.now(timezone.utc),
            cancel_reason=reason or DEFAULT_CANCEL_REASON,
        )
        logger.info("scheduled_message_cancelled", message_id=message_id)
        return updated

    async def reschedule(self, message_id: str, scheduled_at: datetime) -> ScheduledMessage:
        await self._get_pending(message_id)
        return await self.store.update_scheduled_message(message_id, scheduled_at=scheduled_at)

    async def update(
        self, message_id: str,
        final_message: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> ScheduledMessage:
        message = await self._get_pending(message_id)
        fields = {}
        if final_message is not None:
            fields["final_message"] = final_message
        if scheduled_at is not None:
            fields["scheduled_at"] = scheduled_at
        if not fields:
            return message
        return await self.store.update_scheduled_message(message_id, **fields)

    async def retry_failed(
        self, message_ids: Iterable[str],
        new_instance_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> list[ScheduledMessage]:
        """Put failed messages back in the queue a minute from now with a fresh attempt budget."""
        if new_instance_id:
            await self._require_channel(new_instance_id)
        now = now or datetime.now(timezone.utc)
        retry_at = now + timedelta(minutes=self.config.manual_retry_delay_minutes)

        fields = dict(
            status=MessageStatus.PENDING,
            scheduled_at=retry_at,
            failure_reason=None,
            attempt_count=0,
            current_instance_index=0,
        )
        if new_instance_id:
            fields["whatsapp_instance_id"] = new_instance_id

        retried = []
        for message_id in message_ids:
            message = await self.store.get_scheduled_message(message_id)
            if message is None or message.is_deleted:
                logger.warning("retry_message_not_found", message_id=message_id)
                continue
            if message.status != MessageStatus.FAILED_OTHER:
                logger.warning("retry_message_not_failed", message_id=message_id,
                               status=message.status.value)
                continue
            retried.append(await self.store.update_scheduled_message(message_id, **fields))

        logger.info("scheduled_messages_retried", count=len(retried),
                    new_instance_id=new_instance_id)
        return retried

    async def change_instance(self, message_ids: Iterable[str], instance_id: str) -> int:
        await self._require_channel(instance_id)
        changed = 0
        for message_id in message_ids:
            if await self.store.update_scheduled_message(message_id, whatsapp_instance_id=instance_id):
                changed += 1
        logger.info("scheduled_messages_instance_changed", count=changed, instance_id=instance_id)
        return changed

    async def soft_delete(self, message_id: str, now: Optional[datetime] = None) -> ScheduledMessage:
        await self.get(message_id)
        updated = await self.store.update_scheduled_message(
            message_id, deleted_at=now or datetime.now(timezone.utc),
        )
        logger.info("scheduled_message_deleted", message_id=message_id)
        return updated

    async def _require_channel(self, channel_id: str) -> None:
        if await self.store.get_channel(channel_id) is None:
            raise NotFoundError("Channel", channel_id)
