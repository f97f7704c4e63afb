"""
Scheduled Message Sweeper — one batch run over due WhatsApp messages.

Invoked by an external scheduler. Each run:
  - selects up to batch_size pending, non-deleted messages that are due
  - counts the attempt before sending, so repeated transient failures
    eventually hit the ceiling
  - hands delivery to the fallback engine
  - reschedules transient failures a fixed delay into the future

Per-message failures are recorded on the message and never abort the run.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional

from channels.base import OutboundTransport
from config.settings import SweeperConfig
from core.errors import TransportNotConfiguredError
from database.store_base import BaseStore
from messaging.fallback import DeliveryFallbackEngine
from models.schemas import MessageStatus, ScheduledMessage, SweepSummary
from utils.phone import normalize_whatsapp

logger = structlog.get_logger()

LEAD_NOT_FOUND = "Lead não encontrado"
INVALID_PHONE = "Telefone inválido"
MAX_ATTEMPTS_EXCEEDED = "Número máximo de tentativas excedido"

SENT = "sent"
FAILED = "failed"
RESCHEDULED = "rescheduled"


class ScheduledMessageSweeper:

    def __init__(
        self,
        store: BaseStore,
        transport: OutboundTransport,
        config: Optional[SweeperConfig] = None,
        engine: Optional[DeliveryFallbackEngine] = None,
    ):
        self.store = store
        self.transport = transport
        self.config = config or SweeperConfig()
        self.engine = engine or DeliveryFallbackEngine(store, transport)

    async def run(self, now: Optional[datetime] = None) -> SweepSummary:
        """
        Process one batch of due messages.

        Every processed message lands in exactly one counter, so
        processed == sent + failed + rescheduled. Rescheduled messages hit a
        transient failure and stay pending for a later run; they are neither
        sent nor failed.

        Raises:
            TransportNotConfiguredError: transport credentials are missing.
                Store errors while fetching the batch also propagate.
        """
        if not self.transport.is_configured:
            raise TransportNotConfiguredError(self.transport.provider)

        now = now or datetime.now(timezone.utc)
        batch = await self.store.list_due_messages(now, limit=self.config.batch_size)
        logger.info("message_sweep_started", due=len(batch), batch_size=self.config.batch_size)

        summary = SweepSummary()
        for message in batch:
            summary.processed += 1
            outcome = await self._process_safely(message, now)
            if outcome == SENT:
                summary.sent += 1
            elif outcome == RESCHEDULED:
                summary.rescheduled += 1
            else:
                summary.failed += 1

        logger.info("message_sweep_completed", **summary.model_dump())
        return summary

    async def _process_safely(self, message: ScheduledMessage, now: datetime) -> str:
        try:
            return await self._process(message, now)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error("scheduled_message_error", message_id=message.id, error=error)
            try:
                await self._fail(message, error, now)
            except Exception as update_error:
                logger.error("scheduled_message_fail_update_error",
                             message_id=message.id, error=str(update_error))
            return FAILED

    async def _process(self, message: ScheduledMessage, now: datetime) -> str:
        attempt = message.attempt_count + 1
        if attempt > message.max_attempts:
            await self._fail(message, MAX_ATTEMPTS_EXCEEDED, now, attempt_count=attempt)
            return FAILED

        message = await self.store.update_scheduled_message(
            message.id, attempt_count=attempt, last_attempt_at=now,
        )

        lead = await self.store.get_lead(message.lead_id)
        if lead is None:
            await self._fail(message, LEAD_NOT_FOUND, now)
            return FAILED

        phone = normalize_whatsapp(lead.whatsapp, self.config.country_code)
        if not phone:
            logger.warning("scheduled_message_invalid_phone",
                           message_id=message.id, lead_id=lead.id)
            await self._fail(message, INVALID_PHONE, now)
            return FAILED

        outcome = await self.engine.deliver(message, phone)

        if outcome.success:
            await self.store.update_scheduled_message(
                message.id,
                status=MessageStatus.SENT,
                sent_at=now,
                failure_reason=None,
                whatsapp_instance_id=outcome.channel.id,
                current_instance_index=outcome.index,
            )
            logger.info("scheduled_message_sent", message_id=message.id,
                        channel_id=outcome.channel.id, attempt=attempt)
            return SENT

        if outcome.permanent or attempt >= message.max_attempts:
            await self._fail(message, outcome.error, now)
            return FAILED

        retry_at = now + timedelta(minutes=self.config.retry_delay_minutes)
        await self.store.update_scheduled_message(
            message.id, scheduled_at=retry_at, failure_reason=outcome.error,
        )
        logger.warning("scheduled_message_rescheduled", message_id=message.id,
                       attempt=attempt, max_attempts=message.max_attempts,
                       retry_at=retry_at.isoformat(), error=outcome.error)
        return RESCHEDULED

    async def _fail(self, message: ScheduledMessage, reason: str, now: datetime, **extra) -> None:
        await self.store.update_scheduled_message(
            message.id,
            status=MessageStatus.FAILED_OTHER,
            failure_reason=reason,
            last_attempt_at=now,
            **extra,
        )
        logger.warning("scheduled_message_failed", message_id=message.id, reason=reason)
