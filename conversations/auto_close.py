"""
Conversation Auto-Close Sweeper — closes idle WhatsApp conversations and
collects satisfaction replies.

Each run:
  1. Rating pre-pass: for every conversation awaiting a survey reply, read
     the latest inbound message since the survey went out and, if it holds a
     rating, record it and close the conversation.
  2. For every tenant with auto-close enabled (config re-read every run),
     and every active instance of that tenant, close conversations idle past
     the bot / assigned cutoff, sending the closing message and survey
     best-effort.

Notification failures never block the close, and no single conversation or
tenant failure aborts the run.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional

from channels.base import OutboundTransport
from channels.registry import ChannelRegistry
from config.settings import AutoCloseDefaults
from conversations.rating import extract_rating, is_detractor
from database.store_base import BaseStore
from models.schemas import (
    AutoCloseConfig, AutoCloseSummary, Channel, Conversation, ConversationStatus,
    SatisfactionRating,
)
from utils.phone import normalize_whatsapp

logger = structlog.get_logger()

BOT_STATUSES = (ConversationStatus.WITH_BOT,)
HUMAN_STATUSES = (ConversationStatus.PENDING, ConversationStatus.ASSIGNED)


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")
    return int(hours) * 60 + int(minutes)


def within_business_hours(now: datetime, start: str, end: str, utc_offset_hours: int = -3) -> bool:
    """Whether `now` falls in [start, end] (inclusive) at a fixed UTC offset."""
    local = now.astimezone(timezone.utc) + timedelta(hours=utc_offset_hours)
    current = local.hour * 60 + local.minute
    return _minutes(start) <= current <= _minutes(end)


def compose_closing_text(config: AutoCloseConfig) -> str:
    """Closing message and survey prompt, separated by a blank line when both are set."""
    parts = []
    if config.has_closing_message:
        parts.append(config.closing_message.strip())
    if config.has_survey:
        parts.append(config.survey_message.strip())
    return "\n\n".join(parts)


class AutoCloseSweeper:

    def __init__(
        self,
        store: BaseStore,
        transport: OutboundTransport,
        defaults: Optional[AutoCloseDefaults] = None,
        country_code: str = "55",
    ):
        self.store = store
        self.transport = transport
        self.defaults = defaults or AutoCloseDefaults()
        self.country_code = country_code
        self.registry = ChannelRegistry(store)

    async def run(self, now: Optional[datetime] = None) -> AutoCloseSummary:
        now = now or datetime.now(timezone.utc)
        summary = AutoCloseSummary(timestamp=now)
        logger.info("auto_close_started", at=now.isoformat())

        summary.ratings_processed = await self.process_ratings(now)

        for config in await self.store.list_enabled_auto_close_configs():
            try:
                closed, surveys = await self.close_tenant(config, now)
            except Exception as e:
                logger.error("auto_close_tenant_error", tenant_id=config.tenant_id, error=str(e))
                continue
            summary.closed += closed
            summary.surveys_sent += surveys

        logger.info("auto_close_completed", closed=summary.closed,
                    surveys_sent=summary.surveys_sent,
                    ratings_processed=summary.ratings_processed)
        return summary

    # ── Rating pre-pass ───────────────────────────────────

    async def process_ratings(self, now: datetime) -> int:
        processed = 0
        for conversation in await self.store.list_awaiting_satisfaction():
            if conversation.satisfaction_sent_at is None:
                continue
            try:
                if await self._process_reply(conversation, now):
                    processed += 1
            except Exception as e:
                logger.error("satisfaction_reply_error",
                             conversation_id=conversation.id, error=str(e))
        return processed

    async def _process_reply(self, conversation: Conversation, now: datetime) -> bool:
        reply = await self.store.latest_inbound_message(
            conversation.id, after=conversation.satisfaction_sent_at,
        )
        if reply is None:
            return False

        rating = extract_rating(reply.content)
        if rating is None:
            logger.info("satisfaction_reply_without_rating", conversation_id=conversation.id)
            return False

        fields = dict(
            rating=rating,
            raw_response=reply.content,
            is_pending_review=is_detractor(rating),
            responded_at=reply.created_at,
        )
        open_row = await self.store.find_open_rating(conversation.id)
        if open_row is not None:
            await self.store.update_rating(open_row.id, **fields)
        else:
            await self.store.add_rating(SatisfactionRating(
                tenant_id=conversation.tenant_id,
                conversation_id=conversation.id,
                instance_id=conversation.instance_id,
                assigned_user_id=conversation.assigned_user_id,
                lead_id=conversation.lead_id,
                **fields,
            ))

        await self.store.update_conversation(
            conversation.id,
            awaiting_satisfaction_response=False,
            status=ConversationStatus.CLOSED,
            closed_at=conversation.closed_at or now,
        )
        logger.info("satisfaction_rating_recorded", conversation_id=conversation.id,
                    rating=rating, detractor=is_detractor(rating))
        return True

    # ── Closing idle conversations ────────────────────────

    def effective_config(self, config: AutoCloseConfig) -> AutoCloseConfig:
        """Fill the cutoffs and business hours a tenant left unset from the deployment defaults."""
        defaults = self.defaults
        return config.model_copy(update={
            "bot_minutes": config.bot_minutes or defaults.bot_minutes,
            "assigned_minutes": config.assigned_minutes or defaults.assigned_minutes,
            "business_start": config.business_start or defaults.business_start,
            "business_end": config.business_end or defaults.business_end,
        })

    async def close_tenant(self, config: AutoCloseConfig, now: datetime) -> tuple[int, int]:
        config = self.effective_config(config)
        if config.only_business_hours and not within_business_hours(
            now, config.business_start, config.business_end, self.defaults.utc_offset_hours,
        ):
            logger.info("auto_close_outside_business_hours", tenant_id=config.tenant_id)
            return 0, 0

        bot_cutoff = now - timedelta(minutes=config.bot_minutes)
        assigned_cutoff = now - timedelta(minutes=config.assigned_minutes)
        text = compose_closing_text(config)

        closed = surveys = 0
        for channel in await self.registry.active(config.tenant_id):
            idle = await self.store.list_idle_conversations(channel.id, BOT_STATUSES, bot_cutoff)
            idle += await self.store.list_idle_conversations(channel.id, HUMAN_STATUSES, assigned_cutoff)
            for conversation in idle:
                try:
                    survey_sent = await self._close(conversation, channel, config, text, now)
                except Exception as e:
                    logger.error("auto_close_conversation_error",
                                 conversation_id=conversation.id, error=str(e))
                    continue
                closed += 1
                surveys += int(survey_sent)
        return closed, surveys

    async def _close(self, conversation: Conversation, channel: Channel,
                     config: AutoCloseConfig, text: str, now: datetime) -> bool:
        delivered = False
        if text:
            delivered = await self._notify(conversation, channel, text)

        await self.store.update_conversation(
            conversation.id,
            status=ConversationStatus.CLOSED,
            closed_at=now,
            awaiting_satisfaction_response=config.has_survey,
            satisfaction_sent_at=now if config.has_survey else None,
        )
        try:
            await self.store.add_rating(SatisfactionRating(
                tenant_id=conversation.tenant_id,
                conversation_id=conversation.id,
                instance_id=channel.id,
                assigned_user_id=conversation.assigned_user_id,
                lead_id=conversation.lead_id,
                created_at=now,
            ))
        except Exception as e:
            # Already closed: report the missing row for repair instead of failing the close.
            logger.error("auto_close_rating_row_missing", conversation_id=conversation.id,
                         tenant_id=conversation.tenant_id, channel_id=channel.id,
                         closed_at=now.isoformat(), error=str(e))
        logger.info("conversation_auto_closed", conversation_id=conversation.id,
                    channel_id=channel.id, previous_status=conversation.status.value,
                    survey=config.has_survey)
        return config.has_survey and delivered

    async def _notify(self, conversation: Conversation, channel: Channel, text: str) -> bool:
        if not self.transport.is_configured:
            logger.warning("auto_close_transport_not_configured", conversation_id=conversation.id)
            return False
        phone = normalize_whatsapp(conversation.phone, self.country_code)
        if not phone:
            logger.warning("auto_close_no_phone", conversation_id=conversation.id)
            return False
        result = await self.transport.send_text(channel.instance_name, phone, text)
        if not result.success:
            logger.warning("auto_close_message_failed", conversation_id=conversation.id,
                           channel_id=channel.id, error=result.error)
        return result.success
