"""
Delivery Fallback Engine — ordered, resumable multi-instance delivery.

Candidate order for a message:
    1. its primary instance (whatsapp_instance_id), if set
    2. each fallback instance not already listed, in order
    3. if both are empty: every connected + active instance of the tenant

Delivery starts at the message's current_instance_index and walks forward
one instance at a time. A permanent failure (bad recipient or payload) stops
the walk; transient failures move on to the next instance. Instances are
never tried concurrently, since two of them accepting the same payload would
deliver the message twice.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from typing import Optional

from channels.base import OutboundTransport
from channels.registry import ChannelRegistry
from database.store_base import BaseStore
from models.schemas import Channel, ScheduledMessage

logger = structlog.get_logger()

NO_CHANNEL_AVAILABLE = "Nenhuma instância WhatsApp conectada disponível"


def build_candidate_ids(message: ScheduledMessage) -> list[str]:
    """Primary first, then fallbacks; de-duplicated, order preserved."""
    candidates: list[str] = []
    for channel_id in [message.whatsapp_instance_id, *message.fallback_instance_ids]:
        if channel_id and channel_id not in candidates:
            candidates.append(channel_id)
    return candidates


@dataclass
class DeliveryOutcome:
    success: bool
    channel: Optional[Channel] = None
    index: Optional[int] = None
    error: str = ""
    permanent: bool = False
    attempted: list[str] = field(default_factory=list)    # channel ids a send was made on

    @classmethod
    def delivered(cls, channel: Channel, index: int, attempted: list[str]) -> "DeliveryOutcome":
        return cls(success=True, channel=channel, index=index, attempted=attempted)

    @classmethod
    def failed(cls, error: str, permanent: bool, attempted: Optional[list[str]] = None) -> "DeliveryOutcome":
        return cls(success=False, error=error, permanent=permanent, attempted=attempted or [])


class DeliveryFallbackEngine:
    """Delivers one scheduled message across its candidate instances."""

    def __init__(
        self,
        store: BaseStore,
        transport: OutboundTransport,
        registry: Optional[ChannelRegistry] = None,
    ):
        self.store = store
        self.transport = transport
        self.registry = registry or ChannelRegistry(store)

    async def resolve_candidates(self, message: ScheduledMessage) -> list[str]:
        candidates = build_candidate_ids(message)
        if candidates:
            return candidates
        connected = await self.registry.connected(message.tenant_id)
        if connected:
            logger.info("fallback_substituted_connected_channels",
                        message_id=message.id, tenant_id=message.tenant_id,
                        channels=[c.id for c in connected])
        return [c.id for c in connected]

    async def deliver(self, message: ScheduledMessage, phone: str) -> DeliveryOutcome:
        """
        Try the candidate instances in order until one accepts the message.

        On success the index and id of the instance used are persisted on the
        message, so the next delivery starts from the instance that worked.
        """
        candidates = await self.resolve_candidates(message)
        if not candidates:
            logger.warning("fallback_no_channel", message_id=message.id,
                           tenant_id=message.tenant_id)
            return DeliveryOutcome.failed(NO_CHANNEL_AVAILABLE, permanent=True)

        start = min(message.current_instance_index, len(candidates) - 1)
        attempted: list[str] = []
        last_error = ""

        for index in range(start, len(candidates)):
            channel = await self.registry.get_eligible(candidates[index])
            if channel is None:
                continue

            result = await self.transport.send(
                channel.instance_name, phone, message.final_message, message.media,
            )
            attempted.append(channel.id)

            if result.success:
                await self.store.update_scheduled_message(
                    message.id,
                    current_instance_index=index,
                    whatsapp_instance_id=channel.id,
                )
                logger.info("fallback_delivered", message_id=message.id,
                            channel_id=channel.id, instance=channel.instance_name,
                            index=index)
                return DeliveryOutcome.delivered(channel, index, attempted)

            if result.is_permanent:
                logger.warning("fallback_permanent_failure", message_id=message.id,
                               channel_id=channel.id, error=result.error)
                return DeliveryOutcome.failed(result.error, permanent=True, attempted=attempted)

            logger.warning("fallback_transient_failure", message_id=message.id,
                           channel_id=channel.id, error=result.error)
            last_error = result.error

        error = f"Todas as {len(candidates)} instâncias falharam"
        if last_error:
            error = f"{error}: {last_error}"
        return DeliveryOutcome.failed(error, permanent=False, attempted=attempted)
