"""
Channel Registry — read-only view of a tenant's WhatsApp instances.

Instances are managed elsewhere; the core only asks two questions of them:
"is this instance usable right now?" and "which instances are usable?".
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseStore
from models.schemas import Channel

logger = structlog.get_logger()


class ChannelRegistry:
    def __init__(self, store: BaseStore):
        self.store = store

    async def get_eligible(self, channel_id: str) -> Optional[Channel]:
        """Re-read the instance and return it only if connected and active."""
        channel = await self.store.get_channel(channel_id)
        if channel is None:
            logger.warning("channel_not_found", channel_id=channel_id)
            return None
        if not channel.is_eligible:
            logger.warning("channel_not_eligible", channel_id=channel_id,
                           instance=channel.instance_name,
                           connected=channel.is_connected, status=channel.status)
            return None
        return channel

    async def connected(self, tenant_id: str) -> list[Channel]:
        return await self.store.list_connected_channels(tenant_id)

    async def active(self, tenant_id: str) -> list[Channel]:
        return await self.store.list_active_channels(tenant_id)
