"""
Dry-run transport — never sends anything.

Every send is logged and reported as delivered, so sweeps can be exercised
end to end on a development database without touching real WhatsApp numbers.
"""
from __future__ import annotations

import uuid
import structlog

from channels.base import OutboundTransport, SendResult
from models.schemas import MediaAttachment

logger = structlog.get_logger()


class DryRunTransport(OutboundTransport):
    provider = "dry_run"

    def __init__(self):
        super().__init__()
        self.sent: list[dict] = []

    async def _do_send_text(self, instance: str, phone: str, text: str) -> SendResult:
        return self._record(instance, phone, text=text)

    async def _do_send_media(
        self, instance: str, phone: str, media: MediaAttachment, caption: str
    ) -> SendResult:
        return self._record(instance, phone, text=caption, media_type=media.type.value,
                            media_url=media.url)

    def _record(self, instance: str, phone: str, **payload) -> SendResult:
        msg_id = f"dryrun.{uuid.uuid4().hex[:16]}"
        self.sent.append({"instance": instance, "phone": phone, "id": msg_id, **payload})
        logger.info("dry_run_send", instance=instance, to=phone, msg_id=msg_id)
        return SendResult.ok(provider_message_id=msg_id)
