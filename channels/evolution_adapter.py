"""
Evolution API Transport — WhatsApp delivery through a self-hosted Evolution API.

Endpoints used (all POST, authenticated with the `apikey` header):
    /message/sendText/{instance}           {number, text}
    /message/sendMedia/{instance}          {number, mediatype, media, caption[, fileName]}
    /message/sendWhatsAppAudio/{instance}  {number, audio}

Audio cannot carry a caption, so the text goes out as a second message.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import OutboundTransport, SendResult
from models.schemas import MediaAttachment, MediaType

logger = structlog.get_logger()


def extract_error_message(status_code: int, body: Any) -> str:
    """Pull a human-readable error out of an Evolution API error response."""
    if not isinstance(body, dict):
        return f"HTTP {status_code}"

    message = body.get("message") or body.get("error")
    details = None
    response = body.get("response")
    if isinstance(response, dict):
        details = response.get("message")

    if isinstance(message, list):
        message = "; ".join(str(m) for m in message)
    if isinstance(details, list):
        details = "; ".join(str(d) for d in details)

    if message and details and str(details) != str(message):
        return f"{message}: {details}"
    return str(message or details or f"HTTP {status_code}")


class EvolutionTransport(OutboundTransport):
    """Evolution API client for text and media delivery."""

    provider = "evolution"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 30.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__()
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.timeout_seconds = timeout_seconds
        self._http_transport = http_transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
                headers={"Content-Type": "application/json", "apikey": self.api_key},
                transport=self._http_transport,
            )
        return self._client

    # Only connection failures are retried here: the request never reached the
    # provider, so retrying cannot double-deliver.
    @retry(
        retry=retry_if_exception_type(httpx.ConnectError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(min=1, max=5),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        return await client.post(path, json=payload)

    async def _call(self, path: str, payload: dict[str, Any], instance: str) -> SendResult:
        resp = await self._post(path, payload)
        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = {}

        if resp.status_code >= 400:
            error = extract_error_message(resp.status_code, body)
            logger.error("evolution_api_error", instance=instance,
                         status=resp.status_code, error=error)
            return SendResult.failed(error)

        key = body.get("key") if isinstance(body, dict) else None
        msg_id = key.get("id", "") if isinstance(key, dict) else ""
        return SendResult.ok(provider_message_id=msg_id)

    # ── Hooks ─────────────────────────────────────────────────

    async def _do_send_text(self, instance: str, phone: str, text: str) -> SendResult:
        logger.info("evolution_send_text", instance=instance, to=phone)
        return await self._call(
            f"/message/sendText/{instance}",
            {"number": phone, "text": text},
            instance,
        )

    async def _do_send_media(
        self, instance: str, phone: str, media: MediaAttachment, caption: str
    ) -> SendResult:
        logger.info("evolution_send_media", instance=instance, to=phone,
                    media_type=media.type.value)

        if media.type == MediaType.AUDIO:
            result = await self._call(
                f"/message/sendWhatsAppAudio/{instance}",
                {"number": phone, "audio": media.url},
                instance,
            )
            if result.success and caption:
                follow_up = await self._do_send_text(instance, phone, caption)
                if not follow_up.success:
                    logger.warning("evolution_audio_caption_failed",
                                   instance=instance, error=follow_up.error)
            return result

        payload: dict[str, Any] = {
            "number": phone,
            "mediatype": media.type.value,
            "media": media.url,
            "caption": caption,
        }
        if media.type == MediaType.DOCUMENT:
            payload["fileName"] = media.filename or "document"
        return await self._call(f"/message/sendMedia/{instance}", payload, instance)

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
