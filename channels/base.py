"""
Outbound transport — base infrastructure shared by every WhatsApp transport.

Provides:
- ChannelError: structured error hierarchy
- FailureKind / classify_failure: the single place that decides whether a
  delivery failure is worth retrying
- SendResult: outcome of one send attempt on one instance
- TransportMetrics: per-instance send/fail tracking
- OutboundTransport: abstract base every transport implements
"""
from __future__ import annotations

import abc
import time
import structlog
from enum import Enum
from typing import Any, Optional
from dataclasses import dataclass

from models.schemas import MediaAttachment

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all transport operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


# ══════════════════════════════════════════════════════════════
#  FAILURE CLASSIFICATION
# ══════════════════════════════════════════════════════════════

class FailureKind(str, Enum):
    PERMANENT = "permanent"     # payload/recipient rejected, another instance won't help
    TRANSIENT = "transient"     # instance down, network blip; a retry may succeed


# Matched case-insensitively as substrings of the transport's error text.
PERMANENT_FAILURE_PATTERNS: tuple[str, ...] = (
    "bad request",
    "telefone inválido",
    "telefone invalido",
    "número não registrado",
    "numero nao registrado",
    "número inválido",
    "numero invalido",
    "not a valid whatsapp number",
)


def classify_failure(error_text: Optional[str]) -> FailureKind:
    """Map a transport error message to PERMANENT or TRANSIENT."""
    text = (error_text or "").lower()
    for pattern in PERMANENT_FAILURE_PATTERNS:
        if pattern in text:
            return FailureKind.PERMANENT
    return FailureKind.TRANSIENT


# ══════════════════════════════════════════════════════════════
#  SEND RESULT
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SendResult:
    success: bool
    error: str = ""
    provider_message_id: str = ""

    @property
    def kind(self) -> Optional[FailureKind]:
        if self.success:
            return None
        return classify_failure(self.error)

    @property
    def is_permanent(self) -> bool:
        return self.kind is FailureKind.PERMANENT

    @classmethod
    def ok(cls, provider_message_id: str = "") -> "SendResult":
        return cls(success=True, provider_message_id=provider_message_id)

    @classmethod
    def failed(cls, error: str) -> "SendResult":
        return cls(success=False, error=error or "Erro desconhecido ao enviar")


# ══════════════════════════════════════════════════════════════
#  METRICS
# ══════════════════════════════════════════════════════════════

class TransportMetrics:
    """Tracks per-instance send, failure, and latency metrics."""

    def __init__(self, instance: str):
        self.instance = instance
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "instance": self.instance,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  OUTBOUND TRANSPORT — Abstract Base
# ══════════════════════════════════════════════════════════════

class OutboundTransport(abc.ABC):
    """
    Base class for all outbound WhatsApp transports.

    Subclasses implement _do_send_text and _do_send_media. The base class
    wraps every send with exception capture and per-instance metrics, so a
    delivery failure always comes back as a SendResult, never as a raise.
    """

    provider: str = "base"

    def __init__(self):
        self._metrics: dict[str, TransportMetrics] = {}

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send_text(self, instance: str, phone: str, text: str) -> SendResult:
        ...

    @abc.abstractmethod
    async def _do_send_media(
        self, instance: str, phone: str, media: MediaAttachment, caption: str
    ) -> SendResult:
        ...

    @property
    def is_configured(self) -> bool:
        return True

    # ── Public send ───────────────────────────────────────────

    async def send_text(self, instance: str, phone: str, text: str) -> SendResult:
        return await self._tracked(instance, self._do_send_text(instance, phone, text))

    async def send_media(
        self, instance: str, phone: str, media: MediaAttachment, caption: str = ""
    ) -> SendResult:
        return await self._tracked(instance, self._do_send_media(instance, phone, media, caption))

    async def send(
        self, instance: str, phone: str, text: str, media: Optional[MediaAttachment] = None
    ) -> SendResult:
        """Send a scheduled payload: media (with the text as caption) or plain text."""
        if media is not None and media.url:
            return await self.send_media(instance, phone, media, text)
        return await self.send_text(instance, phone, text)

    async def _tracked(self, instance: str, call) -> SendResult:
        metrics = self._metrics_for(instance)
        start = time.monotonic()
        try:
            result = await call
        except Exception as e:
            logger.error("transport_send_error", provider=self.provider,
                         instance=instance, error=str(e))
            result = SendResult.failed(str(e) or type(e).__name__)

        if result.success:
            metrics.record_send((time.monotonic() - start) * 1000)
        else:
            metrics.record_failure(result.error)
        return result

    def _metrics_for(self, instance: str) -> TransportMetrics:
        if instance not in self._metrics:
            self._metrics[instance] = TransportMetrics(instance)
        return self._metrics[instance]

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "configured": self.is_configured,
            "instances": {name: m.to_dict() for name, m in self._metrics.items()},
        }

    async def close(self) -> None:
        pass
