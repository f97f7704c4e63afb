"""Outbound WhatsApp transports and the channel registry."""
from channels.base import (
    ChannelError,
    FailureKind,
    OutboundTransport,
    PERMANENT_FAILURE_PATTERNS,
    SendResult,
    TransportMetrics,
    classify_failure,
)
from channels.dry_run import DryRunTransport
from channels.evolution_adapter import EvolutionTransport
from channels.factory import create_transport

__all__ = [
    "ChannelError", "FailureKind", "OutboundTransport", "PERMANENT_FAILURE_PATTERNS",
    "SendResult", "TransportMetrics", "classify_failure",
    "DryRunTransport", "EvolutionTransport", "create_transport",
]
