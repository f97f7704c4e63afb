"""
Transport Factory — instantiates the configured outbound transport.

    transport:
      provider: "evolution"     # or "dry_run"
      base_url: "${EVOLUTION_API_URL}"
      api_key: "${EVOLUTION_API_KEY}"
"""
from __future__ import annotations

import structlog

from channels.base import ChannelError, OutboundTransport
from config.settings import TransportConfig

logger = structlog.get_logger()

SUPPORTED_PROVIDERS = ("evolution", "dry_run")


def create_transport(config: TransportConfig) -> OutboundTransport:
    """
    Create an outbound transport from config.

    Raises:
        ChannelError: If the provider is not supported.
    """
    if config.provider == "evolution":
        from channels.evolution_adapter import EvolutionTransport
        transport = EvolutionTransport(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout_seconds=config.timeout_seconds,
        )
        logger.info("transport_created", provider="evolution",
                    configured=transport.is_configured)
        return transport

    elif config.provider == "dry_run":
        from channels.dry_run import DryRunTransport
        logger.warning("transport_created", provider="dry_run")
        return DryRunTransport()

    raise ChannelError(
        f"Unsupported transport provider: {config.provider}. "
        f"Supported: {', '.join(SUPPORTED_PROVIDERS)}",
        channel=config.provider,
    )
