"""Scheduled WhatsApp delivery: fallback engine, sweeper and management actions."""
from messaging.fallback import DeliveryFallbackEngine, DeliveryOutcome, build_candidate_ids
from messaging.scheduling import ScheduledMessageService
from messaging.sweeper import ScheduledMessageSweeper

__all__ = [
    "DeliveryFallbackEngine", "DeliveryOutcome", "build_candidate_ids",
    "ScheduledMessageService", "ScheduledMessageSweeper",
]
