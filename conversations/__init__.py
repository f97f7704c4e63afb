"""Conversation auto-close sweeper and satisfaction rating extraction."""
from conversations.auto_close import AutoCloseSweeper, compose_closing_text, within_business_hours
from conversations.rating import extract_rating, is_detractor

__all__ = [
    "AutoCloseSweeper", "compose_closing_text", "within_business_hours",
    "extract_rating", "is_detractor",
]
