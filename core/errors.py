"""
Domain error hierarchy.

Sweepers never raise these for per-item failures; they are raised by the
synchronous sale/closing/message-management operations and mapped to HTTP
status codes by the API layer.
"""
from __future__ import annotations


class BackofficeError(Exception):
    """Base exception for all domain operations."""


class NotFoundError(BackofficeError):
    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} '{entity_id}' not found")


class SaleLockedError(BackofficeError):
    """The sale is cancelled/returned and its status must not change."""

    def __init__(self, sale_id: str, status: str):
        self.sale_id = sale_id
        self.status = status
        super().__init__(f"Sale '{sale_id}' is {status} and cannot be changed")


class InvalidTransitionError(BackofficeError):
    def __init__(self, message: str, current: str = ""):
        self.current = current
        super().__init__(message)


class TransportNotConfiguredError(BackofficeError):
    def __init__(self, provider: str = "evolution"):
        self.provider = provider
        super().__init__(f"{provider} transport credentials not configured")


class ConflictError(BackofficeError):
    """A write would violate a uniqueness rule (e.g. a sale already in a closing)."""
