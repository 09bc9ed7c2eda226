#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Dict, Any, Optional


class TransportError(Exception):
    """Raised when a page of battles cannot be fetched from the gameinfo API.

    Attributes:
        offset: Pagination offset of the failed request, if known.
        details: Optional diagnostics (status code, error class, etc.).
    """

    def __init__(self, message: str = "Unable to fetch battles", offset: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.offset = offset
        self.details = details or {}


class StoreError(Exception):
    """Raised when a database operation fails inside the worker."""

    def __init__(self, message: str = "Database operation failed", operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class StoreWriteError(StoreError):
    """Raised when a bulk insert/update/delete fails as a whole."""


class DeliveryError(Exception):
    """Raised when a notification cannot be sent to a subscriber."""

    def __init__(self, message: str = "Delivery failed", subscriber_id: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.subscriber_id = subscriber_id
        self.status = status


__all__ = ["TransportError", "StoreError", "StoreWriteError", "DeliveryError"]
