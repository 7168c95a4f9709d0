"""Exceptions raised by tracking store backends.

The recorder catches every one of these; they never reach instrumented code.
"""

from typing import Optional


class TrackingStoreError(Exception):
    """Base exception for tracking store failures."""


class StoreUnavailableError(TrackingStoreError):
    """Raised when the backend cannot be reached or rejects the connection."""


class StoreFunctionError(TrackingStoreError):
    """Raised when the backend reports a failed mutation or query."""

    def __init__(self, message: str, function: Optional[str] = None):
        super().__init__(message)
        self.function = function
