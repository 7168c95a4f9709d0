"""
Storage layer for traces, steps and details.
"""

from storage.exceptions import StoreFunctionError, StoreUnavailableError, TrackingStoreError
from storage.factory import create_store
from storage.memory_store import InMemoryTrackingStore
from storage.store import CleanupResult, TracePage, TrackingStore

__all__ = [
    "CleanupResult",
    "InMemoryTrackingStore",
    "StoreFunctionError",
    "StoreUnavailableError",
    "TracePage",
    "TrackingStore",
    "TrackingStoreError",
    "create_store",
]
