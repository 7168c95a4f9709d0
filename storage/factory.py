"""
Store factory - picks a TrackingStore backend from the configured storage URL.

    ""/None               -> None (tracing disabled)
    memory://             -> InMemoryTrackingStore
    sqlite:///path/to.db  -> SQLiteTrackingStore
    http(s)://...         -> ConvexTrackingStore
"""

import logging
from typing import Optional

from storage.convex_store import ConvexTrackingStore
from storage.memory_store import InMemoryTrackingStore
from storage.sqlite_store import SQLiteTrackingStore
from storage.store import TrackingStore

logger = logging.getLogger(__name__)


def create_store(url: Optional[str], timeout: float = 10.0) -> Optional[TrackingStore]:
    if not url:
        logger.warning("No storage URL configured - tracing disabled")
        return None

    if url.startswith("memory://"):
        logger.info("Tracing to in-memory store")
        return InMemoryTrackingStore()

    if url.startswith("sqlite://"):
        path = url[len("sqlite:///"):] if url.startswith("sqlite:///") else url[len("sqlite://"):]
        logger.info(f"Tracing to SQLite database {path or ':memory:'}")
        return SQLiteTrackingStore(path or ":memory:").connect()

    if url.startswith(("http://", "https://")):
        logger.info(f"Tracing to Convex deployment {url}")
        return ConvexTrackingStore(url, timeout=timeout)

    raise ValueError(f"Unsupported storage URL: {url}")
