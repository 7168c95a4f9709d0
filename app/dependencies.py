"""
FastAPI Dependencies

All object creation happens here, not per request.
One tracking store is shared by the recorder (write side) and the
query service (read side).
"""

from functools import lru_cache
from typing import Optional

from app.core.config import settings
from dashboard.query_service import TraceQueryService
from dashboard.templates import TemplateRegistry
from observability.recorder import TraceRecorder
from storage.factory import create_store
from storage.store import TrackingStore


@lru_cache(maxsize=1)
def get_store() -> Optional[TrackingStore]:
    """
    Create and cache the TrackingStore singleton.

    Returns:
        The configured store, or None when storage_url is empty (tracing disabled).
    """
    return create_store(settings.storage_url, timeout=settings.convex_timeout_seconds)


@lru_cache(maxsize=1)
def get_recorder() -> TraceRecorder:
    return TraceRecorder(
        get_store(),
        system=settings.tracing_system,
        environment=settings.environment,
        buffer_size=settings.detail_buffer_size,
        flush_interval=settings.detail_flush_interval_seconds,
        max_payload_size=settings.max_payload_size,
    )


@lru_cache(maxsize=1)
def get_template_registry() -> TemplateRegistry:
    return TemplateRegistry.from_directory(settings.workflows_dir)


def get_query_service() -> Optional[TraceQueryService]:
    store = get_store()
    return TraceQueryService(store) if store is not None else None
