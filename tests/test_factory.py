"""
Store Factory Tests
"""

import pytest

from storage.convex_store import ConvexTrackingStore
from storage.factory import create_store
from storage.memory_store import InMemoryTrackingStore
from storage.sqlite_store import SQLiteTrackingStore


@pytest.mark.parametrize("url", [None, ""])
def test_empty_url_disables_tracing(url):
    assert create_store(url) is None


def test_memory_url():
    assert isinstance(create_store("memory://"), InMemoryTrackingStore)


def test_sqlite_url(tmp_path):
    path = tmp_path / "tracing.db"

    store = create_store(f"sqlite:///{path}")

    assert isinstance(store, SQLiteTrackingStore)
    assert store.db_path == str(path)
    assert path.exists()
    store.conn.close()


@pytest.mark.asyncio
async def test_convex_url():
    store = create_store("https://happy-animal-123.convex.cloud/", timeout=3.0)

    assert isinstance(store, ConvexTrackingStore)
    assert store.url == "https://happy-animal-123.convex.cloud"
    await store.close()


def test_unknown_scheme_rejected():
    with pytest.raises(ValueError):
        create_store("postgres://localhost/traces")
