"""
Dashboard API Tests

Exercises the /v1/traces routes through the real app factory with the
query service and template registry swapped for test instances.
"""

import httpx
import pytest
import pytest_asyncio

from app.dependencies import get_query_service, get_template_registry
from app.main import create_app
from dashboard.query_service import TraceQueryService
from dashboard.templates import TemplateRegistry


@pytest.fixture
def app(recorder, store, clock):
    app = create_app(recorder)
    app.dependency_overrides[get_query_service] = lambda: TraceQueryService(store, clock=clock)
    app.dependency_overrides[get_template_registry] = lambda: TemplateRegistry.from_directory()
    return app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def record_task_created(recorder, contact_id="c1"):
    started = await recorder.start_trace("/webhooks/ghl/task-created", body={"contactId": contact_id})
    async with recorder.step(started.trace_id, "express", "webhook_received"):
        pass
    await recorder.complete_trace(started.trace_id, 200, {"success": True})
    return started.trace_id


@pytest.mark.asyncio
async def test_health_reports_tracing(client):
    response = await client.get("/health")

    assert response.json() == {"status": "ok", "tracing": True}


@pytest.mark.asyncio
async def test_list_and_detail(client, recorder):
    trace_id = await record_task_created(recorder)

    listing = (await client.get("/v1/traces", params={"limit": 10})).json()
    assert [item["trace_id"] for item in listing["items"]] == [trace_id]
    assert listing["has_more"] is False

    detail = (await client.get(f"/v1/traces/{trace_id}")).json()
    assert detail["trace"]["status"] == "completed"
    assert [s["function_name"] for s in detail["steps"]] == ["webhook_received"]


@pytest.mark.asyncio
async def test_dashboard_reads_are_not_traced(client, store):
    await client.get("/v1/traces")

    assert (await store.list_traces()).items == []


@pytest.mark.asyncio
async def test_unknown_trace_is_404(client):
    response = await client.get("/v1/traces/trc_missing_00000000")

    assert response.status_code == 404
    assert response.json()["detail"] == "Trace not found"

    workflow = await client.get("/v1/traces/trc_missing_00000000/workflow")
    assert workflow.status_code == 404


@pytest.mark.asyncio
async def test_search_and_stats(client, recorder):
    await record_task_created(recorder, "c1")
    await record_task_created(recorder, "c2")

    found = (await client.get("/v1/traces/search", params={"contact_id": "c2"})).json()
    stats = (await client.get("/v1/traces/stats", params={"system": "ghl"})).json()

    assert [t["contact_id"] for t in found] == ["c2"]
    assert stats["total"] == 2
    assert stats["by_status"] == {"completed": 2}


@pytest.mark.asyncio
async def test_workflow_route(client, recorder):
    trace_id = await record_task_created(recorder)

    body = (await client.get(f"/v1/traces/{trace_id}/workflow")).json()

    assert body["trace"]["trace_id"] == trace_id
    assert body["workflow"]["id"] == "task-created"
    assert body["workflow"]["root"]["match_status"] in ("taken", "current")


@pytest.mark.asyncio
async def test_cleanup_route(client, recorder, clock):
    await record_task_created(recorder)
    clock.advance(31 * 24 * 60 * 60 * 1000)

    response = await client.post("/v1/traces/cleanup", params={"older_than_days": 30})

    assert response.json() == {"deleted_traces": 1, "deleted_steps": 1, "deleted_details": 0, "has_more": False}


@pytest.mark.asyncio
async def test_storage_not_configured_is_503(disabled_recorder):
    app = create_app(disabled_recorder)
    app.dependency_overrides[get_query_service] = lambda: None

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/v1/traces")

    assert response.status_code == 503
