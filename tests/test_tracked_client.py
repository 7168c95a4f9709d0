"""
Tracked HTTP Client Tests
"""

import httpx
import pytest

from observability.tracked_client import tracked_request


def ghl_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url="https://services.example.com", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_successful_call_recorded(recorder, store):
    started = await recorder.start_trace("/webhooks/ghl/task-created")
    step_id = await recorder.start_step(started.trace_id, "ghl", "createTask")

    def handler(request):
        return httpx.Response(201, json={"id": "task-1"})

    async with ghl_client(handler) as client:
        response = await tracked_request(
            recorder, "ghl", started.trace_id, step_id, "post", "/tasks",
            client=client,
            json={"title": "Call client"},
            headers={"Authorization": "Bearer secret"},
        )
    await recorder.flush()

    assert response.status_code == 201
    detail = (await store.get_details(started.trace_id))[0]
    assert detail["detail_type"] == "api_call"
    assert detail["status"] == "completed"
    assert detail["api_provider"] == "ghl"
    assert detail["api_method"] == "POST"
    assert detail["request_body"] == {"title": "Call client"}
    assert detail["request_headers"]["Authorization"] == "[REDACTED]"
    assert detail["response_status"] == 201
    assert detail["response_body"] == {"id": "task-1"}


@pytest.mark.asyncio
async def test_error_status_fails_detail_and_raises(recorder, store):
    started = await recorder.start_trace("/webhooks/ghl/task-created")
    step_id = await recorder.start_step(started.trace_id, "ghl", "createTask")

    async with ghl_client(lambda request: httpx.Response(500, text="oops")) as client:
        with pytest.raises(httpx.HTTPStatusError):
            await tracked_request(recorder, "ghl", started.trace_id, step_id, "GET", "/tasks", client=client)
    await recorder.flush()

    detail = (await store.get_details(started.trace_id))[0]
    assert detail["status"] == "failed"
    assert detail["response_status"] == 500
    assert recorder.get_trace_context(started.trace_id).stats()["error_count"] == 1


@pytest.mark.asyncio
async def test_error_status_without_raise(recorder, store):
    started = await recorder.start_trace("/webhooks/ghl/task-created")
    step_id = await recorder.start_step(started.trace_id, "ghl", "findTask")

    async with ghl_client(lambda request: httpx.Response(404, text="missing")) as client:
        response = await tracked_request(
            recorder, "ghl", started.trace_id, step_id, "GET", "/tasks/9",
            client=client, raise_for_status=False,
        )
    await recorder.flush()

    assert response.status_code == 404
    detail = (await store.get_details(started.trace_id))[0]
    assert detail["status"] == "completed"
    assert detail["response_body"] == {"_raw": "missing"}


@pytest.mark.asyncio
async def test_untraced_call_still_sends(disabled_recorder):
    async with ghl_client(lambda request: httpx.Response(200, json={"ok": True})) as client:
        response = await tracked_request(disabled_recorder, "clio", None, None, "GET", "/matters", client=client)

    assert response.json() == {"ok": True}
