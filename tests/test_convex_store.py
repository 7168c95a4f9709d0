"""
Convex Tracking Store Tests

Uses httpx.MockTransport to stand in for a Convex deployment and checks
the function paths, wire format and error mapping.
"""

import json

import httpx
import pytest

from storage.convex_store import ConvexTrackingStore, from_wire, to_camel, to_snake, to_wire
from storage.exceptions import StoreFunctionError, StoreUnavailableError


class FakeConvex:
    """Records every function call and answers from a path -> value table."""

    def __init__(self, values=None):
        self.calls = []
        self.values = values or {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.calls.append((request.url.path, body["path"], body["args"]))
        value = self.values.get(body["path"])
        if isinstance(value, Exception):
            return httpx.Response(200, json={"status": "error", "errorMessage": str(value)})
        return httpx.Response(200, json={"status": "success", "value": value, "logLines": []})


def make_store(handler, clock) -> ConvexTrackingStore:
    client = httpx.AsyncClient(base_url="https://example.convex.cloud", transport=httpx.MockTransport(handler))
    return ConvexTrackingStore("https://example.convex.cloud", client=client, clock=clock)


def test_case_conversion():
    assert to_camel("response_status") == "responseStatus"
    assert to_camel("system") == "system"
    assert to_snake("responseStatus") == "response_status"
    assert to_wire({"trace_id": "t", "error": None, "request_body": {"nested_key": 1}}) == {
        "traceId": "t",
        "requestBody": {"nested_key": 1},
    }
    assert from_wire({"_id": "x", "_creationTime": 1, "traceId": "t"}) == {"trace_id": "t"}
    assert from_wire(None) is None


@pytest.mark.asyncio
async def test_create_trace_posts_mutation(clock):
    convex = FakeConvex()
    store = make_store(convex, clock)

    await store.create_trace({"trace_id": "trc_a_11111111", "system": "ghl", "contact_id": None})

    endpoint, path, args = convex.calls[0]
    assert endpoint == "/api/mutation"
    assert path == ConvexTrackingStore.CREATE_TRACE
    assert args == {"traceId": "trc_a_11111111", "system": "ghl", "now": store.now_ms()}


@pytest.mark.asyncio
async def test_finish_step_reports_refusal(clock):
    convex = FakeConvex({ConvexTrackingStore.FINISH_STEP: False})
    store = make_store(convex, clock)

    accepted = await store.finish_step("stp_11111111_1", "completed", {"output": {"ok": True}})

    assert accepted is False
    _, path, args = convex.calls[0]
    assert path == ConvexTrackingStore.FINISH_STEP
    assert args["stepId"] == "stp_11111111_1"
    assert args["status"] == "completed"
    assert args["output"] == {"ok": True}


@pytest.mark.asyncio
async def test_function_error_raises(clock):
    store = make_store(FakeConvex({ConvexTrackingStore.GET_TRACE: RuntimeError("boom")}), clock)

    with pytest.raises(StoreFunctionError) as exc_info:
        await store.get_trace("trc_a_11111111")

    assert exc_info.value.function == ConvexTrackingStore.GET_TRACE
    assert "boom" in str(exc_info.value)


@pytest.mark.asyncio
async def test_transport_error_raises_unavailable(clock):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    store = make_store(handler, clock)

    with pytest.raises(StoreUnavailableError):
        await store.create_step({"step_id": "stp_11111111_1", "trace_id": "trc_a_11111111"})


@pytest.mark.asyncio
async def test_http_error_status_raises_unavailable(clock):
    store = make_store(lambda request: httpx.Response(503, text="unavailable"), clock)

    with pytest.raises(StoreUnavailableError):
        await store.get_steps("trc_a_11111111")


@pytest.mark.asyncio
async def test_list_traces_maps_pagination(clock):
    convex = FakeConvex({
        ConvexTrackingStore.LIST_TRACES: {
            "page": [{"_id": "1", "traceId": "trc_a_11111111", "dateStarted": 5}],
            "isDone": False,
            "continueCursor": "opaque",
        },
    })
    store = make_store(convex, clock)

    page = await store.list_traces(system="ghl", limit=1)

    assert page.items == [{"trace_id": "trc_a_11111111", "date_started": 5}]
    assert page.has_more
    assert page.next_cursor == "opaque"
    _, path, args = convex.calls[0]
    assert path == ConvexTrackingStore.LIST_TRACES
    assert args == {"system": "ghl", "limit": 1}


@pytest.mark.asyncio
async def test_find_traces_sends_camel_field(clock):
    convex = FakeConvex({ConvexTrackingStore.FIND_TRACES: [{"traceId": "trc_a_11111111", "contactId": "c1"}]})
    store = make_store(convex, clock)

    rows = await store.find_traces("contact_id", "c1")

    assert rows == [{"trace_id": "trc_a_11111111", "contact_id": "c1"}]
    assert convex.calls[0][2] == {"field": "contactId", "value": "c1", "limit": 50}


@pytest.mark.asyncio
async def test_delete_before_maps_counts(clock):
    convex = FakeConvex({
        ConvexTrackingStore.DELETE_BEFORE: {
            "deletedTraces": 2,
            "deletedSteps": 5,
            "deletedDetails": 9,
            "hasMore": True,
        },
    })
    store = make_store(convex, clock)

    result = await store.delete_traces_before(1000, batch_size=2)

    assert result.to_dict() == {"deleted_traces": 2, "deleted_steps": 5, "deleted_details": 9, "has_more": True}
    assert convex.calls[0][2] == {"cutoff": 1000, "batchSize": 2}
