"""
SQLite Tracking Store Tests

Runs the store against a temporary database file.
"""

import pytest

from storage.exceptions import TrackingStoreError
from storage.sqlite_store import SQLiteTrackingStore


@pytest.fixture
def sqlite_store(tmp_path, clock):
    store = SQLiteTrackingStore(str(tmp_path / "traces" / "tracing.db"), clock=clock).connect()
    yield store
    if store.conn is not None:
        store.conn.close()


def test_schema_created(sqlite_store):
    tables = {
        row["name"] for row in sqlite_store.conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        ).fetchall()
    }
    version = sqlite_store.conn.execute(
        "SELECT value FROM _metadata WHERE key = 'schema_version'"
    ).fetchone()

    assert {"_metadata", "traces", "steps", "details"} <= tables
    assert version["value"] == SQLiteTrackingStore.SCHEMA_VERSION


@pytest.mark.asyncio
async def test_trace_lifecycle(sqlite_store, clock):
    await sqlite_store.create_trace({"trace_id": "trc_a_11111111", "system": "ghl", "contact_id": "c1"})
    clock.advance(250)

    assert await sqlite_store.finish_trace("trc_a_11111111", "completed", {"response_status": 200})
    # Second terminal write is refused
    assert not await sqlite_store.finish_trace("trc_a_11111111", "failed", {"response_status": 500})

    trace = await sqlite_store.get_trace("trc_a_11111111")
    assert trace["status"] == "completed"
    assert trace["response_status"] == 200
    assert trace["duration_ms"] == 250
    assert trace["step_count"] == 0


@pytest.mark.asyncio
async def test_update_trace_preserves_status(sqlite_store):
    await sqlite_store.create_trace({"trace_id": "trc_a_11111111", "system": "ghl"})

    assert await sqlite_store.update_trace("trc_a_11111111", {"opportunity_id": "o1", "status": "completed"})
    assert not await sqlite_store.update_trace("missing", {"opportunity_id": "o1"})

    trace = await sqlite_store.get_trace("trc_a_11111111")
    assert trace["status"] == "started"
    assert [t["trace_id"] for t in await sqlite_store.find_traces("opportunity_id", "o1")] == ["trc_a_11111111"]


@pytest.mark.asyncio
async def test_steps_and_details(sqlite_store, clock):
    await sqlite_store.create_trace({"trace_id": "trc_a_11111111"})
    await sqlite_store.create_step({"step_id": "stp_11111111_1", "trace_id": "trc_a_11111111", "sequence": 1})
    await sqlite_store.create_detail({
        "detail_id": "dtl_11111111_1_1",
        "step_id": "stp_11111111_1",
        "trace_id": "trc_a_11111111",
        "sequence": 1,
        "status": "completed",
        "duration_ms": 40,
    })
    clock.advance(10)

    assert await sqlite_store.finish_step("stp_11111111_1", "failed", {"error": {"message": "x"}})
    assert not await sqlite_store.finish_detail("dtl_11111111_1_1", "failed", {})
    assert not await sqlite_store.finish_step("stp_missing", "completed", {})

    step = (await sqlite_store.get_steps("trc_a_11111111"))[0]
    detail = (await sqlite_store.get_details("trc_a_11111111"))[0]

    assert step["status"] == "failed"
    assert step["error"] == {"message": "x"}
    assert detail["status"] == "completed"
    assert detail["date_finished"] - detail["date_started"] == 40


@pytest.mark.asyncio
async def test_list_traces_cursor(sqlite_store, clock):
    for n in range(3):
        await sqlite_store.create_trace({"trace_id": f"trc_{n}_0000000{n}", "system": "ghl"})
        clock.advance(1000)
    await sqlite_store.create_trace({"trace_id": "trc_c_99999999", "system": "clio"})

    first = await sqlite_store.list_traces(system="ghl", limit=2)
    second = await sqlite_store.list_traces(system="ghl", limit=2, cursor=first.next_cursor)

    assert [t["trace_id"] for t in first.items] == ["trc_2_00000002", "trc_1_00000001"]
    assert first.has_more
    assert [t["trace_id"] for t in second.items] == ["trc_0_00000000"]
    assert not second.has_more
    assert len((await sqlite_store.list_traces()).items) == 4


@pytest.mark.asyncio
async def test_find_traces_rejects_unknown_field(sqlite_store):
    with pytest.raises(ValueError):
        await sqlite_store.find_traces("email", "a@b.c")


@pytest.mark.asyncio
async def test_scan_window(sqlite_store, clock):
    await sqlite_store.create_trace({"trace_id": "trc_a_11111111", "system": "ghl"})
    start = sqlite_store.now_ms()
    clock.advance(5000)
    await sqlite_store.create_trace({"trace_id": "trc_b_22222222", "system": "ghl"})

    recent = await sqlite_store.scan_traces(system="ghl", since=start + 1)

    assert [t["trace_id"] for t in recent] == ["trc_b_22222222"]


@pytest.mark.asyncio
async def test_delete_traces_before_batches(sqlite_store, clock):
    for n in range(3):
        trace_id = f"trc_{n}_0000000{n}"
        await sqlite_store.create_trace({"trace_id": trace_id})
        await sqlite_store.create_step({"step_id": f"stp_0000000{n}_1", "trace_id": trace_id})
        await sqlite_store.create_detail({
            "detail_id": f"dtl_0000000{n}_1_1",
            "step_id": f"stp_0000000{n}_1",
            "trace_id": trace_id,
        })
        clock.advance(1000)

    cutoff = sqlite_store.now_ms()
    first = await sqlite_store.delete_traces_before(cutoff, batch_size=2)
    second = await sqlite_store.delete_traces_before(cutoff, batch_size=2)

    assert first.to_dict() == {"deleted_traces": 2, "deleted_steps": 2, "deleted_details": 2, "has_more": True}
    assert second.deleted_traces == 1
    assert not second.has_more
    # Oldest go first
    assert await sqlite_store.get_trace("trc_0_00000000") is None
    assert (await sqlite_store.list_traces()).items == []


@pytest.mark.asyncio
async def test_close_then_reconnect_on_use(sqlite_store):
    await sqlite_store.create_trace({"trace_id": "trc_a_11111111"})
    await sqlite_store.close()

    assert sqlite_store.conn is None
    assert (await sqlite_store.get_trace("trc_a_11111111"))["trace_id"] == "trc_a_11111111"


@pytest.mark.asyncio
async def test_sqlite_errors_are_wrapped(sqlite_store):
    sqlite_store.conn.execute("DROP TABLE steps")

    with pytest.raises(TrackingStoreError):
        await sqlite_store.create_step({"step_id": "stp_1", "trace_id": "trc_a_11111111"})


@pytest.mark.asyncio
async def test_delete_exact_batch_reports_no_more(sqlite_store, clock):
    await sqlite_store.create_trace({"trace_id": "trc_a_11111111"})
    await sqlite_store.create_trace({"trace_id": "trc_b_22222222"})
    clock.advance(1000)

    result = await sqlite_store.delete_traces_before(sqlite_store.now_ms(), batch_size=2)

    assert result.deleted_traces == 2
    assert not result.has_more
