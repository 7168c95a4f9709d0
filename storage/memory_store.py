"""
In-Memory Tracking Store

Process-local storage for traces, steps and details.
NOT persistent - data lives only in process memory.

Used by the test suite and for local runs (`storage_url = "memory://"`).
"""

import copy
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from storage.store import (
    CleanupResult,
    TRACE_DEFAULTS,
    TracePage,
    TrackingStore,
    decode_cursor,
    encode_cursor,
    is_before_cursor,
    new_row,
    sort_key,
    terminal_patch,
)

logger = logging.getLogger(__name__)


class InMemoryTrackingStore(TrackingStore):
    """
    Dict-backed tracking store.

    Keeps a write log (`operations`) so tests can assert the order in which
    mutations reached storage.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._traces: Dict[str, Dict[str, Any]] = {}
        self._steps: Dict[str, Dict[str, Any]] = {}
        self._details: Dict[str, Dict[str, Any]] = {}
        self.operations: List[tuple] = []

    def _log(self, name: str, key: str) -> None:
        self.operations.append((name, key))

    # --- traces ---

    async def create_trace(self, row: Dict[str, Any]) -> None:
        self._log("create_trace", row["trace_id"])
        self._traces[row["trace_id"]] = new_row(row, self.now_ms(), TRACE_DEFAULTS)

    async def finish_trace(self, trace_id: str, status: str, fields: Dict[str, Any]) -> bool:
        self._log(f"{status}_trace", trace_id)
        return self._finish(self._traces, "trace", trace_id, status, fields)

    async def update_trace(self, trace_id: str, fields: Dict[str, Any]) -> bool:
        self._log("update_trace", trace_id)
        trace = self._traces.get(trace_id)
        if trace is None:
            return False
        fields = {key: value for key, value in fields.items() if key != "status" and value is not None}
        trace.update(fields)
        return True

    # --- steps ---

    async def create_step(self, row: Dict[str, Any]) -> None:
        self._log("create_step", row["step_id"])
        self._steps[row["step_id"]] = new_row(row, self.now_ms())

    async def finish_step(self, step_id: str, status: str, fields: Dict[str, Any]) -> bool:
        self._log(f"{status}_step", step_id)
        return self._finish(self._steps, "step", step_id, status, fields)

    # --- details ---

    async def create_detail(self, row: Dict[str, Any]) -> None:
        self._log("create_detail", row["detail_id"])
        self._details[row["detail_id"]] = new_row(row, self.now_ms())

    async def finish_detail(self, detail_id: str, status: str, fields: Dict[str, Any]) -> bool:
        self._log(f"{status}_detail", detail_id)
        return self._finish(self._details, "detail", detail_id, status, fields)

    def _finish(
        self,
        table: Dict[str, Dict[str, Any]],
        kind: str,
        key: str,
        status: str,
        fields: Dict[str, Any],
    ) -> bool:
        row = table.get(key)
        if row is None:
            logger.warning(f"{kind} not found: {key}")
            return False

        patch = terminal_patch(row, status, fields, self.now_ms())
        if patch is None:
            logger.warning(f"{kind} {key} already {row.get('status')}; ignoring {status}")
            return False

        row.update(patch)
        return True

    # --- reads ---

    async def get_trace(self, trace_id: str) -> Optional[Dict[str, Any]]:
        trace = self._traces.get(trace_id)
        return copy.deepcopy(trace) if trace is not None else None

    async def list_traces(
        self,
        system: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> TracePage:
        rows = [
            trace for trace in self._traces.values()
            if (system is None or trace.get("system") == system)
            and (status is None or trace.get("status") == status)
        ]
        rows.sort(key=sort_key, reverse=True)

        position = decode_cursor(cursor)
        if position is not None:
            rows = [row for row in rows if is_before_cursor(row, position)]

        page = rows[:limit]
        has_more = len(rows) > limit
        return TracePage(
            items=copy.deepcopy(page),
            has_more=has_more,
            next_cursor=encode_cursor(page[-1]) if has_more and page else None,
        )

    async def find_traces(self, field_name: str, value: str, limit: int = 50) -> List[Dict[str, Any]]:
        self.check_correlation_field(field_name)
        rows = [trace for trace in self._traces.values() if trace.get(field_name) == value]
        rows.sort(key=sort_key, reverse=True)
        return copy.deepcopy(rows[:limit])

    async def get_steps(self, trace_id: str) -> List[Dict[str, Any]]:
        return copy.deepcopy([step for step in self._steps.values() if step.get("trace_id") == trace_id])

    async def get_details(self, trace_id: str) -> List[Dict[str, Any]]:
        return copy.deepcopy([detail for detail in self._details.values() if detail.get("trace_id") == trace_id])

    async def scan_traces(
        self,
        system: Optional[str] = None,
        since: Optional[int] = None,
        until: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        rows = []
        for trace in self._traces.values():
            started = trace.get("date_started") or 0
            if system is not None and trace.get("system") != system:
                continue
            if since is not None and started < since:
                continue
            if until is not None and started > until:
                continue
            rows.append(trace)
        return copy.deepcopy(rows)

    async def delete_traces_before(self, cutoff_ms: int, batch_size: int = 100) -> CleanupResult:
        old = sorted(
            (trace for trace in self._traces.values() if (trace.get("date_started") or 0) < cutoff_ms),
            key=sort_key,
        )

        result = CleanupResult(has_more=len(old) > batch_size)
        for trace in old[:batch_size]:
            trace_id = trace["trace_id"]
            for detail_id in [d for d, row in self._details.items() if row.get("trace_id") == trace_id]:
                del self._details[detail_id]
                result.deleted_details += 1
            for step_id in [s for s, row in self._steps.items() if row.get("trace_id") == trace_id]:
                del self._steps[step_id]
                result.deleted_steps += 1
            del self._traces[trace_id]
            result.deleted_traces += 1
        return result
