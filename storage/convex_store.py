"""
Convex Tracking Store

Talks to a hosted Convex deployment through its HTTP function API:

    POST {deployment}/api/mutation   {"path": "tracing/traces:createTrace", "args": {...}, "format": "json"}
    POST {deployment}/api/query      {"path": "tracing/traces:getTrace", "args": {...}, "format": "json"}

The Convex functions themselves live in the deployment, not in this repo.
Top-level row keys are camelCase on the wire and snake_case in Python;
nested payloads (request/response bodies) are passed through untouched.
"""

import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from storage.exceptions import StoreFunctionError, StoreUnavailableError
from storage.store import CleanupResult, TracePage, TrackingStore

logger = logging.getLogger(__name__)


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def to_wire(row: Dict[str, Any]) -> Dict[str, Any]:
    """Camel-case top-level keys and drop None (Convex rejects null for optional fields)."""
    return {to_camel(key): value for key, value in row.items() if value is not None}


def from_wire(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if document is None:
        return None
    return {
        to_snake(key): value
        for key, value in document.items()
        if not key.startswith("_")
    }


class ConvexTrackingStore(TrackingStore):
    """
    Tracking store backed by Convex mutations and queries.

    Args:
        url: Deployment URL, e.g. https://happy-animal-123.convex.cloud
        timeout: Per-request timeout in seconds
        client: Optional pre-built httpx.AsyncClient (tests inject a MockTransport)
    """

    CREATE_TRACE = "tracing/traces:createTrace"
    FINISH_TRACE = "tracing/traces:finishTrace"
    UPDATE_TRACE = "tracing/traces:updateTrace"
    CREATE_STEP = "tracing/steps:createStep"
    FINISH_STEP = "tracing/steps:finishStep"
    CREATE_DETAIL = "tracing/details:createDetail"
    FINISH_DETAIL = "tracing/details:finishDetail"
    DELETE_BEFORE = "tracing/cleanup:deleteTracesBefore"

    GET_TRACE = "tracing/traces:getTrace"
    LIST_TRACES = "tracing/traces:listTraces"
    FIND_TRACES = "tracing/traces:findTraces"
    SCAN_TRACES = "tracing/traces:scanTraces"
    GET_STEPS = "tracing/steps:getSteps"
    GET_DETAILS = "tracing/details:getDetails"

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(clock)
        self.url = url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.url, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    # ============================================================
    # TRANSPORT
    # ============================================================

    async def _call(self, kind: str, path: str, args: Dict[str, Any]) -> Any:
        try:
            response = await self._client.post(
                f"/api/{kind}",
                json={"path": path, "args": args, "format": "json"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise StoreUnavailableError(f"Convex {kind} {path} failed: {e}") from e

        payload = response.json()
        if payload.get("status") == "error":
            raise StoreFunctionError(payload.get("errorMessage") or "Convex function error", function=path)

        for line in payload.get("logLines") or []:
            logger.debug(f"[convex] {path}: {line}")
        return payload.get("value")

    async def _mutation(self, path: str, args: Dict[str, Any]) -> Any:
        return await self._call("mutation", path, args)

    async def _query(self, path: str, args: Dict[str, Any]) -> Any:
        return await self._call("query", path, args)

    async def _finish(self, path: str, key_name: str, key: str, status: str, fields: Dict[str, Any]) -> bool:
        args = to_wire(fields)
        args.update({key_name: key, "status": status, "now": self.now_ms()})
        accepted = await self._mutation(path, args)
        if not accepted:
            logger.warning(f"Convex refused {status} for {key}")
        return bool(accepted)

    # ============================================================
    # WRITES
    # ============================================================

    async def create_trace(self, row: Dict[str, Any]) -> None:
        await self._mutation(self.CREATE_TRACE, {**to_wire(row), "now": self.now_ms()})

    async def finish_trace(self, trace_id: str, status: str, fields: Dict[str, Any]) -> bool:
        return await self._finish(self.FINISH_TRACE, "traceId", trace_id, status, fields)

    async def update_trace(self, trace_id: str, fields: Dict[str, Any]) -> bool:
        fields = {key: value for key, value in fields.items() if key != "status"}
        return bool(await self._mutation(self.UPDATE_TRACE, {**to_wire(fields), "traceId": trace_id}))

    async def create_step(self, row: Dict[str, Any]) -> None:
        await self._mutation(self.CREATE_STEP, {**to_wire(row), "now": self.now_ms()})

    async def finish_step(self, step_id: str, status: str, fields: Dict[str, Any]) -> bool:
        return await self._finish(self.FINISH_STEP, "stepId", step_id, status, fields)

    async def create_detail(self, row: Dict[str, Any]) -> None:
        await self._mutation(self.CREATE_DETAIL, {**to_wire(row), "now": self.now_ms()})

    async def finish_detail(self, detail_id: str, status: str, fields: Dict[str, Any]) -> bool:
        return await self._finish(self.FINISH_DETAIL, "detailId", detail_id, status, fields)

    async def delete_traces_before(self, cutoff_ms: int, batch_size: int = 100) -> CleanupResult:
        value = await self._mutation(self.DELETE_BEFORE, {"cutoff": cutoff_ms, "batchSize": batch_size}) or {}
        return CleanupResult(
            deleted_traces=value.get("deletedTraces", 0),
            deleted_steps=value.get("deletedSteps", 0),
            deleted_details=value.get("deletedDetails", 0),
            has_more=bool(value.get("hasMore", False)),
        )

    # ============================================================
    # READS
    # ============================================================

    async def get_trace(self, trace_id: str) -> Optional[Dict[str, Any]]:
        return from_wire(await self._query(self.GET_TRACE, {"traceId": trace_id}))

    async def list_traces(
        self,
        system: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> TracePage:
        args = to_wire({"system": system, "status": status, "cursor": cursor})
        args["limit"] = limit
        value = await self._query(self.LIST_TRACES, args) or {}

        # Convex pagination result: {page, isDone, continueCursor}
        is_done = value.get("isDone", True)
        return TracePage(
            items=[from_wire(row) for row in value.get("page", [])],
            has_more=not is_done,
            next_cursor=None if is_done else value.get("continueCursor"),
        )

    async def find_traces(self, field_name: str, value: str, limit: int = 50) -> List[Dict[str, Any]]:
        self.check_correlation_field(field_name)
        rows = await self._query(
            self.FIND_TRACES,
            {"field": to_camel(field_name), "value": value, "limit": limit},
        )
        return [from_wire(row) for row in rows or []]

    async def get_steps(self, trace_id: str) -> List[Dict[str, Any]]:
        return [from_wire(row) for row in await self._query(self.GET_STEPS, {"traceId": trace_id}) or []]

    async def get_details(self, trace_id: str) -> List[Dict[str, Any]]:
        return [from_wire(row) for row in await self._query(self.GET_DETAILS, {"traceId": trace_id}) or []]

    async def scan_traces(
        self,
        system: Optional[str] = None,
        since: Optional[int] = None,
        until: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        rows = await self._query(self.SCAN_TRACES, to_wire({"system": system, "since": since, "until": until}))
        return [from_wire(row) for row in rows or []]
