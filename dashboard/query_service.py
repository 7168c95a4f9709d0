"""
Trace Query Service

Read side of the tracing subsystem: trace listings, full trace
reconstruction (trace -> steps -> details), correlation-ID search,
statistics and retention cleanup.

DESIGN RULES:
- Read-only except cleanup_old_traces
- Unknown IDs return None / [] (never raise)
- Ordering comes from stored sequence numbers, not arrival time
"""

import logging
import math
import time
from collections import Counter
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from dashboard.workflow_matcher import MatchedWorkflow, match_workflow
from observability.models import CORRELATION_FIELDS, summarize_trace
from storage.store import CleanupResult, TracePage, TrackingStore

if TYPE_CHECKING:
    from dashboard.templates import TemplateRegistry

logger = logging.getLogger(__name__)

ALL_SYSTEMS = "all"
DAY_MS = 24 * 60 * 60 * 1000


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def sequence_key(row: Dict[str, Any]) -> tuple:
    """Order by sequence, then start time; rows without a sequence sort last."""
    sequence = row.get("sequence")
    started = row.get("date_started")
    return (
        sequence if _is_number(sequence) else math.inf,
        started if _is_number(started) else 0,
    )


class TraceQueryService:
    """
    Args:
        store: TrackingStore to read from
        clock: Time source (seconds), injectable for retention tests
    """

    def __init__(self, store: TrackingStore, clock=time.time):
        self._store = store
        self._clock = clock

    async def list_traces(
        self,
        system: str = ALL_SYSTEMS,
        status: Optional[str] = None,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> TracePage:
        """
        Most recent traces first, as summary rows.

        Args:
            system: Logical system ("ghl", "clio", ...) or "all"
            status: Optional status filter
            limit: Page size
            cursor: Opaque cursor from a previous page
        """
        page = await self._store.list_traces(
            system=None if system in (None, ALL_SYSTEMS) else system,
            status=status,
            limit=limit,
            cursor=cursor,
        )
        return TracePage(
            items=[summarize_trace(row) for row in page.items],
            has_more=page.has_more,
            next_cursor=page.next_cursor,
        )

    async def get_trace_details(self, trace_id: str) -> Optional[Dict[str, Any]]:
        """
        Rebuild one trace as {trace, steps: [{...step, details}], orphan_details}.

        Returns:
            The reconstructed trace, or None if the trace does not exist
        """
        trace = await self._store.get_trace(trace_id)
        if trace is None:
            return None

        steps = sorted(await self._store.get_steps(trace_id), key=sequence_key)
        details = sorted(await self._store.get_details(trace_id), key=sequence_key)

        keyed_steps = [step for step in steps if step.get("step_id")]
        if len(keyed_steps) != len(steps):
            logger.warning(f"[{trace_id}] Dropped {len(steps) - len(keyed_steps)} step rows without step_id")

        by_step: Dict[str, List[Dict[str, Any]]] = {step["step_id"]: [] for step in keyed_steps}
        orphans: List[Dict[str, Any]] = []
        for detail in details:
            bucket = by_step.get(detail.get("step_id"))
            if bucket is None:
                orphans.append(detail)
            else:
                bucket.append(detail)

        return {
            "trace": trace,
            "steps": [{**step, "details": by_step[step["step_id"]]} for step in keyed_steps],
            "orphan_details": orphans,
        }

    async def search_traces(
        self,
        contact_id: Optional[str] = None,
        opportunity_id: Optional[str] = None,
        matter_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        appointment_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Look traces up by the first correlation ID supplied."""
        supplied = {
            "contact_id": contact_id,
            "opportunity_id": opportunity_id,
            "matter_id": matter_id,
            "invoice_id": invoice_id,
            "appointment_id": appointment_id,
        }
        for field_name in CORRELATION_FIELDS:
            value = supplied[field_name]
            if value:
                rows = await self._store.find_traces(field_name, value, limit)
                return [summarize_trace(row) for row in rows]
        return []

    async def get_trace_stats(
        self,
        system: str = ALL_SYSTEMS,
        since: Optional[int] = None,
        until: Optional[int] = None,
    ) -> Dict[str, Any]:
        traces = await self._store.scan_traces(
            system=None if system in (None, ALL_SYSTEMS) else system,
            since=since,
            until=until,
        )

        durations = [t["duration_ms"] for t in traces if t.get("duration_ms") is not None]
        return {
            "total": len(traces),
            "by_status": dict(Counter(t.get("status") or "unknown" for t in traces)),
            "by_source": dict(Counter(t.get("trigger_type") or "unknown" for t in traces)),
            "by_trigger": dict(Counter(
                t.get("trigger_name") or t.get("endpoint") or "unknown" for t in traces
            )),
            "avg_duration_ms": round(sum(durations) / len(durations)) if durations else 0,
        }

    async def cleanup_old_traces(self, older_than_days: int = 30, batch_size: int = 100) -> CleanupResult:
        """Delete one batch of traces (with steps and details) older than the cutoff."""
        cutoff_ms = int(self._clock() * 1000) - older_than_days * DAY_MS
        result = await self._store.delete_traces_before(cutoff_ms, batch_size)
        logger.info(
            f"Retention: deleted {result.deleted_traces} traces, {result.deleted_steps} steps, "
            f"{result.deleted_details} details older than {older_than_days}d (has_more={result.has_more})"
        )
        return result

    async def get_workflow_path(
        self,
        trace_id: str,
        registry: "TemplateRegistry",
    ) -> Optional[Dict[str, Any]]:
        """
        Reconstruct a trace and overlay it on its workflow template.

        Returns:
            {trace, workflow} where workflow is None when no template exists,
            or None if the trace does not exist
        """
        reconstructed = await self.get_trace_details(trace_id)
        if reconstructed is None:
            return None

        template = registry.resolve(reconstructed["trace"])
        matched: Optional[MatchedWorkflow] = match_workflow(
            template,
            reconstructed["trace"],
            reconstructed["steps"],
        )
        return {
            "trace": summarize_trace(reconstructed["trace"]),
            "workflow": matched.to_dict() if matched else None,
        }
