"""
Tracing Data Model

Statuses, detail types and the record shapes persisted for the three
tracing levels:

- TRACE (parent): one per webhook/cron invocation
- STEP (child): one logical operation inside a trace
- DETAIL (grandchild): one external call or internal decision inside a step

DESIGN RULES:
- Pure data, no I/O
- Records are plain JSON-compatible dicts at the storage boundary
- Field names are snake_case; stores translate at their own wire boundary
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union, TYPE_CHECKING

if TYPE_CHECKING:
    from observability.context import TraceContext


# Sanitized JSON value stored for every input/output/request/response blob.
JsonValue = Union[None, bool, int, float, str, List["JsonValue"], Dict[str, "JsonValue"]]


class TriggerType(str, Enum):
    WEBHOOK = "webhook"
    CRON = "cron"


class TraceStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self is not TraceStatus.STARTED


class StepStatus(str, Enum):
    """Status of a step or detail row."""
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class DetailType(str, Enum):
    """Kind of work a detail row records."""
    API_CALL = "api_call"
    DB_QUERY = "db_query"
    DB_MUTATION = "db_mutation"
    WEBHOOK_OUT = "webhook_out"
    AI_CALL = "ai_call"
    VALIDATION = "validation"
    CALCULATION = "calculation"
    DECISION = "decision"


# Business identifiers a trace can be searched by.
CORRELATION_FIELDS = (
    "contact_id",
    "opportunity_id",
    "matter_id",
    "invoice_id",
    "appointment_id",
)


class DetailOp(str, Enum):
    """Buffered detail write operations, applied in FIFO order."""
    CREATE = "create"
    CREATE_COMPLETED = "create_completed"
    COMPLETE = "complete"
    FAIL = "fail"


@dataclass(frozen=True)
class BufferedDetailWrite:
    """
    One queued detail mutation.

    `trace_id` is kept alongside the payload so a flush can be audited
    per trace without parsing IDs.
    """
    op: DetailOp
    trace_id: str
    detail_id: str
    payload: Dict[str, Any]


@dataclass(frozen=True)
class StartedTrace:
    """Handle returned by `TraceRecorder.start_trace`."""
    trace_id: str
    context: "TraceContext"


def empty_error(message: str = "Unknown error") -> Dict[str, Any]:
    """Well-formed error shape used when nothing better is available."""
    return {
        "message": message,
        "stack": None,
        "code": None,
        "http_status": None,
        "raw": None,
    }


def summarize_trace(trace: Dict[str, Any]) -> Dict[str, Any]:
    """
    Map a stored trace row to the list/search summary shape.

    Tolerates partial rows (missing keys become None).
    """
    error = trace.get("error") or {}
    return {
        "trace_id": trace.get("trace_id"),
        "system": trace.get("system"),
        "trigger_name": trace.get("trigger_name") or trace.get("endpoint"),
        "endpoint": trace.get("endpoint"),
        "contact_id": trace.get("contact_id"),
        "opportunity_id": trace.get("opportunity_id"),
        "matter_id": trace.get("matter_id"),
        "invoice_id": trace.get("invoice_id"),
        "appointment_id": trace.get("appointment_id"),
        "status": trace.get("status"),
        "result_action": trace.get("result_action"),
        "response_status": trace.get("response_status"),
        "date_started": trace.get("date_started"),
        "date_finished": trace.get("date_finished"),
        "duration_ms": trace.get("duration_ms"),
        "source": trace.get("trigger_type"),
        "error_message": error.get("message") if isinstance(error, dict) else None,
        "step_count": trace.get("step_count"),
        "detail_count": trace.get("detail_count"),
        "error_count": trace.get("error_count"),
    }


def status_value(status: Optional[Union[str, Enum]]) -> Optional[str]:
    """Normalize an enum-or-string status to its string value."""
    if status is None:
        return None
    return status.value if isinstance(status, Enum) else str(status)
