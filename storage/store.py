"""
Tracking Store Interface

Abstract persistence facade for the three tracing tables:
traces, steps, details.

Storage-agnostic - implementations can write to memory, SQLite,
a hosted document database, etc.

DESIGN RULES:
- Rows are plain JSON-compatible dicts with snake_case keys
- The store assigns timestamps (epoch milliseconds)
- A row leaves `started` at most once; later terminal writes are refused
- Reads return copies, never live rows
- Implementations raise TrackingStoreError; callers decide what to swallow
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from observability.models import CORRELATION_FIELDS, TraceStatus


TERMINAL_STATUSES = frozenset(status.value for status in TraceStatus if status.is_terminal)


@dataclass
class TracePage:
    """One page of trace rows, most recent first."""
    items: List[Dict[str, Any]] = field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = None


@dataclass
class CleanupResult:
    """Counts from a retention pass."""
    deleted_traces: int = 0
    deleted_steps: int = 0
    deleted_details: int = 0
    has_more: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deleted_traces": self.deleted_traces,
            "deleted_steps": self.deleted_steps,
            "deleted_details": self.deleted_details,
            "has_more": self.has_more,
        }


# ============================================================
# SHARED ROW HELPERS
# ============================================================

def encode_cursor(row: Dict[str, Any]) -> str:
    return f"{row.get('date_started') or 0}:{row.get('trace_id')}"


def decode_cursor(cursor: Optional[str]) -> Optional[Tuple[int, str]]:
    """Parse `<date_started>:<trace_id>`; malformed cursors mean 'first page'."""
    if not cursor:
        return None
    started, _, trace_id = cursor.partition(":")
    try:
        return int(started), trace_id
    except ValueError:
        return None


def sort_key(row: Dict[str, Any]) -> Tuple[int, str]:
    return (row.get("date_started") or 0, row.get("trace_id") or "")


def is_before_cursor(row: Dict[str, Any], position: Tuple[int, str]) -> bool:
    """True if `row` comes after the cursor position in newest-first order."""
    return sort_key(row) < position


def terminal_patch(
    row: Dict[str, Any],
    status: str,
    fields: Dict[str, Any],
    now_ms: int,
) -> Optional[Dict[str, Any]]:
    """
    Build the update for a started -> terminal transition.

    Returns None when the row already left `started`, so a second
    completion can never overwrite date_finished/duration_ms.
    """
    if row.get("status") in TERMINAL_STATUSES:
        return None

    patch = {key: value for key, value in fields.items() if value is not None}
    started = row.get("date_started") or now_ms
    patch["status"] = status
    patch["date_finished"] = now_ms
    patch["duration_ms"] = max(0, now_ms - started)
    return patch


def new_row(row: Dict[str, Any], now_ms: int, defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Stamp a freshly created row.

    Rows created already terminal (one-shot details) carry their own
    duration; their start time is back-dated from it.
    """
    created = dict(defaults or {})
    created.update({key: value for key, value in row.items() if value is not None})
    created.setdefault("status", TraceStatus.STARTED.value)

    if created["status"] in TERMINAL_STATUSES:
        duration = int(created.get("duration_ms") or 0)
        created["duration_ms"] = duration
        created["date_started"] = now_ms - duration
        created["date_finished"] = now_ms
    else:
        created["date_started"] = now_ms
    return created


TRACE_DEFAULTS = {"step_count": 0, "detail_count": 0, "error_count": 0}


# ============================================================
# INTERFACE
# ============================================================

class TrackingStore(ABC):
    """
    Abstract base for trace/step/detail persistence.

    Implementations:
    - InMemoryTrackingStore (tests, local runs)
    - SQLiteTrackingStore (single-host deployments)
    - ConvexTrackingStore (hosted Convex deployment over HTTP)
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    # --- traces ---

    @abstractmethod
    async def create_trace(self, row: Dict[str, Any]) -> None:
        """Insert a trace in `started` status."""

    @abstractmethod
    async def finish_trace(self, trace_id: str, status: str, fields: Dict[str, Any]) -> bool:
        """Move a trace to a terminal status. Returns False if refused or unknown."""

    @abstractmethod
    async def update_trace(self, trace_id: str, fields: Dict[str, Any]) -> bool:
        """Partial, status-preserving update (correlation IDs, result action)."""

    # --- steps ---

    @abstractmethod
    async def create_step(self, row: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def finish_step(self, step_id: str, status: str, fields: Dict[str, Any]) -> bool:
        pass

    # --- details ---

    @abstractmethod
    async def create_detail(self, row: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def finish_detail(self, detail_id: str, status: str, fields: Dict[str, Any]) -> bool:
        pass

    # --- reads ---

    @abstractmethod
    async def get_trace(self, trace_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_traces(
        self,
        system: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        cursor: Optional[str] = None,
    ) -> TracePage:
        """Newest first. `system=None` means all systems."""

    @abstractmethod
    async def find_traces(self, field_name: str, value: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Index lookup on one correlation field, newest first."""

    @abstractmethod
    async def get_steps(self, trace_id: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def get_details(self, trace_id: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def scan_traces(
        self,
        system: Optional[str] = None,
        since: Optional[int] = None,
        until: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """All traces in a start-time window (used for statistics)."""

    @abstractmethod
    async def delete_traces_before(self, cutoff_ms: int, batch_size: int = 100) -> CleanupResult:
        """Delete up to `batch_size` traces started before the cutoff, with children."""

    async def close(self) -> None:
        """Release backend resources."""
        return None

    @staticmethod
    def check_correlation_field(field_name: str) -> None:
        if field_name not in CORRELATION_FIELDS:
            raise ValueError(f"Not a correlation field: {field_name}")
