"""
Trace Context

In-memory state for one in-flight trace: step/detail sequence counters and
accumulated stats. Lives from start_trace until complete_trace/fail_trace.

DESIGN RULES:
- Not persisted
- Counters only ever increase; recorded steps/errors are never removed
- One context per trace, never shared between traces
- Mutated from a single event loop (no locking)
"""

from typing import Any, Dict, List, Optional

from observability.ids import lineage_suffix
from observability.sanitizer import format_error


class TraceContext:
    """
    Sequencing and stats for one active trace.
    """

    def __init__(self, trace_id: str):
        self.trace_id = trace_id
        self._step_sequence = 0
        self._detail_sequences: Dict[str, int] = {}
        self._total_details = 0
        self.steps: List[str] = []
        self.errors: List[Dict[str, Any]] = []

    def next_step_sequence(self) -> int:
        self._step_sequence += 1
        return self._step_sequence

    def next_detail_sequence(self, step_id: str) -> int:
        """Next detail sequence for `step_id`, starting at 1."""
        sequence = self._detail_sequences.get(step_id, 0) + 1
        self._detail_sequences[step_id] = sequence
        self._total_details += 1
        return sequence

    def record_step(self, step_id: str) -> None:
        self.steps.append(step_id)

    def record_error(self, error: Any) -> None:
        self.errors.append(format_error(error))

    def stats(self) -> Dict[str, int]:
        return {
            "step_count": len(self.steps),
            "detail_count": self._total_details,
            "error_count": len(self.errors),
        }

    def __repr__(self) -> str:
        return f"TraceContext(trace_id={self.trace_id!r}, stats={self.stats()!r})"


class ContextRegistry:
    """
    Live trace contexts keyed by trace_id, with a lineage index.

    Owned by one recorder instance, so separate recorders (e.g. in tests)
    never see each other's traces.
    """

    def __init__(self):
        self._contexts: Dict[str, TraceContext] = {}
        self._by_suffix: Dict[str, str] = {}

    def register(self, context: TraceContext) -> None:
        self._contexts[context.trace_id] = context
        suffix = lineage_suffix(context.trace_id)
        if suffix:
            self._by_suffix[suffix] = context.trace_id

    def get(self, trace_id: Optional[str]) -> Optional[TraceContext]:
        if not trace_id:
            return None
        return self._contexts.get(trace_id)

    def find_by_lineage(self, identifier: Optional[str]) -> Optional[TraceContext]:
        """Resolve any trace/step/detail ID to its live trace context."""
        suffix = lineage_suffix(identifier)
        if suffix is None:
            return None
        trace_id = self._by_suffix.get(suffix)
        return self._contexts.get(trace_id) if trace_id else None

    def is_suffix_in_use(self, suffix: str) -> bool:
        return suffix in self._by_suffix

    def remove(self, trace_id: str) -> Optional[TraceContext]:
        context = self._contexts.pop(trace_id, None)
        suffix = lineage_suffix(trace_id)
        if suffix and self._by_suffix.get(suffix) == trace_id:
            del self._by_suffix[suffix]
        return context

    def __contains__(self, trace_id: object) -> bool:
        return trace_id in self._contexts

    def __len__(self) -> int:
        return len(self._contexts)
