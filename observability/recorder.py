"""
Trace Recorder

Core tracing API threaded through every automation:

    trace  = start_trace(...)                  one per webhook/cron run
    step   = start_step(trace_id, ...)         one per logical operation
    detail = start_detail(trace_id, step_id)   one per external call / decision

DESIGN RULES:
- Never throw: every public method is guarded and returns a usable value
- Store failures are logged and swallowed, never retried
- Missing trace context degrades to a no-op returning an inert ID
- Detail writes are buffered; complete_trace/fail_trace flush before the
  terminal write, so no detail lands after its trace is terminal
- Contexts live in a registry owned by this recorder (no module state)
"""

import functools
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Union, TYPE_CHECKING

from observability.buffer import DEFAULT_BUFFER_SIZE, DEFAULT_FLUSH_INTERVAL, DetailBuffer, Scheduler
from observability.context import ContextRegistry, TraceContext
from observability.ids import (
    NULL_DETAIL_ID,
    NULL_STEP_ID,
    generate_detail_id,
    generate_random_detail_id,
    generate_step_id,
    generate_trace_id,
    is_inert,
    random_suffix,
)
from observability.models import (
    CORRELATION_FIELDS,
    BufferedDetailWrite,
    DetailOp,
    DetailType,
    StartedTrace,
    StepStatus,
    TraceStatus,
    TriggerType,
    status_value,
)
from observability.sanitizer import (
    DEFAULT_MAX_PAYLOAD_SIZE,
    extract_context_ids,
    format_error,
    sanitize_headers,
    to_storable,
)

if TYPE_CHECKING:
    from storage.store import TrackingStore

logger = logging.getLogger(__name__)


def guarded(fallback: Any = None):
    """
    Wrap a recorder coroutine so it can never raise into business code.

    Args:
        fallback: Value returned on failure. Callables are invoked
            (with no arguments) to build a fresh value per failure.
    """
    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(self, *args, **kwargs):
            try:
                return await fn(self, *args, **kwargs)
            except Exception:
                logger.exception(f"Tracing call {fn.__name__} failed")
                return fallback() if callable(fallback) else fallback
        return wrapper
    return decorator


def _detached_trace() -> StartedTrace:
    """Unregistered trace handle, returned when start_trace itself blows up."""
    trace_id = generate_trace_id()
    return StartedTrace(trace_id=trace_id, context=TraceContext(trace_id))


# Detail fields copied as-is; everything else is a payload and goes through to_storable.
_PLAIN_DETAIL_FIELDS = frozenset({
    "api_provider",
    "api_endpoint",
    "api_method",
    "response_status",
    "operation_name",
    "duration_ms",
})
_HEADER_DETAIL_FIELDS = frozenset({"request_headers", "response_headers"})
_PAYLOAD_DETAIL_FIELDS = frozenset({
    "request_body",
    "request_query",
    "response_body",
    "operation_input",
    "operation_output",
})


class TraceRecorder:
    """
    Records traces, steps and details into a TrackingStore.

    Args:
        store: Persistence backend, or None to run with tracing disabled
        system: Logical partition stamped on every trace (e.g. "ghl", "clio")
        environment: Deployment environment stamped on every trace
        buffer_size: Detail queue length that forces a flush
        flush_interval: Idle seconds before buffered details are flushed
        scheduler: Timer source for the buffer (tests inject a manual one)
        max_payload_size: Serialized size above which payloads are replaced by a marker
        registry: Live context registry (a fresh one per recorder by default)
    """

    def __init__(
        self,
        store: Optional["TrackingStore"],
        *,
        system: str = "ghl",
        environment: str = "development",
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        scheduler: Optional[Scheduler] = None,
        max_payload_size: int = DEFAULT_MAX_PAYLOAD_SIZE,
        registry: Optional[ContextRegistry] = None,
    ):
        self._store = store
        self.system = system
        self.environment = environment
        self.max_payload_size = max_payload_size
        self._registry = registry or ContextRegistry()
        self._buffer = DetailBuffer(
            self._apply_detail_write,
            max_size=buffer_size,
            flush_interval=flush_interval,
            scheduler=scheduler,
        )

    @property
    def store(self) -> Optional["TrackingStore"]:
        return self._store

    @property
    def registry(self) -> ContextRegistry:
        return self._registry

    @property
    def buffer(self) -> DetailBuffer:
        return self._buffer

    def is_enabled(self) -> bool:
        return self._store is not None

    def get_trace_context(self, trace_id: Optional[str]) -> Optional[TraceContext]:
        return self._registry.get(trace_id)

    # ============================================================
    # INTERNALS
    # ============================================================

    async def _persist(self, operation: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Run one store call; absent store is a no-op, failures are logged and dropped."""
        if self._store is None:
            return None
        try:
            return await call()
        except Exception as e:
            logger.warning(f"Tracking store {operation} failed: {e}")
            return None

    def _storable(self, value: Any) -> Any:
        return to_storable(value, self.max_payload_size)

    def _new_trace_id(self) -> str:
        suffix = random_suffix()
        while self._registry.is_suffix_in_use(suffix):
            suffix = random_suffix()
        return generate_trace_id(suffix=suffix)

    def _detail_fields(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        row: Dict[str, Any] = {}
        for name, value in fields.items():
            if name in _PLAIN_DETAIL_FIELDS:
                row[name] = value
            elif name in _HEADER_DETAIL_FIELDS:
                row[name] = sanitize_headers(value) if value is not None else None
            elif name in _PAYLOAD_DETAIL_FIELDS:
                row[name] = self._storable(value)
            else:
                logger.debug(f"Ignoring unknown detail field: {name}")
        return row

    async def _enqueue(self, op: DetailOp, trace_id: str, detail_id: str, payload: Dict[str, Any]) -> None:
        if self._store is None:
            return
        await self._buffer.add(BufferedDetailWrite(op=op, trace_id=trace_id, detail_id=detail_id, payload=payload))

    async def _apply_detail_write(self, write: BufferedDetailWrite) -> None:
        if self._store is None:
            return
        if write.op in (DetailOp.CREATE, DetailOp.CREATE_COMPLETED):
            await self._store.create_detail(write.payload)
        elif write.op is DetailOp.COMPLETE:
            await self._store.finish_detail(write.detail_id, StepStatus.COMPLETED.value, write.payload)
        elif write.op is DetailOp.FAIL:
            await self._store.finish_detail(write.detail_id, StepStatus.FAILED.value, write.payload)

    async def _finish_trace(
        self,
        trace_id: str,
        status: str,
        fields: Dict[str, Any],
        error: Any = None,
    ) -> None:
        # Tear down first so nothing new can be queued for this trace.
        context = self._registry.remove(trace_id)
        if context is None:
            logger.warning(f"[{trace_id}] No active context at {status}; stats unavailable")
        else:
            if error is not None:
                context.record_error(error)
            fields.update(context.stats())

        await self._buffer.flush()
        await self._persist(f"{status}_trace", lambda: self._store.finish_trace(trace_id, status, fields))

    # ============================================================
    # TRACES
    # ============================================================

    @guarded(fallback=_detached_trace)
    async def start_trace(
        self,
        endpoint: str,
        http_method: Optional[str] = "POST",
        headers: Any = None,
        body: Any = None,
        query: Any = None,
        ip: Optional[str] = None,
        trigger_type: Union[TriggerType, str] = TriggerType.WEBHOOK,
        trigger_name: Optional[str] = None,
    ) -> StartedTrace:
        """
        Open a trace and register its context.

        Always returns a usable trace handle, even when storage is disabled
        or the create write fails.
        """
        trace_id = self._new_trace_id()
        context = TraceContext(trace_id)
        self._registry.register(context)

        row = {
            "trace_id": trace_id,
            "system": self.system,
            "environment": self.environment,
            "trigger_type": status_value(trigger_type),
            "trigger_name": trigger_name,
            "endpoint": endpoint,
            "http_method": http_method,
            "request_headers": sanitize_headers(headers),
            "request_body": self._storable(body),
            "request_query": self._storable(query),
            "request_ip": ip,
            "status": TraceStatus.STARTED.value,
        }
        row.update(extract_context_ids(body))

        await self._persist("create_trace", lambda: self._store.create_trace(row))
        logger.debug(f"[{trace_id}] Trace started: {http_method} {endpoint}")
        return StartedTrace(trace_id=trace_id, context=context)

    @guarded()
    async def complete_trace(self, trace_id: str, response_status: Optional[int] = 200, response_body: Any = None) -> None:
        await self._finish_trace(trace_id, TraceStatus.COMPLETED.value, {
            "response_status": response_status,
            "response_body": self._storable(response_body),
        })

    @guarded()
    async def fail_trace(
        self,
        trace_id: str,
        error: Any,
        response_status: Optional[int] = 500,
        response_body: Any = None,
    ) -> None:
        await self._finish_trace(
            trace_id,
            TraceStatus.FAILED.value,
            {
                "response_status": response_status,
                "response_body": self._storable(response_body),
                "error": format_error(error),
            },
            error=error,
        )

    @guarded()
    async def update_trace_context_ids(self, trace_id: str, ids: Optional[Dict[str, Any]]) -> None:
        """Late-bind correlation IDs. Unknown keys and empty values are ignored."""
        fields = {
            name: str(value)
            for name, value in (ids or {}).items()
            if name in CORRELATION_FIELDS and value not in (None, "")
        }
        if not fields:
            return
        await self._persist("update_trace", lambda: self._store.update_trace(trace_id, fields))

    @guarded()
    async def update_trace_result(self, trace_id: str, result_action: Optional[str]) -> None:
        """Record the business outcome label the workflow matcher keys outcomes on."""
        if not result_action:
            return
        await self._persist(
            "update_trace",
            lambda: self._store.update_trace(trace_id, {"result_action": result_action}),
        )

    # ============================================================
    # STEPS
    # ============================================================

    @guarded(fallback=NULL_STEP_ID)
    async def start_step(
        self,
        trace_id: str,
        service_name: str,
        function_name: str,
        input: Any = None,
        context_data: Any = None,
    ) -> str:
        context = self._registry.get(trace_id)
        if context is None:
            logger.debug(f"start_step without active trace {trace_id}; {service_name}.{function_name} not recorded")
            return NULL_STEP_ID

        sequence = context.next_step_sequence()
        step_id = generate_step_id(trace_id, sequence)
        context.record_step(step_id)

        row = {
            "step_id": step_id,
            "trace_id": trace_id,
            "service_name": service_name,
            "function_name": function_name,
            "sequence": sequence,
            "input": self._storable(input),
            "context_data": self._storable(context_data),
            "status": StepStatus.STARTED.value,
        }
        await self._persist("create_step", lambda: self._store.create_step(row))
        return step_id

    @guarded()
    async def complete_step(self, step_id: str, output: Any = None) -> None:
        if self._registry.find_by_lineage(step_id) is None:
            return
        fields = {"output": self._storable(output)}
        await self._persist(
            "completed_step",
            lambda: self._store.finish_step(step_id, StepStatus.COMPLETED.value, fields),
        )

    @guarded()
    async def fail_step(self, step_id: str, error: Any, trace_id: Optional[str] = None) -> None:
        """
        Mark a step failed and count the error on its trace.

        `trace_id` is accepted for call-site symmetry; the owning trace is
        derived from the step ID.
        """
        context = self._registry.find_by_lineage(step_id)
        if context is None:
            return
        if trace_id and trace_id != context.trace_id:
            logger.warning(f"fail_step: {step_id} belongs to {context.trace_id}, not {trace_id}")
        context.record_error(error)

        fields = {"error": format_error(error)}
        await self._persist(
            "failed_step",
            lambda: self._store.finish_step(step_id, StepStatus.FAILED.value, fields),
        )

    @guarded()
    async def skip_step(self, step_id: str, reason: str) -> None:
        if self._registry.find_by_lineage(step_id) is None:
            return
        fields = {"output": {"skipped_reason": reason}}
        await self._persist(
            "skipped_step",
            lambda: self._store.finish_step(step_id, StepStatus.SKIPPED.value, fields),
        )

    # ============================================================
    # DETAILS
    # ============================================================

    @guarded(fallback=NULL_DETAIL_ID)
    async def start_detail(
        self,
        trace_id: str,
        step_id: str,
        detail_type: Union[DetailType, str],
        api_provider: Optional[str] = None,
        api_endpoint: Optional[str] = None,
        api_method: Optional[str] = None,
        request_headers: Any = None,
        request_body: Any = None,
        request_query: Any = None,
        operation_name: Optional[str] = None,
        operation_input: Any = None,
    ) -> str:
        context = self._registry.get(trace_id)
        if context is None or is_inert(step_id):
            return NULL_DETAIL_ID

        sequence = context.next_detail_sequence(step_id)
        detail_id = generate_detail_id(step_id, sequence)

        row = {
            "detail_id": detail_id,
            "step_id": step_id,
            "trace_id": trace_id,
            "detail_type": status_value(detail_type),
            "sequence": sequence,
            "status": StepStatus.STARTED.value,
        }
        row.update(self._detail_fields({
            "api_provider": api_provider,
            "api_endpoint": api_endpoint,
            "api_method": api_method,
            "request_headers": request_headers,
            "request_body": request_body,
            "request_query": request_query,
            "operation_name": operation_name,
            "operation_input": operation_input,
        }))
        await self._enqueue(DetailOp.CREATE, trace_id, detail_id, row)
        return detail_id

    @guarded()
    async def complete_detail(
        self,
        detail_id: str,
        response_status: Optional[int] = None,
        response_body: Any = None,
        response_headers: Any = None,
        operation_output: Any = None,
    ) -> None:
        context = self._registry.find_by_lineage(detail_id)
        if context is None:
            return
        fields = self._detail_fields({
            "response_status": response_status,
            "response_body": response_body,
            "response_headers": response_headers,
            "operation_output": operation_output,
        })
        await self._enqueue(DetailOp.COMPLETE, context.trace_id, detail_id, fields)

    @guarded()
    async def fail_detail(self, detail_id: str, error: Any, trace_id: Optional[str] = None) -> None:
        context = self._registry.find_by_lineage(detail_id)
        if context is None:
            return
        context.record_error(error)

        formatted = format_error(error)
        fields = {"error": formatted, "response_status": formatted.get("http_status")}
        await self._enqueue(DetailOp.FAIL, context.trace_id, detail_id, fields)

    @guarded(fallback=NULL_DETAIL_ID)
    async def log_detail(
        self,
        trace_id: str,
        step_id: str,
        detail_type: Union[DetailType, str],
        error: Any = None,
        **fields: Any,
    ) -> str:
        """
        Record a detail that is already finished (decisions, calculations,
        calls timed by the caller). Fails the detail when `error` is given.
        """
        context = self._registry.get(trace_id)
        if context is None or is_inert(step_id):
            return NULL_DETAIL_ID

        sequence = context.next_detail_sequence(step_id)
        detail_id = generate_random_detail_id()

        row = {
            "detail_id": detail_id,
            "step_id": step_id,
            "trace_id": trace_id,
            "detail_type": status_value(detail_type),
            "sequence": sequence,
            "status": StepStatus.COMPLETED.value,
        }
        row.update(self._detail_fields(fields))
        if error is not None:
            context.record_error(error)
            row["status"] = StepStatus.FAILED.value
            row["error"] = format_error(error)

        await self._enqueue(DetailOp.CREATE_COMPLETED, trace_id, detail_id, row)
        return detail_id

    # ============================================================
    # SCOPES
    # ============================================================

    @asynccontextmanager
    async def step(
        self,
        trace_id: str,
        service_name: str,
        function_name: str,
        input: Any = None,
        context_data: Any = None,
    ) -> AsyncIterator["StepScope"]:
        """
        Run a block as one step.

        Completes the step with `scope.output` on normal exit, skips it if
        `scope.skip()` was called, and fails it on exception. The block's own
        exception always propagates unchanged.
        """
        step_id = await self.start_step(trace_id, service_name, function_name, input, context_data)
        scope = StepScope(self, trace_id, step_id)
        try:
            yield scope
        except Exception as e:
            await self.fail_step(step_id, e, trace_id)
            raise
        if scope.skipped_reason is not None:
            await self.skip_step(step_id, scope.skipped_reason)
        else:
            await self.complete_step(step_id, scope.output)

    @asynccontextmanager
    async def traced_run(
        self,
        endpoint: str,
        trigger_type: Union[TriggerType, str] = TriggerType.CRON,
        trigger_name: Optional[str] = None,
        body: Any = None,
        http_method: Optional[str] = None,
    ) -> AsyncIterator[StartedTrace]:
        """
        Trace a run that has no HTTP request around it (cron jobs, workers).

        Completes the trace on normal exit; fails it and re-raises on error.
        """
        started = await self.start_trace(
            endpoint,
            http_method=http_method,
            body=body,
            trigger_type=trigger_type,
            trigger_name=trigger_name,
        )
        try:
            yield started
        except Exception as e:
            await self.fail_trace(started.trace_id, e)
            raise
        await self.complete_trace(started.trace_id, None, None)

    # ============================================================
    # LIFECYCLE
    # ============================================================

    @guarded(fallback=0)
    async def flush(self) -> int:
        return await self._buffer.flush()

    @guarded()
    async def shutdown(self) -> None:
        """Flush buffered details and release the store."""
        await self._buffer.drain()
        if self._registry:
            logger.warning(f"Shutting down with {len(self._registry)} traces still open")
        await self._persist("close", lambda: self._store.close())


class StepScope:
    """
    Handle yielded by `TraceRecorder.step()`.

    Set `output` to record the step result; helpers log one-shot details.
    """

    def __init__(self, recorder: TraceRecorder, trace_id: str, step_id: str):
        self._recorder = recorder
        self.trace_id = trace_id
        self.step_id = step_id
        self.output: Any = None
        self.skipped_reason: Optional[str] = None

    def skip(self, reason: str) -> None:
        self.skipped_reason = reason

    async def start_api_call(self, provider: str, endpoint: str, method: str = "GET", **request: Any) -> str:
        return await self._recorder.start_detail(
            self.trace_id,
            self.step_id,
            DetailType.API_CALL,
            api_provider=provider,
            api_endpoint=endpoint,
            api_method=method,
            **request,
        )

    async def log_api_call(
        self,
        provider: str,
        endpoint: str,
        method: str = "GET",
        error: Any = None,
        **fields: Any,
    ) -> str:
        return await self._recorder.log_detail(
            self.trace_id,
            self.step_id,
            DetailType.API_CALL,
            error=error,
            api_provider=provider,
            api_endpoint=endpoint,
            api_method=method,
            **fields,
        )

    async def log_decision(self, name: str, input: Any = None, output: Any = None) -> str:
        return await self._recorder.log_detail(
            self.trace_id,
            self.step_id,
            DetailType.DECISION,
            operation_name=name,
            operation_input=input,
            operation_output=output,
        )

    async def log_calculation(self, name: str, input: Any = None, output: Any = None) -> str:
        return await self._recorder.log_detail(
            self.trace_id,
            self.step_id,
            DetailType.CALCULATION,
            operation_name=name,
            operation_input=input,
            operation_output=output,
        )

    async def log_validation(self, name: str, input: Any = None, passed: bool = True, reason: Optional[str] = None) -> str:
        return await self._recorder.log_detail(
            self.trace_id,
            self.step_id,
            DetailType.VALIDATION,
            operation_name=name,
            operation_input=input,
            operation_output={"passed": passed, "reason": reason},
        )
