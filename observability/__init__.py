# Observability Package
from observability.context import ContextRegistry, TraceContext
from observability.models import DetailType, StartedTrace, TraceStatus, TriggerType
from observability.recorder import StepScope, TraceRecorder
from observability.middleware import TracingMiddleware
from observability.tracked_client import tracked_request

__all__ = [
    "ContextRegistry",
    "DetailType",
    "StartedTrace",
    "StepScope",
    "TraceContext",
    "TraceRecorder",
    "TraceStatus",
    "TracingMiddleware",
    "TriggerType",
    "tracked_request",
]
