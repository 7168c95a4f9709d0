"""
Tracing Middleware

ASGI middleware that opens one trace per inbound webhook/cron request and
closes it from the response.

DESIGN RULES:
- Health checks, static assets and the dashboard API are never traced
- Disabled tracing leaves request.state.trace_id = None
- Internal forwards continue the parent trace instead of opening one
- The request body is buffered and replayed untouched to the app
- The response is streamed through unchanged while a bounded copy is kept
- Tracing failures are logged, never surfaced to the response pipeline
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence, TYPE_CHECKING
from urllib.parse import parse_qsl

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from observability.models import TriggerType

if TYPE_CHECKING:
    from observability.recorder import TraceRecorder

logger = logging.getLogger(__name__)

DEFAULT_SKIP_PATHS = (
    "/health",
    "/favicon.ico",
    "/static",
    "/assets",
    "/v1/traces",
    "/docs",
    "/redoc",
    "/openapi.json",
)
DEFAULT_CRON_PREFIX = "/cron"

# Bytes of response body kept for the trace row.
MAX_CAPTURED_RESPONSE = 64 * 1024
RAW_PREVIEW_LENGTH = 1000

INTERNAL_FORWARD_HEADER = "x-internal-forward"
PARENT_TRACE_HEADER = "x-parent-trace-id"


def decode_body(raw: bytes, content_type: Optional[str]) -> Any:
    """Best-effort decode of a captured request/response body."""
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    content_type = (content_type or "").lower()

    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(text, keep_blank_values=True))
    try:
        return json.loads(text)
    except ValueError:
        return {"_raw": text[:RAW_PREVIEW_LENGTH]}


def client_ip(scope: Scope, headers: Headers) -> Optional[str]:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    client = scope.get("client")
    return client[0] if client else None


class TracingMiddleware:
    """
    Args:
        app: Wrapped ASGI application
        recorder: TraceRecorder that owns the traces
        skip_paths: Path prefixes that are never traced
        cron_prefix: Path prefix whose requests are traced as cron runs
    """

    def __init__(
        self,
        app: ASGIApp,
        recorder: "TraceRecorder",
        skip_paths: Sequence[str] = DEFAULT_SKIP_PATHS,
        cron_prefix: str = DEFAULT_CRON_PREFIX,
    ):
        self.app = app
        self.recorder = recorder
        self.skip_paths = tuple(skip_paths)
        self.cron_prefix = cron_prefix

    def should_skip(self, path: str) -> bool:
        return path.startswith(self.skip_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or self.should_skip(scope.get("path", "")):
            await self.app(scope, receive, send)
            return

        state = scope.setdefault("state", {})
        if not self.recorder.is_enabled():
            state["trace_id"] = None
            state["trace_context"] = None
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        if headers.get(INTERNAL_FORWARD_HEADER) == "true":
            parent_trace_id = headers.get(PARENT_TRACE_HEADER)
            logger.debug(f"Internal forward to {scope['path']} continues trace {parent_trace_id}")
            state["trace_id"] = parent_trace_id
            state["trace_context"] = self.recorder.get_trace_context(parent_trace_id)
            state["is_forwarded_request"] = True
            await self.app(scope, receive, send)
            return

        messages = await self._drain(receive)
        replay = self._replayer(messages, receive)

        trace_id = await self._start(scope, headers, messages)
        state["trace_id"] = trace_id
        state["trace_context"] = self.recorder.get_trace_context(trace_id)
        if trace_id is None:
            await self.app(scope, replay, send)
            return

        response: Dict[str, Any] = {"status": None, "content_type": None, "size": 0}
        chunks: List[bytes] = []

        async def capture(message: Message) -> None:
            if message["type"] == "http.response.start":
                response["status"] = message["status"]
                response["content_type"] = Headers(raw=message.get("headers", [])).get("content-type")
            elif message["type"] == "http.response.body":
                room = MAX_CAPTURED_RESPONSE - response["size"]
                if room > 0:
                    chunk = message.get("body", b"")[:room]
                    chunks.append(chunk)
                    response["size"] += len(chunk)
            await send(message)

        try:
            await self.app(scope, replay, capture)
        except Exception as e:
            await self.recorder.fail_trace(trace_id, e, 500, {"error": str(e)})
            raise

        await self._finish(trace_id, response["status"], b"".join(chunks), response["content_type"])

    # ============================================================
    # HELPERS
    # ============================================================

    @staticmethod
    async def _drain(receive: Receive) -> List[Message]:
        messages: List[Message] = []
        while True:
            message = await receive()
            messages.append(message)
            if message["type"] != "http.request" or not message.get("more_body", False):
                return messages

    @staticmethod
    def _replayer(messages: List[Message], receive: Receive) -> Receive:
        pending = list(messages)

        async def replay() -> Message:
            if pending:
                return pending.pop(0)
            return await receive()

        return replay

    async def _start(self, scope: Scope, headers: Headers, messages: List[Message]) -> Optional[str]:
        try:
            path = scope["path"]
            raw = b"".join(m.get("body", b"") for m in messages if m["type"] == "http.request")
            trigger_type = TriggerType.CRON if path.startswith(self.cron_prefix) else TriggerType.WEBHOOK
            query = dict(parse_qsl(scope.get("query_string", b"").decode("latin-1"), keep_blank_values=True))

            started = await self.recorder.start_trace(
                endpoint=path,
                http_method=scope.get("method"),
                headers=dict(headers.items()),
                body=decode_body(raw, headers.get("content-type")),
                query=query or None,
                ip=client_ip(scope, headers),
                trigger_type=trigger_type,
            )
            logger.debug(f"[{started.trace_id}] Tracing {scope.get('method')} {path}")
            return started.trace_id
        except Exception:
            logger.exception("Tracing middleware failed to start trace")
            return None

    async def _finish(
        self,
        trace_id: str,
        status: Optional[int],
        raw: bytes,
        content_type: Optional[str],
    ) -> None:
        try:
            status = status or 500
            body = decode_body(raw, content_type)
            if status >= 400:
                error = {"message": f"HTTP {status}", "code": str(status), "http_status": status, "raw": body}
                await self.recorder.fail_trace(trace_id, error, status, body)
            else:
                await self.recorder.complete_trace(trace_id, status, body)
        except Exception:
            logger.exception(f"[{trace_id}] Tracing middleware failed to finish trace")
