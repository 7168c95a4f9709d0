"""
Tracked outbound HTTP calls.

Wraps one httpx request in an api_call detail: the detail is opened before
the request goes out and closed with the response (or the failure). The
caller's exception always propagates unchanged.
"""

import logging
from typing import Any, Optional, TYPE_CHECKING

import httpx

from observability.models import DetailType

if TYPE_CHECKING:
    from observability.recorder import TraceRecorder

logger = logging.getLogger(__name__)


def _response_payload(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"_raw": response.text[:1000]}


async def tracked_request(
    recorder: "TraceRecorder",
    provider: str,
    trace_id: Optional[str],
    step_id: Optional[str],
    method: str,
    url: str,
    client: Optional[httpx.AsyncClient] = None,
    raise_for_status: bool = True,
    **kwargs: Any,
) -> httpx.Response:
    """
    Send an HTTP request and record it as a detail of `step_id`.

    Args:
        recorder: TraceRecorder to record into
        provider: External system name (e.g. "ghl", "clio")
        trace_id: Owning trace (None records nothing)
        step_id: Owning step
        method: HTTP method
        url: Absolute URL, or a path when `client` has a base_url
        client: Optional shared AsyncClient; a short-lived one is used otherwise
        raise_for_status: Raise httpx.HTTPStatusError for 4xx/5xx responses
        **kwargs: Passed through to httpx (json, params, headers, ...)

    Returns:
        The httpx.Response
    """
    detail_id = await recorder.start_detail(
        trace_id,
        step_id,
        DetailType.API_CALL,
        api_provider=provider,
        api_endpoint=url,
        api_method=method.upper(),
        request_headers=kwargs.get("headers"),
        request_body=kwargs.get("json", kwargs.get("data")),
        request_query=kwargs.get("params"),
    )

    try:
        if client is not None:
            response = await client.request(method, url, **kwargs)
        else:
            async with httpx.AsyncClient() as short_lived:
                response = await short_lived.request(method, url, **kwargs)
        if raise_for_status:
            response.raise_for_status()
    except Exception as e:
        await recorder.fail_detail(detail_id, e, trace_id)
        raise

    await recorder.complete_detail(
        detail_id,
        response_status=response.status_code,
        response_body=_response_payload(response),
        response_headers=dict(response.headers),
    )
    return response
