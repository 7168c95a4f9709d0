"""
Traces API Route

Read-only dashboard endpoints. Thin delegation layer to TraceQueryService;
no query logic lives here.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from app.core.config import settings
from app.dependencies import get_query_service, get_template_registry
from dashboard.query_service import ALL_SYSTEMS, TraceQueryService
from dashboard.templates import TemplateRegistry


router = APIRouter(prefix="/traces", tags=["traces"])


class TraceListResponse(BaseModel):
    """One page of trace summaries, most recent first."""
    items: List[Dict[str, Any]] = Field(default_factory=list)
    has_more: bool = False
    next_cursor: Optional[str] = Field(None, description="Pass back as `cursor` for the next page")


class CleanupResponse(BaseModel):
    deleted_traces: int
    deleted_steps: int
    deleted_details: int
    has_more: bool


def require_query_service(
    service: Optional[TraceQueryService] = Depends(get_query_service),
) -> TraceQueryService:
    if service is None:
        raise HTTPException(status_code=503, detail="Tracing storage is not configured")
    return service


@router.get("", response_model=TraceListResponse)
async def list_traces(
    system: str = ALL_SYSTEMS,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    cursor: Optional[str] = None,
    service: TraceQueryService = Depends(require_query_service),
) -> TraceListResponse:
    page = await service.list_traces(system=system, status=status, limit=limit, cursor=cursor)
    return TraceListResponse(items=page.items, has_more=page.has_more, next_cursor=page.next_cursor)


@router.get("/search")
async def search_traces(
    contact_id: Optional[str] = None,
    opportunity_id: Optional[str] = None,
    matter_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    appointment_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    service: TraceQueryService = Depends(require_query_service),
) -> List[Dict[str, Any]]:
    return await service.search_traces(
        contact_id=contact_id,
        opportunity_id=opportunity_id,
        matter_id=matter_id,
        invoice_id=invoice_id,
        appointment_id=appointment_id,
        limit=limit,
    )


@router.get("/stats")
async def trace_stats(
    system: str = ALL_SYSTEMS,
    since: Optional[int] = Query(None, description="Epoch ms, inclusive"),
    until: Optional[int] = Query(None, description="Epoch ms, inclusive"),
    service: TraceQueryService = Depends(require_query_service),
) -> Dict[str, Any]:
    return await service.get_trace_stats(system=system, since=since, until=until)


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_traces(
    older_than_days: int = Query(settings.trace_retention_days, ge=1),
    batch_size: int = Query(100, ge=1, le=1000),
    service: TraceQueryService = Depends(require_query_service),
) -> CleanupResponse:
    result = await service.cleanup_old_traces(older_than_days=older_than_days, batch_size=batch_size)
    return CleanupResponse(**result.to_dict())


@router.get("/{trace_id}")
async def get_trace(
    trace_id: str,
    service: TraceQueryService = Depends(require_query_service),
) -> Dict[str, Any]:
    details = await service.get_trace_details(trace_id)
    if details is None:
        raise HTTPException(status_code=404, detail="Trace not found")
    return details


@router.get("/{trace_id}/workflow")
async def get_trace_workflow(
    trace_id: str,
    service: TraceQueryService = Depends(require_query_service),
    registry: TemplateRegistry = Depends(get_template_registry),
) -> Dict[str, Any]:
    path = await service.get_workflow_path(trace_id, registry)
    if path is None:
        raise HTTPException(status_code=404, detail="Trace not found")
    return path
