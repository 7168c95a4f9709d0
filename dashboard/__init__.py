# Dashboard read side
from dashboard.query_service import TraceQueryService
from dashboard.templates import TemplateRegistry, WorkflowNode, WorkflowTemplate
from dashboard.workflow_matcher import MatchedWorkflow, MatchStatus, match_workflow

__all__ = [
    "MatchStatus",
    "MatchedWorkflow",
    "TemplateRegistry",
    "TraceQueryService",
    "WorkflowNode",
    "WorkflowTemplate",
    "match_workflow",
]
