"""
Workflow Matcher

Overlays one recorded trace onto a workflow template, marking which nodes
the run went through.

DESIGN RULES:
- Pure function of (template, trace, steps); templates are never mutated
- Best effort: unmatched steps simply leave nodes not-taken
- A step node only counts if every decision above it chose its branch
- The deepest taken node is `current`; a taken outcome always wins
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from dashboard.templates import NodeType, WorkflowNode, WorkflowTemplate


class MatchStatus(str, Enum):
    TAKEN = "taken"
    CURRENT = "current"
    NOT_TAKEN = "not-taken"


_STATUS_ACTIONS = {
    "completed": "success",
    "failed": "error",
    "skipped": "skipped",
}

# Taken outcomes outrank any step depth when picking `current`.
_OUTCOME_DEPTH_BONUS = 100


@dataclass
class MatchedBranch:
    label: str
    value: Any
    taken: bool
    node: Optional["MatchedNode"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "value": self.value,
            "taken": self.taken,
            "node": self.node.to_dict() if self.node else None,
        }


@dataclass
class MatchedNode:
    id: str
    name: str
    type: str
    layer: str
    match_status: MatchStatus = MatchStatus.NOT_TAKEN
    condition: Optional[str] = None
    status: Optional[str] = None
    step: Optional[Dict[str, Any]] = None
    details: List[Dict[str, Any]] = field(default_factory=list)
    children: List["MatchedNode"] = field(default_factory=list)
    branches: List[MatchedBranch] = field(default_factory=list)

    @property
    def taken(self) -> bool:
        return self.match_status in (MatchStatus.TAKEN, MatchStatus.CURRENT)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "layer": self.layer,
            "match_status": self.match_status.value,
            "condition": self.condition,
            "status": self.status,
            "step": self.step,
            "details": self.details,
            "children": [child.to_dict() for child in self.children],
            "branches": [branch.to_dict() for branch in self.branches],
        }


@dataclass
class MatchedWorkflow:
    id: str
    name: str
    trigger: str
    trigger_name: str
    result_action: str
    root: MatchedNode
    current_node_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "trigger": self.trigger,
            "trigger_name": self.trigger_name,
            "result_action": self.result_action,
            "current_node_id": self.current_node_id,
            "root": self.root.to_dict(),
        }


def derive_result_action(trace: Dict[str, Any]) -> str:
    """
    Business outcome label for a trace.

    Explicit `result_action` first, then the response body's
    `result_action`/`action`, then the webhook's `success`/`tasksCreated`
    reply, then a label derived from the trace status.
    """
    if trace.get("result_action"):
        return str(trace["result_action"]).lower()

    status = str(trace.get("status") or "").lower()
    body = trace.get("response_body")
    if isinstance(body, dict):
        for key in ("result_action", "action"):
            if body.get(key):
                return str(body[key]).lower()

        if status == "completed" and body.get("success"):
            created = body.get("tasksCreated", body.get("tasks_created"))
            if isinstance(created, (int, float)) and not isinstance(created, bool):
                return "tasks_created" if created > 0 else "no_tasks"
        elif body.get("success") is False:
            # Handled errors still answer HTTP 200
            return "error"

    return _STATUS_ACTIONS.get(status, "")


def _step_index(steps: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Index steps by `service:function` and bare `function`; first occurrence wins."""
    index: Dict[str, Dict[str, Any]] = {}
    for step in steps:
        function_name = step.get("function_name") or ""
        qualified = f"{step.get('service_name') or ''}:{function_name}"
        index.setdefault(qualified, step)
        if function_name:
            index.setdefault(function_name, step)
    return index


class _Matcher:
    def __init__(self, result_action: str, steps: List[Dict[str, Any]]):
        self.result_action = result_action
        self.steps = _step_index(steps)
        self.current: Optional[MatchedNode] = None
        self._current_depth = -1

    def _mark_candidate(self, node: MatchedNode, depth: int) -> None:
        if depth > self._current_depth:
            self.current = node
            self._current_depth = depth

    def _observed_value(self, node: WorkflowNode) -> Tuple[bool, Any]:
        if node.match_trace_status:
            return True, self.result_action
        if node.match_step_output is not None:
            step = self.steps.get(node.match_step_output.step_name)
            output = step.get("output") if step else None
            if isinstance(output, dict):
                return True, output.get(node.match_step_output.output_field)
            return True, None
        return False, None

    def mark(self, node: WorkflowNode, depth: int = 0, active: bool = True) -> MatchedNode:
        matched = MatchedNode(
            id=node.id,
            name=node.name,
            type=node.type.value,
            layer=node.layer.value,
            condition=node.condition,
            status=node.status,
        )

        if node.type is NodeType.STEP and node.match_step:
            step = self.steps.get(node.match_step)
            if step is not None and active:
                matched.match_status = MatchStatus.TAKEN
                matched.step = step
                matched.details = step.get("details") or []
                self._mark_candidate(matched, depth)

        elif node.type is NodeType.OUTCOME and node.match_action and active:
            if node.match_action.lower() == self.result_action:
                matched.match_status = MatchStatus.TAKEN
                self._mark_candidate(matched, depth + _OUTCOME_DEPTH_BONUS)

        if node.type is NodeType.DECISION:
            selective, observed = self._observed_value(node)
            for branch in node.branches:
                branch_active = active
                if selective and branch.has_match_value:
                    branch_active = active and branch.match_value == observed
                child = self.mark(branch.node, depth + 1, branch_active) if branch.node else None
                matched.branches.append(MatchedBranch(
                    label=branch.label,
                    value=branch.value,
                    taken=bool(child and child.taken),
                    node=child,
                ))
            if any(branch.taken for branch in matched.branches):
                matched.match_status = MatchStatus.TAKEN
        else:
            matched.children = [
                self.mark(child, depth + 1, active and matched.taken)
                for child in node.children
            ]

        return matched


def match_workflow(
    template: Optional[WorkflowTemplate],
    trace: Dict[str, Any],
    steps: List[Dict[str, Any]],
) -> Optional[MatchedWorkflow]:
    """
    Mark the path a trace took through `template`.

    Args:
        template: Workflow template, or None when no template exists
        trace: Stored trace row
        steps: Reconstructed steps (each with its `details` list)

    Returns:
        MatchedWorkflow, or None when there is no template
    """
    if template is None:
        return None

    result_action = derive_result_action(trace or {})
    matcher = _Matcher(result_action, steps or [])
    root = matcher.mark(template.root)

    if matcher.current is not None:
        matcher.current.match_status = MatchStatus.CURRENT

    return MatchedWorkflow(
        id=template.id,
        name=template.name,
        trigger=template.trigger,
        trigger_name=template.trigger_name,
        result_action=result_action,
        root=root,
        current_node_id=matcher.current.id if matcher.current else None,
    )
