"""
Workflow Templates

Static descriptions of every path a webhook handler can take, authored as
YAML under dashboard/workflows/ and validated into pydantic models.
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOWS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "workflows")


class NodeType(str, Enum):
    STEP = "step"
    DECISION = "decision"
    OUTCOME = "outcome"


class NodeLayer(str, Enum):
    """Display layer; drives colour coding only."""
    WEBHOOK = "webhook"
    PROCESSING = "processing"
    SERVICE = "service"
    EXTERNAL = "external"
    AUTOMATION = "automation"
    DECISION = "decision"
    OUTCOME = "outcome"


class StepOutputMatch(BaseModel):
    """Decision input: one field of a recorded step's output."""
    step_name: str = Field(..., description="service:function (or bare function) of the step")
    output_field: str


class WorkflowBranch(BaseModel):
    label: str
    value: Any = None
    match_value: Any = None
    node: Optional["WorkflowNode"] = None

    @property
    def has_match_value(self) -> bool:
        return "match_value" in self.model_fields_set


class WorkflowNode(BaseModel):
    id: str
    name: str
    type: NodeType
    layer: NodeLayer = NodeLayer.SERVICE
    condition: Optional[str] = None
    match_step: Optional[str] = None
    match_action: Optional[str] = None
    match_step_output: Optional[StepOutputMatch] = None
    match_trace_status: bool = False
    status: Optional[str] = None
    children: List["WorkflowNode"] = Field(default_factory=list)
    branches: List[WorkflowBranch] = Field(default_factory=list)


WorkflowBranch.model_rebuild()


class WorkflowTemplate(BaseModel):
    id: str
    name: str
    trigger: str = Field(..., description="Endpoint the workflow is served on")
    trigger_name: str
    system: str = "ghl"
    root: WorkflowNode


class TemplateRegistry:
    """
    Workflow templates keyed by trigger name.

    Args:
        templates: Pre-built templates (tests); merged with any loaded from disk
    """

    def __init__(self, templates: Optional[List[WorkflowTemplate]] = None):
        self._templates: Dict[str, WorkflowTemplate] = {}
        for template in templates or []:
            self.register(template)

    @classmethod
    def from_directory(cls, directory: str = DEFAULT_WORKFLOWS_DIR) -> "TemplateRegistry":
        registry = cls()
        registry.load_directory(directory)
        return registry

    def register(self, template: WorkflowTemplate) -> None:
        self._templates[template.trigger_name] = template

    def load_directory(self, directory: str) -> int:
        """
        Load every *.yaml / *.yml file in `directory`.

        Invalid files are logged and skipped.

        Returns:
            Number of templates loaded
        """
        path = Path(directory)
        if not path.is_dir():
            logger.warning(f"Workflow directory not found: {directory}")
            return 0

        loaded = 0
        for file in sorted(path.iterdir()):
            if file.suffix not in (".yaml", ".yml"):
                continue
            try:
                with open(file, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f)
                self.register(WorkflowTemplate.model_validate(data))
                loaded += 1
            except (OSError, yaml.YAMLError, ValidationError) as e:
                logger.error(f"Invalid workflow template {file.name}: {e}")
        logger.info(f"Loaded {loaded} workflow templates from {directory}")
        return loaded

    def get(self, trigger_name: Optional[str]) -> Optional[WorkflowTemplate]:
        if not trigger_name:
            return None
        return self._templates.get(trigger_name)

    def resolve(self, trace: Optional[Dict[str, Any]]) -> Optional[WorkflowTemplate]:
        """Find the template for a trace: trigger_name, then endpoint tail, then full endpoint."""
        if not trace:
            return None

        template = self.get(trace.get("trigger_name"))
        if template is not None:
            return template

        endpoint = (trace.get("endpoint") or "").rstrip("/")
        template = self.get(endpoint.rsplit("/", 1)[-1])
        if template is not None:
            return template

        for candidate in self._templates.values():
            if endpoint and candidate.trigger.rstrip("/") == endpoint:
                return candidate
        return None

    def names(self) -> List[str]:
        return sorted(self._templates)

    def __len__(self) -> int:
        return len(self._templates)
