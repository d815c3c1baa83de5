import logging
from typing import Any, Mapping, Union

from agentflow.core.errors import NotFoundError
from agentflow.schemas.workflow import WorkflowSpec

logger = logging.getLogger(__name__)

_workflows: dict[str, WorkflowSpec] = {}


def register_workflow(spec: Union[WorkflowSpec, Mapping[str, Any]]) -> WorkflowSpec:
    """Register (or replace) a workflow definition; raw mappings are validated first."""
    if not isinstance(spec, WorkflowSpec):
        spec = WorkflowSpec.model_validate(spec)
    _workflows[spec.id] = spec
    logger.info("Workflow registered", extra={"workflow_id": spec.id, "steps": len(spec.steps)})
    return spec


def get_workflow(workflow_id: str) -> WorkflowSpec:
    spec = _workflows.get(workflow_id)
    if spec is None:
        raise NotFoundError(f"Workflow not found: {workflow_id}")
    return spec


def list_workflows() -> list[WorkflowSpec]:
    return [_workflows[k] for k in sorted(_workflows)]


def clear_workflows() -> None:
    _workflows.clear()
