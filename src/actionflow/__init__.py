from .dsl import job, sh, uses, matrix, workflow
from .loader import load_workflow, loads_workflow, parse_workflow
from .model import JobStatus, StepStatus, RunStatus, WorkflowDefinition, JobSpec, StepSpec
from .runner import RunCoordinator, RunInstance
from .dag import plan

__all__ = [
    "job", "sh", "uses", "matrix", "workflow",
    "load_workflow", "loads_workflow", "parse_workflow",
    "JobStatus", "StepStatus", "RunStatus", "WorkflowDefinition", "JobSpec", "StepSpec",
    "RunCoordinator", "RunInstance", "plan",
]
