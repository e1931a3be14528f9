from .actions import ActionCall, ActionResolver, ActionResult
from .definition import load_workflow, parse
from .dsl import build, job, matrix, sh, uses, wf, JobBuilder
from .errors import (
    ArtifactNotFoundError,
    DefinitionError,
    ExpressionError,
    FlowError,
    StepExecutionError,
    WorkerFault,
)
from .expressions import evaluate, interpolate
from .matrix import expand
from .model import JobInstance, JobStatus, JobTemplate, StepStatus, WorkflowDefinition
from .runner import RunResult, run_workflow

__all__ = [
    "ActionCall", "ActionResolver", "ActionResult",
    "load_workflow", "parse",
    "build", "job", "matrix", "sh", "uses", "wf", "JobBuilder",
    "ArtifactNotFoundError", "DefinitionError", "ExpressionError", "FlowError",
    "StepExecutionError", "WorkerFault",
    "evaluate", "interpolate", "expand",
    "JobInstance", "JobStatus", "JobTemplate", "StepStatus", "WorkflowDefinition",
    "RunResult", "run_workflow",
]
