from .coordinator import RunCoordinator
from .dsl import concurrency, job, matrix, on, sh, uses, wf
from .errors import CancellationError, ConfigError, CyclicActionError, EngineError, StepFailure
from .executor import StepExecutor
from .loader import load_workflow
from .model import Event, JobStatus, RunOutcome, RunStatus, StepStatus, WorkflowDefinition

__all__ = [
    "RunCoordinator",
    "StepExecutor",
    "load_workflow",
    "concurrency",
    "job",
    "matrix",
    "on",
    "sh",
    "uses",
    "wf",
    "Event",
    "JobStatus",
    "RunOutcome",
    "RunStatus",
    "StepStatus",
    "WorkflowDefinition",
    "CancellationError",
    "ConfigError",
    "CyclicActionError",
    "EngineError",
    "StepFailure",
]
