# model.py
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Dict, List, Mapping, Optional, Tuple, Union

from .cancel import CancelToken
from .errors import ConfigError

if TYPE_CHECKING:
    from .concurrency import AdmissionDecision


# ----------------------------------------------------------------------
# Statuses
# ----------------------------------------------------------------------

class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


# ----------------------------------------------------------------------
# Workflow definition (immutable, validated once at load time)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Event:
    """An incoming event, e.g. kind="pull_request", subtype="synchronize"."""
    kind: str
    subtype: str | None = None
    ref: str = ""
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TriggerRule:
    kind: str
    subtypes: frozenset = frozenset()  # empty -> any subtype


QUEUE_POLICIES = ("fifo", "supersede")


@dataclass(frozen=True)
class ConcurrencyPolicy:
    """
    group: key template, e.g. "${{ github.workflow }}-${{ github.ref }}"
    queue_policy: what a newer arrival does to runs still waiting in the queue
      - "fifo":      they keep waiting, promoted in arrival order
      - "supersede": they are cancelled before they ever start
    """
    group: str | None = None
    cancel_in_progress: bool = False
    queue_policy: str = "fifo"

    def __post_init__(self) -> None:
        if self.queue_policy not in QUEUE_POLICIES:
            raise ConfigError(
                f"unknown queue policy {self.queue_policy!r}, expected one of {list(QUEUE_POLICIES)}"
            )


# A condition is either an expression string ("${{ matrix.os == 'ubuntu-22.04' }}",
# "always()") or a callable receiving the step context mapping.
Condition = Union[str, Callable[[Mapping[str, Any]], bool]]


@dataclass(frozen=True)
class CommandStep:
    """A primitive shell command."""
    kind: ClassVar[str] = "command"

    name: str
    command: str
    id: str | None = None
    inputs: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    condition: Optional[Condition] = None
    continue_on_error: bool = False
    working_directory: str | None = None

    @property
    def key(self) -> str:
        return self.id or self.name


@dataclass(frozen=True)
class ActionStep:
    """A step delegated to a local composite or external action."""
    kind: ClassVar[str] = "action"

    name: str
    action_ref: str
    id: str | None = None
    inputs: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    condition: Optional[Condition] = None
    continue_on_error: bool = False

    @property
    def key(self) -> str:
        return self.id or self.name


StepSpec = Union[CommandStep, ActionStep]


@dataclass(frozen=True)
class MatrixSpec:
    dimensions: Mapping[str, Tuple[Any, ...]] = field(default_factory=dict)
    include: Tuple[Mapping[str, Any], ...] = ()
    exclude: Tuple[Mapping[str, Any], ...] = ()


@dataclass(frozen=True)
class JobTemplate:
    name: str
    steps: Tuple[StepSpec, ...]
    runs_on: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    matrix: MatrixSpec = field(default_factory=MatrixSpec)
    fail_fast: bool = True
    max_parallel: int | None = None
    needs: Tuple[str, ...] = ()


@dataclass(frozen=True)
class WorkflowDefinition:
    name: str
    triggers: Tuple[TriggerRule, ...]
    jobs: Mapping[str, JobTemplate]
    concurrency: ConcurrencyPolicy | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    # ---- single-job convenience accessors ----
    def _only_job(self) -> JobTemplate:
        if len(self.jobs) != 1:
            raise ConfigError(
                f"workflow {self.name!r} declares {len(self.jobs)} jobs; pick one from .jobs"
            )
        return next(iter(self.jobs.values()))

    @property
    def job_template(self) -> JobTemplate:
        return self._only_job()

    @property
    def matrix(self) -> MatrixSpec:
        return self._only_job().matrix

    @property
    def fail_fast(self) -> bool:
        return self._only_job().fail_fast


# ----------------------------------------------------------------------
# Runtime state
# ----------------------------------------------------------------------

@dataclass(eq=False)
class JobInstance:
    """
    One matrix combination of a job template.

    Pending -> Running -> {Succeeded | Failed | Cancelled}; Cancelled is only
    reachable from Pending or Running and terminal states never change.
    """
    template: str
    index: int
    matrix: Dict[str, Any]
    steps: Tuple[StepSpec, ...]
    runs_on: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    workflow_env: Dict[str, str] = field(default_factory=dict)
    fail_fast: bool = True
    status: JobStatus = JobStatus.PENDING
    cancel_reason: str | None = None
    cancel_token: CancelToken = field(default_factory=CancelToken, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def name(self) -> str:
        if not self.matrix:
            return self.template
        return f"{self.template} ({', '.join(str(v) for v in self.matrix.values())})"

    def start(self) -> bool:
        with self._lock:
            if self.status is not JobStatus.PENDING:
                return False
            self.status = JobStatus.RUNNING
            return True

    def finish(self, status: JobStatus) -> bool:
        if status not in (JobStatus.SUCCEEDED, JobStatus.FAILED):
            raise ValueError(f"finish() takes a success/failure status, got {status}")
        with self._lock:
            if self.status.terminal:
                return False
            self.status = status
            return True

    def cancel(self, reason: str = "cancelled") -> bool:
        with self._lock:
            if self.status.terminal:
                return False
            self.status = JobStatus.CANCELLED
            self.cancel_reason = reason
        self.cancel_token.cancel(reason)
        return True


class Run:
    """
    A workflow run. Its status is derived from its jobs once finished;
    before that it is queued, running, or cancelled by preemption.
    """

    def __init__(
        self,
        workflow: WorkflowDefinition,
        event: Event,
        *,
        concurrency_key: str | None = None,
        run_id: str | None = None,
    ):
        self.id = run_id or uuid.uuid4().hex
        self.workflow = workflow
        self.event = event
        self.concurrency_key = concurrency_key
        self.jobs: List[JobInstance] = []
        self.cancel_token = CancelToken()
        self._lock = threading.RLock()
        self._state = RunStatus.QUEUED
        self._final: RunStatus | None = None

    def __repr__(self) -> str:
        return f"Run(id={self.id[:8]}, key={self.concurrency_key!r}, status={self.status.value})"

    @property
    def status(self) -> RunStatus:
        with self._lock:
            return self._final or self._state

    @property
    def is_terminal(self) -> bool:
        return self.status.terminal

    @property
    def preempted(self) -> bool:
        return self.cancel_token.is_cancelled()

    def mark_running(self) -> bool:
        with self._lock:
            if self._state is not RunStatus.QUEUED:
                return False
            self._state = RunStatus.RUNNING
            return True

    def add_jobs(self, jobs: List[JobInstance]) -> None:
        with self._lock:
            self.jobs.extend(jobs)
            if self.preempted:
                reason = self.cancel_token.reason
                for job in jobs:
                    job.cancel(str(reason) if reason else "run cancelled")

    def cancel(self, reason: str = "run cancelled") -> bool:
        """Preempt the run: it becomes Cancelled and every live job is signalled."""
        with self._lock:
            if self._final is not None or self._state is RunStatus.CANCELLED:
                return False
            self._state = RunStatus.CANCELLED
            jobs = list(self.jobs)
        self.cancel_token.cancel(reason)
        for job in jobs:
            job.cancel(reason)
        return True

    def cancel_siblings(self, failed: JobInstance) -> List[JobInstance]:
        """Fail-fast: cancel every live job from the same template as `failed`."""
        cancelled: List[JobInstance] = []
        with self._lock:
            for job in self.jobs:
                if job is failed or job.template != failed.template:
                    continue
                if job.cancel(f"fail-fast: {failed.name} failed"):
                    cancelled.append(job)
        return cancelled

    def finalize(self) -> RunStatus:
        with self._lock:
            if self._final is not None:
                return self._final
            statuses = [j.status for j in self.jobs]
            if any(s is JobStatus.FAILED for s in statuses):
                final = RunStatus.FAILED
            elif statuses and all(s is JobStatus.SUCCEEDED for s in statuses):
                final = RunStatus.SUCCEEDED
            else:
                final = RunStatus.CANCELLED
            self._final = final
            return final


# ----------------------------------------------------------------------
# Results (exposed for reporting)
# ----------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: StepStatus
    id: str | None = None
    exit_code: int | None = None
    outputs: Dict[str, str] = field(default_factory=dict)
    error: str | None = None
    duration_s: float | None = None
    # nested results of a composite action
    steps: List["StepResult"] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "id": self.id,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "outputs": dict(self.outputs),
            "error": self.error,
            "duration_s": self.duration_s,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class JobResult:
    name: str
    template: str
    matrix: Dict[str, Any]
    status: JobStatus
    steps: List[StepResult] = field(default_factory=list)
    runs_on: str | None = None
    error: str | None = None

    def step(self, key: str) -> StepResult:
        for s in self.steps:
            if s.id == key or s.name == key:
                return s
        raise KeyError(key)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "template": self.template,
            "matrix": dict(self.matrix),
            "runs_on": self.runs_on,
            "status": self.status.value,
            "error": self.error,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class RunOutcome:
    run_id: str
    workflow: str
    status: RunStatus
    concurrency_key: str | None = None
    decision: Optional["AdmissionDecision"] = None
    jobs: List[JobResult] = field(default_factory=list)

    def job(self, name: str) -> JobResult:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow": self.workflow,
            "status": self.status.value,
            "concurrency_key": self.concurrency_key,
            "decision": self.decision.to_dict() if self.decision else None,
            "jobs": [j.to_dict() for j in self.jobs],
        }
