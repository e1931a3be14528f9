# model.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from typing import Any, Dict, List, Optional, Tuple


class JobStatus(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def result(self) -> str:
        """Name used for `needs.<job>.result` in expressions."""
        return _RESULT_NAMES.get(self, self.value)


TERMINAL_STATUSES = frozenset(
    {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED}
)

_RESULT_NAMES = {
    JobStatus.SUCCEEDED: "success",
    JobStatus.FAILED: "failure",
    JobStatus.SKIPPED: "skipped",
    JobStatus.CANCELLED: "cancelled",
}


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class StepKind(str, Enum):
    RUN = "run"
    USES = "uses"


# ---------------------------------------------------------------------
# Definition (immutable once parsed)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StepTemplate:
    """A single step inside a job: a shell command or an action reference."""
    name: str
    kind: StepKind
    run: Optional[str] = None
    uses: Optional[str] = None
    inputs: Dict[str, str] = field(default_factory=dict)  # `with:`
    id: Optional[str] = None
    if_: Optional[str] = None
    continue_on_error: bool = False
    env: Dict[str, str] = field(default_factory=dict)
    working_directory: Optional[str] = None
    timeout_minutes: Optional[float] = None


@dataclass(frozen=True)
class MatrixSpec:
    """
    Axis name -> ordered values. Exclude entries are partial points;
    axes an entry does not name act as wildcards.
    """
    axes: Dict[str, List[Any]]
    exclude: List[Dict[str, Any]] = field(default_factory=list)
    fail_fast: bool = False


@dataclass(frozen=True)
class ConcurrencyPolicy:
    cancel_in_progress: bool = False


@dataclass(frozen=True)
class ConcurrencySpec:
    """Job-level concurrency: group key template plus optional policy override."""
    group: str
    cancel_in_progress: Optional[bool] = None


@dataclass(frozen=True)
class JobTemplate:
    name: str
    steps: Tuple[StepTemplate, ...]
    needs: Tuple[str, ...] = ()
    matrix: Optional[MatrixSpec] = None
    if_: Optional[str] = None
    concurrency: Optional[ConcurrencySpec] = None
    runs_on: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)
    timeout_minutes: Optional[float] = None


@dataclass(frozen=True)
class Trigger:
    """
    An event that starts the workflow, with optional branch/path filters.
    Filters use fnmatch globs.
    """
    event: str
    branches: Optional[List[str]] = None
    paths: Optional[List[str]] = None
    options: Dict[str, Any] = field(default_factory=dict)

    def matches(self, event: str, ref: Optional[str] = None, changed_files: Optional[List[str]] = None) -> bool:
        if event != self.event:
            return False

        if self.branches and ref is not None:
            branch = ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else ref
            if not any(fnmatch(branch, b) for b in self.branches):
                return False

        # no paths -> always run; unknown change set -> run
        if self.paths and changed_files is not None:
            return any(fnmatch(f, p) for f in changed_files for p in self.paths)

        return True


@dataclass(frozen=True)
class WorkflowDefinition:
    name: str
    jobs: Dict[str, JobTemplate]  # declaration order
    triggers: Tuple[Trigger, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    concurrency: ConcurrencyPolicy = field(default_factory=ConcurrencyPolicy)

    @property
    def job_names(self) -> List[str]:
        return list(self.jobs)

    def job(self, name: str) -> JobTemplate:
        return self.jobs[name]

    def triggered_by(self, event: str, ref: Optional[str] = None, changed_files: Optional[List[str]] = None) -> bool:
        # a workflow without triggers can only be started by hand
        if not self.triggers:
            return event == "workflow_dispatch"
        return any(t.matches(event, ref, changed_files) for t in self.triggers)


# ---------------------------------------------------------------------
# Run-time objects
# ---------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: StepStatus
    step_id: Optional[str] = None
    exit_code: Optional[int] = None
    output: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)
    duration: float = 0.0
    error: Optional[str] = None

    @property
    def outcome(self) -> str:
        return _RESULT_NAMES[JobStatus(self.status.value)]


@dataclass(eq=False)
class JobInstance:
    """
    One concrete expansion of a JobTemplate (one matrix point, or the
    template itself). Owned by the scheduler until it reaches a terminal status.
    """
    id: str
    template: JobTemplate
    index: int
    matrix: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    worker: Optional[str] = None
    concurrency_group: Optional[str] = None
    step_results: List[StepResult] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def job_name(self) -> str:
        return self.template.name

    @property
    def needs(self) -> Tuple[str, ...]:
        return self.template.needs

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def duration(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at
