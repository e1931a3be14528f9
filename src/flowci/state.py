# state.py
from __future__ import annotations

import queue
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

from .model import JobInstance, JobStatus, StepResult
from .ui.console import get_console

_ALLOWED: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.BLOCKED, JobStatus.QUEUED, JobStatus.SKIPPED, JobStatus.CANCELLED}),
    JobStatus.BLOCKED: frozenset({JobStatus.QUEUED, JobStatus.SKIPPED, JobStatus.CANCELLED}),
    # a queued instance fails without running when no worker can ever take it
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED}),
}


class InvalidTransition(ValueError):
    pass


_STOP = object()


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------
# Events & snapshots (what external observers consume)
# ---------------------------------------------------------------------

class TransitionEvent(BaseModel):
    seq: int
    run_id: str
    kind: Literal["job", "step", "warning"]
    instance: str
    job: str
    status: str
    previous: Optional[str] = None
    step: Optional[str] = None
    worker: Optional[str] = None
    reason: Optional[str] = None
    timestamp: datetime = Field(default_factory=_now)


class StepSnapshot(BaseModel):
    name: str
    id: Optional[str] = None
    status: str
    exit_code: Optional[int] = None
    duration: float
    output: str = ""
    outputs: Dict[str, str] = Field(default_factory=dict)
    error: Optional[str] = None


class JobSnapshot(BaseModel):
    instance: str
    job: str
    matrix: Dict[str, object] = Field(default_factory=dict)
    status: str
    worker: Optional[str] = None
    duration: float
    outputs: Dict[str, str] = Field(default_factory=dict)
    error: Optional[str] = None
    steps: List[StepSnapshot] = Field(default_factory=list)


class RunSnapshot(BaseModel):
    run_id: str
    workflow: str
    conclusion: str
    finished_at: datetime = Field(default_factory=_now)
    jobs: List[JobSnapshot] = Field(default_factory=list)

    def job(self, instance: str) -> JobSnapshot:
        for j in self.jobs:
            if j.instance == instance:
                return j
        raise KeyError(instance)


Listener = Callable[[TransitionEvent], None]


def aggregate_result(statuses: Iterable[JobStatus]) -> str:
    """
    Job-level result over its instances: failure > cancelled > success > skipped.
    A job with no instances counts as skipped.
    """
    statuses = list(statuses)
    if any(s is JobStatus.FAILED for s in statuses):
        return "failure"
    if any(s is JobStatus.CANCELLED for s in statuses):
        return "cancelled"
    if any(s is JobStatus.SUCCEEDED for s in statuses):
        return "success"
    return "skipped"


class RunStateTracker:
    """
    Append-only record of every status transition of a run.

    The scheduler asks it for `needs` state; observers subscribe to its
    events; `archive()` emits the terminal snapshot once the run is over.

    Listeners are called in event order on a dedicated delivery thread, so a
    slow observer never holds up workers or the scheduler. `flush()` waits
    until every event emitted so far has been delivered.
    """

    def __init__(self, run_id: str, workflow: str = "workflow"):
        self.run_id = run_id
        self.workflow = workflow
        self._lock = threading.RLock()
        self._events: List[TransitionEvent] = []
        self._instances: Dict[str, JobInstance] = {}
        self._by_job: Dict[str, List[JobInstance]] = {}
        self._listeners: List[Listener] = []
        self._archived: Optional[RunSnapshot] = None
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._dispatcher: Optional[threading.Thread] = None

    # ---- wiring ----

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)
            if self._dispatcher is None:
                self._dispatcher = threading.Thread(
                    target=self._deliver, name=f"flowci-events-{self.run_id}", daemon=True
                )
                self._dispatcher.start()

    def flush(self) -> None:
        """Block until every event emitted so far has reached the listeners."""
        self._queue.join()

    def close(self) -> None:
        """Deliver what is pending and stop the delivery thread."""
        with self._lock:
            dispatcher, self._dispatcher = self._dispatcher, None
        if dispatcher is not None:
            self._queue.put(_STOP)
            dispatcher.join()

    def _deliver(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                for listener in list(self._listeners):
                    try:
                        listener(event)
                    except Exception as e:  # an observer must not take the run down
                        get_console().print_warning(f"event listener failed: {e}")
            finally:
                self._queue.task_done()

    def register(self, instances: Iterable[JobInstance], job_names: Iterable[str] = ()) -> None:
        """Track instances; `job_names` also registers jobs that expanded to zero instances."""
        with self._lock:
            for name in job_names:
                self._by_job.setdefault(name, [])
            for inst in instances:
                self._instances[inst.id] = inst
                self._by_job.setdefault(inst.job_name, []).append(inst)

    def _emit(self, **fields) -> TransitionEvent:
        event = TransitionEvent(seq=len(self._events), run_id=self.run_id, **fields)
        self._events.append(event)
        if self._dispatcher is not None:
            self._queue.put(event)
        return event

    # ---- recording ----

    def transition(
        self,
        instance: JobInstance,
        status: JobStatus,
        *,
        reason: Optional[str] = None,
    ) -> TransitionEvent:
        with self._lock:
            previous = instance.status
            if status not in _ALLOWED.get(previous, frozenset()):
                raise InvalidTransition(
                    f"[{instance.id}] illegal transition {previous.value} -> {status.value}"
                )

            now = time.monotonic()
            if status is JobStatus.RUNNING:
                instance.started_at = now
            if status.terminal:
                instance.finished_at = now
                if reason and status in (JobStatus.FAILED, JobStatus.CANCELLED) and not instance.error:
                    instance.error = reason
            instance.status = status

            return self._emit(
                kind="job",
                instance=instance.id,
                job=instance.job_name,
                status=status.value,
                previous=previous.value,
                worker=instance.worker,
                reason=reason,
            )

    def record_step(self, instance: JobInstance, result: StepResult) -> TransitionEvent:
        with self._lock:
            instance.step_results.append(result)
            return self._emit(
                kind="step",
                instance=instance.id,
                job=instance.job_name,
                status=result.status.value,
                step=result.name,
                worker=instance.worker,
                reason=result.error,
            )

    def warn(self, instance: JobInstance, message: str, *, step: Optional[str] = None) -> TransitionEvent:
        get_console().print_warning(f"[{instance.id}] {message}")
        with self._lock:
            return self._emit(
                kind="warning",
                instance=instance.id,
                job=instance.job_name,
                status="warning",
                step=step,
                reason=message,
            )

    # ---- queries ----

    def status(self, instance_id: str) -> JobStatus:
        with self._lock:
            return self._instances[instance_id].status

    def instances(self, job_name: Optional[str] = None) -> List[JobInstance]:
        with self._lock:
            if job_name is None:
                return sorted(self._instances.values(), key=lambda i: i.index)
            return list(self._by_job.get(job_name, []))

    def job_done(self, job_name: str) -> bool:
        with self._lock:
            return all(i.status.terminal for i in self._by_job.get(job_name, []))

    def job_result(self, job_name: str) -> Optional[str]:
        """Aggregated result of a job, or None while any instance is still live."""
        with self._lock:
            insts = self._by_job.get(job_name, [])
            if not all(i.status.terminal for i in insts):
                return None
            return aggregate_result(i.status for i in insts)

    def job_outputs(self, job_name: str) -> Dict[str, str]:
        with self._lock:
            merged: Dict[str, str] = {}
            for inst in self._by_job.get(job_name, []):
                merged.update(inst.outputs)
            return merged

    def needs_context(self, job_names: Iterable[str]) -> Dict[str, Dict[str, object]]:
        """`needs.<job>.result` / `needs.<job>.outputs` for expression evaluation."""
        return {
            name: {"result": self.job_result(name), "outputs": self.job_outputs(name)}
            for name in job_names
        }

    def events(self) -> List[TransitionEvent]:
        with self._lock:
            return list(self._events)

    # ---- snapshots ----

    def snapshot(self) -> RunSnapshot:
        with self._lock:
            if self._archived is not None:
                return self._archived
            insts = sorted(self._instances.values(), key=lambda i: i.index)
            statuses = [i.status for i in insts]
            if any(s is JobStatus.FAILED for s in statuses):
                conclusion = "failure"
            elif any(s is JobStatus.CANCELLED for s in statuses):
                conclusion = "cancelled"
            elif all(s.terminal for s in statuses):
                conclusion = "success"
            else:
                conclusion = "in_progress"

            return RunSnapshot(
                run_id=self.run_id,
                workflow=self.workflow,
                conclusion=conclusion,
                jobs=[
                    JobSnapshot(
                        instance=i.id,
                        job=i.job_name,
                        matrix=dict(i.matrix),
                        status=i.status.value,
                        worker=i.worker,
                        duration=i.duration,
                        outputs=dict(i.outputs),
                        error=i.error,
                        steps=[
                            StepSnapshot(
                                name=s.name,
                                id=s.step_id,
                                status=s.status.value,
                                exit_code=s.exit_code,
                                duration=s.duration,
                                output=s.output,
                                outputs=dict(s.outputs),
                                error=s.error,
                            )
                            for s in i.step_results
                        ],
                    )
                    for i in insts
                ],
            )

    def archive(self) -> RunSnapshot:
        """Freeze the terminal snapshot, drop the live instances and drain the listeners."""
        with self._lock:
            if self._archived is None:
                self._archived = self.snapshot()
                self._instances.clear()
                self._by_job.clear()
            archived = self._archived
        self.close()
        return archived
