# scheduler.py
from __future__ import annotations

import queue
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Tuple

from .context import RunContext, Worker
from .errors import ExpressionError, WorkerFault
from .executor import ExecutionEngine
from .expressions import evaluate_condition, interpolate, uses_status_functions
from .matrix import expand_all
from .model import JobInstance, JobStatus, StepStatus
from .state import RunStateTracker

_RUN_CANCEL = object()


class Scheduler:
    """
    Orders expanded job instances and dispatches them to a fixed worker pool.

    Per instance: Pending -> Blocked (unsatisfied needs) -> Queued -> Running
    -> Succeeded | Failed | Skipped | Cancelled.

      - an instance leaves Blocked once every instance of every needed job is terminal
      - a need that did not succeed (failed, cancelled or skipped) skips it
        without evaluating `if`, unless the `if` calls a status function
        (always(), failure(), cancelled())
      - instances sharing a concurrency group are serialized; with
        cancel-in-progress the newcomer cancels the current holder and
        starts only once that holder's worker has stopped
      - ready instances fan out up to the pool size, declaration order first
      - a worker crash fails the instance; it is never retried
    """

    def __init__(
        self,
        ctx: RunContext,
        tracker: RunStateTracker,
        engine: ExecutionEngine,
        *,
        workers: List[Worker],
        poll_interval: float = 0.05,
    ):
        if not workers:
            raise ValueError("scheduler needs at least one worker")
        self.ctx = ctx
        self.tracker = tracker
        self.engine = engine
        self.workers = list(workers)
        self.poll_interval = poll_interval

        self.instances: List[JobInstance] = []
        self._by_id: Dict[str, JobInstance] = {}
        self._runnable: List[JobInstance] = []
        self._free: List[Worker] = list(self.workers)
        self._in_flight: Dict[Future, Tuple[JobInstance, Worker]] = {}
        # group -> cancelled instances still executing on a worker, and the
        # holder that may only start once they are gone
        self._draining: Dict[str, List[JobInstance]] = {}
        self._parked: Dict[str, JobInstance] = {}
        self._requests: "queue.SimpleQueue[object]" = queue.SimpleQueue()
        self._run_cancelled = False
        self._built = False
        self.interrupted = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build(self) -> List[JobInstance]:
        """Expand every job template and register the instances with the tracker."""
        if not self._built:
            workflow = self.ctx.workflow
            self.instances = expand_all(workflow.jobs.values(), env=self.ctx.env)
            self._by_id = {i.id: i for i in self.instances}
            self.tracker.register(self.instances, job_names=workflow.job_names)
            self._built = True
        return self.instances

    def cancel(self, instance_id: Optional[str] = None) -> None:
        """
        Request cancellation of one instance, or of the whole run when
        `instance_id` is None. Safe to call from any thread.
        """
        self._requests.put(_RUN_CANCEL if instance_id is None else instance_id)

    def run(self) -> Dict[str, JobStatus]:
        """
        Drive the run to completion and return the final status of every instance.

        Ctrl-C while the run is in progress requests a run cancellation and
        keeps draining: running commands are killed, the rest is cancelled or
        skipped, and `interrupted` is set.
        """
        self.build()

        with ThreadPoolExecutor(max_workers=len(self.workers), thread_name_prefix="flowci-worker") as pool:
            for inst in self.instances:
                if inst.needs:
                    self.tracker.transition(inst, JobStatus.BLOCKED, reason=f"waiting on {', '.join(inst.needs)}")

            done = False
            while not done:
                try:
                    done = self._tick(pool)
                except KeyboardInterrupt:
                    self.interrupted = True
                    self.cancel()

        return {i.id: i.status for i in self.instances}

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _tick(self, pool: ThreadPoolExecutor) -> bool:
        """One scheduling round. Returns True once nothing is left to do."""
        self._drain_requests()

        progressed = True
        while progressed:
            progressed = self._advance()
            progressed = self._dispatch(pool) or progressed

        if not self._in_flight:
            for inst in [i for i in self.instances if not i.status.terminal]:
                self._cancel_instance(inst, "no runnable work left")
            return True

        finished, _ = wait(list(self._in_flight), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
        for fut in finished:
            self._complete(fut)
        return False

    def _drain_requests(self) -> None:
        while True:
            try:
                req = self._requests.get_nowait()
            except queue.Empty:
                return
            if req is _RUN_CANCEL:
                self._run_cancelled = True
                for inst in self.instances:
                    if inst.status in (JobStatus.QUEUED, JobStatus.RUNNING):
                        self._cancel_instance(inst, "run cancelled")
            else:
                inst = self._by_id.get(str(req))
                if inst is not None:
                    self._cancel_instance(inst, "cancelled by request")

    def _advance(self) -> bool:
        """Decide every instance whose needs are all terminal. Returns True on any change."""
        changed = False
        for inst in self.instances:
            if inst.status not in (JobStatus.PENDING, JobStatus.BLOCKED):
                continue
            if not all(self.tracker.job_done(n) for n in inst.needs):
                continue
            self._decide(inst)
            changed = True
        return changed

    def _decide(self, inst: JobInstance) -> None:
        if self._run_cancelled:
            self.tracker.transition(inst, JobStatus.SKIPPED, reason="run cancelled")
            return

        template = inst.template
        results = {n: self.tracker.job_result(n) for n in inst.needs}
        bad = [n for n, r in results.items() if r != "success"]
        override = uses_status_functions(template.if_)

        if bad and not override:
            self.tracker.transition(inst, JobStatus.SKIPPED, reason=f"needs did not succeed: {', '.join(bad)}")
            return

        if any(r == "failure" for r in results.values()):
            job_status = "failure"
        elif any(r == "cancelled" for r in results.values()):
            job_status = "cancelled"
        else:
            job_status = "success"

        expr = self.ctx.expression_context(
            inst,
            needs=self.tracker.needs_context(inst.needs),
            job_status=job_status,
        )
        try:
            ok = evaluate_condition(template.if_, expr)
        except ExpressionError as e:
            self.tracker.warn(inst, f"{e.message}; treating `if` as false")
            ok = False

        if not ok:
            self.tracker.transition(inst, JobStatus.SKIPPED, reason="condition evaluated to false")
            return

        self._enqueue(inst, expr)

    def _enqueue(self, inst: JobInstance, expr: dict) -> None:
        self.tracker.transition(inst, JobStatus.QUEUED)
        spec = inst.template.concurrency
        if spec is None:
            self._runnable.append(inst)
            return

        try:
            group = interpolate(spec.group, expr)
        except ExpressionError as e:
            self.tracker.warn(inst, f"concurrency group: {e.message}; using it verbatim")
            group = spec.group
        inst.concurrency_group = group

        cancel_in_progress = spec.cancel_in_progress
        if cancel_in_progress is None:
            cancel_in_progress = self.ctx.workflow.concurrency.cancel_in_progress

        acquired, displaced = self.ctx.locks.acquire(group, inst, cancel_in_progress=cancel_in_progress)
        if displaced is not None:
            self._cancel_instance(displaced, f"superseded in concurrency group {group!r} by {inst.id}")
        if acquired:
            self._make_runnable(group, inst)

    def _make_runnable(self, group: str, inst: JobInstance) -> None:
        if self._draining.get(group):
            self._parked[group] = inst
        else:
            self._runnable.append(inst)

    def _is_running(self, inst: JobInstance) -> bool:
        return any(i is inst for i, _ in self._in_flight.values())

    def _drained(self, inst: JobInstance) -> None:
        group = inst.concurrency_group
        draining = self._draining.get(group) if group is not None else None
        if not draining or inst not in draining:
            return
        draining.remove(inst)
        if draining:
            return
        del self._draining[group]
        parked = self._parked.pop(group, None)
        if parked is not None and parked.status is JobStatus.QUEUED:
            self._runnable.append(parked)

    def _release(self, inst: JobInstance) -> None:
        if inst.concurrency_group is None:
            return
        nxt = self.ctx.locks.release(inst.concurrency_group, inst)
        if nxt is not None and nxt.status is JobStatus.QUEUED:
            self._make_runnable(inst.concurrency_group, nxt)

    def _cancel_instance(self, inst: JobInstance, reason: str) -> None:
        if inst.status.terminal:
            return
        inst.cancel_event.set()
        self.tracker.transition(inst, JobStatus.CANCELLED, reason=reason)
        if inst.concurrency_group is not None and self._is_running(inst):
            # the group stays busy until its worker actually stops
            self._draining.setdefault(inst.concurrency_group, []).append(inst)
        if inst in self._runnable:
            self._runnable.remove(inst)
        self._release(inst)

    def _fail(self, inst: JobInstance, reason: str) -> None:
        self.tracker.transition(inst, JobStatus.FAILED, reason=reason)
        self._release(inst)

    def _dispatch(self, pool: ThreadPoolExecutor) -> bool:
        """Hand runnable instances to free workers, declaration order first."""
        changed = False
        self._runnable.sort(key=lambda i: i.index)
        for inst in list(self._runnable):
            if not any(w.accepts(inst) for w in self.workers):
                self._runnable.remove(inst)
                fault = WorkerFault(f"no worker offers runs-on {inst.template.runs_on!r}", job=inst.id)
                self._fail(inst, fault.message)
                changed = True
                continue

            worker = next((w for w in self._free if w.accepts(inst)), None)
            if worker is None:
                continue

            self._free.remove(worker)
            self._runnable.remove(inst)
            inst.worker = worker.id
            self.tracker.transition(inst, JobStatus.RUNNING)
            fut = pool.submit(self.engine.run, inst)
            self._in_flight[fut] = (inst, worker)
            changed = True
        return changed

    def _complete(self, fut: Future) -> None:
        inst, worker = self._in_flight.pop(fut)
        self._free.append(worker)
        self._free.sort(key=self.workers.index)
        self._drained(inst)

        reason: Optional[str] = None
        try:
            status = fut.result()
        except WorkerFault as e:
            status, reason = JobStatus.FAILED, e.message
        except Exception as e:  # worker crash: fail the instance, never retry
            status, reason = JobStatus.FAILED, f"worker fault: {type(e).__name__}: {e}"

        if inst.status.terminal:
            # cancelled while running; its late result is ignored
            return

        if status is JobStatus.CANCELLED:
            self._cancel_instance(inst, "cancelled while running")
            return
        if status is JobStatus.FAILED:
            failed_step = next((s.name for s in reversed(inst.step_results) if s.status is StepStatus.FAILED), None)
            self._fail(inst, reason or (f"step failed: {failed_step}" if failed_step else "job failed"))
            matrix = inst.template.matrix
            if matrix is not None and matrix.fail_fast:
                for sibling in self.tracker.instances(inst.job_name):
                    if sibling is not inst:
                        self._cancel_instance(sibling, f"fail-fast: {inst.id} failed")
            return

        self.tracker.transition(inst, status)
        self._release(inst)
