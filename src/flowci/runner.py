# runner.py
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence

from .actions import ActionResolver
from .context import RunContext, make_workers
from .executor import ExecutionEngine
from .model import JobStatus, WorkflowDefinition
from .scheduler import Scheduler
from .settings import Settings
from .sinks import HttpEventSink, JsonlEventSink
from .state import RunSnapshot, RunStateTracker, TransitionEvent
from .ui.console import get_console


@dataclass
class RunResult:
    run_id: str
    snapshot: RunSnapshot
    statuses: Dict[str, JobStatus]
    interrupted: bool = False

    @property
    def conclusion(self) -> str:
        return self.snapshot.conclusion

    @property
    def ok(self) -> bool:
        return self.snapshot.conclusion == "success"


def _console_listener(event: TransitionEvent) -> None:
    # step results and warnings are printed where they happen
    if event.kind == "job":
        get_console().print_transition(event)


def run_workflow(
    definition: WorkflowDefinition,
    *,
    settings: Optional[Settings] = None,
    workers: Optional[int] = None,
    runner_labels: Optional[Sequence[str]] = None,
    home: Optional[str | Path] = None,
    source_dir: str | Path = ".",
    trigger: Optional[Mapping[str, Any]] = None,
    run_id: Optional[str] = None,
    resolver: Optional[ActionResolver] = None,
    listeners: Iterable[Callable[[TransitionEvent], None]] = (),
    events_file: Optional[str | Path] = None,
    events_url: Optional[str] = None,
    on_start: Optional[Callable[[Scheduler], None]] = None,
) -> RunResult:
    """
    Execute one workflow run end to end.

    Explicit keyword arguments win over `settings` (which defaults to
    Settings.from_env()). The RunContext is torn down whatever the outcome.

    Args:
        definition: Parsed workflow
        trigger: Trigger payload (event_name, ref, sha, inputs, event)
        resolver: Resolves non-built-in `uses:` references
        listeners: Extra callables receiving every TransitionEvent
        on_start: Called with the Scheduler before the first dispatch
                  (lets callers wire cancellation)

    Returns:
        RunResult with the archived snapshot and the per-instance statuses
    """
    console = get_console()
    settings = settings or Settings.from_env()

    pool = make_workers(
        workers if workers is not None else settings.workers,
        runner_labels if runner_labels is not None else settings.runner_labels,
    )
    ctx = RunContext.create(
        definition,
        home=home if home is not None else settings.home,
        source_dir=source_dir,
        trigger=trigger,
        run_id=run_id,
        cache_keep=settings.cache_keep,
    )

    tracker = RunStateTracker(ctx.run_id, workflow=definition.name)
    tracker.subscribe(_console_listener)
    for listener in listeners:
        tracker.subscribe(listener)
    if events_file is not None:
        tracker.subscribe(JsonlEventSink(events_file))
    http_sink: Optional[HttpEventSink] = None
    url = events_url if events_url is not None else settings.events_url
    if url:
        http_sink = HttpEventSink(url)
        tracker.subscribe(http_sink)

    engine = ExecutionEngine(ctx, tracker, resolver)
    scheduler = Scheduler(ctx, tracker, engine, workers=pool)

    try:
        with ctx:
            instances = scheduler.build()
            console.print_run_started(
                workflow=definition.name,
                run_id=ctx.run_id,
                job_count=len(instances),
                event=str(ctx.trigger.get("event_name")),
            )
            console.print_debug(f"workers: {', '.join(w.id for w in pool)} labels={sorted(pool[0].labels)}")
            if on_start is not None:
                on_start(scheduler)
            statuses = scheduler.run()
        snapshot = tracker.archive()
    finally:
        tracker.close()

    if http_sink is not None:
        http_sink.send_snapshot(snapshot)
        if http_sink.failures:
            console.print_warning(f"{http_sink.failures} event(s) could not be delivered to {url}")

    return RunResult(
        run_id=ctx.run_id,
        snapshot=snapshot,
        statuses=statuses,
        interrupted=scheduler.interrupted,
    )
