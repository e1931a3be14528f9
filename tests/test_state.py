import threading
import time

import pytest

from flowci.definition import parse
from flowci.matrix import expand_all
from flowci.model import JobStatus, StepResult, StepStatus
from flowci.state import InvalidTransition, RunStateTracker, aggregate_result


@pytest.fixture
def tracked():
    definition = parse(
        {
            "jobs": {
                "build": {"strategy": {"matrix": {"n": [1, 2]}}, "steps": [{"run": "true"}]},
                "none": {"strategy": {"matrix": {"n": [1], "exclude": [{"n": 1}]}}, "steps": [{"run": "true"}]},
            }
        }
    )
    instances = expand_all(definition.jobs.values())
    tracker = RunStateTracker("run-1", workflow="ci")
    tracker.register(instances, job_names=definition.job_names)
    return tracker, instances


def test_illegal_transition_is_rejected(tracked):
    tracker, (first, _second) = tracked
    with pytest.raises(InvalidTransition):
        tracker.transition(first, JobStatus.SUCCEEDED)

    tracker.transition(first, JobStatus.QUEUED)
    tracker.transition(first, JobStatus.RUNNING)
    tracker.transition(first, JobStatus.SUCCEEDED)
    with pytest.raises(InvalidTransition):
        tracker.transition(first, JobStatus.RUNNING)


def test_events_are_appended_and_delivered(tracked):
    tracker, (first, _second) = tracked
    seen = []
    tracker.subscribe(seen.append)

    tracker.transition(first, JobStatus.QUEUED)
    tracker.transition(first, JobStatus.RUNNING)
    tracker.flush()

    assert [(e.seq, e.status, e.previous) for e in tracker.events()] == [(0, "queued", "pending"), (1, "running", "queued")]
    assert seen == tracker.events()


def test_a_failing_listener_does_not_break_the_run(tracked):
    tracker, (first, _second) = tracked

    def broken(_event):
        raise RuntimeError("boom")

    tracker.subscribe(broken)
    tracker.transition(first, JobStatus.QUEUED)
    tracker.flush()
    assert tracker.status(first.id) is JobStatus.QUEUED


def test_job_result_waits_for_every_instance(tracked):
    tracker, (first, second) = tracked
    tracker.transition(first, JobStatus.SKIPPED)
    assert not tracker.job_done("build")
    assert tracker.job_result("build") is None

    tracker.transition(second, JobStatus.QUEUED)
    tracker.transition(second, JobStatus.RUNNING)
    tracker.transition(second, JobStatus.FAILED, reason="step failed: x")

    assert tracker.job_done("build")
    assert tracker.job_result("build") == "failure"
    assert second.error == "step failed: x"


def test_zero_instance_job_is_done_and_skipped(tracked):
    tracker, _ = tracked
    assert tracker.job_done("none")
    assert tracker.job_result("none") == "skipped"


@pytest.mark.parametrize(
    "statuses, expected",
    [
        ([JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED], "failure"),
        ([JobStatus.SUCCEEDED, JobStatus.CANCELLED], "cancelled"),
        ([JobStatus.SKIPPED, JobStatus.SUCCEEDED], "success"),
        ([JobStatus.SKIPPED], "skipped"),
        ([], "skipped"),
    ],
)
def test_aggregate_result(statuses, expected):
    assert aggregate_result(statuses) == expected


def test_snapshot_and_archive(tracked):
    tracker, (first, second) = tracked
    for inst in (first, second):
        tracker.transition(inst, JobStatus.QUEUED)
        tracker.transition(inst, JobStatus.RUNNING)
    tracker.record_step(first, StepResult(name="echo", status=StepStatus.SUCCEEDED, exit_code=0, output="hi\n"))
    tracker.transition(first, JobStatus.SUCCEEDED)

    assert tracker.snapshot().conclusion == "in_progress"

    tracker.transition(second, JobStatus.CANCELLED, reason="superseded")
    snapshot = tracker.archive()

    assert snapshot.conclusion == "cancelled"
    assert snapshot.job("build (1)").steps[0].output == "hi\n"
    assert snapshot.job("build (2)").error == "superseded"
    assert tracker.instances() == []
    assert tracker.snapshot() is snapshot


def test_slow_listener_does_not_hold_up_recording(tracked):
    tracker, (first, second) = tracked
    gate = threading.Event()
    seen = []

    def slow(event):
        gate.wait(5)
        seen.append(event.seq)

    tracker.subscribe(slow)
    started = time.monotonic()
    tracker.transition(first, JobStatus.QUEUED)
    tracker.transition(second, JobStatus.QUEUED)
    assert tracker.job_result("build") is None
    assert time.monotonic() - started < 1.0
    assert seen == []

    gate.set()
    tracker.flush()
    assert seen == [0, 1]


def test_archive_drains_pending_events(tracked):
    tracker, (first, _second) = tracked
    seen = []
    tracker.subscribe(lambda event: (time.sleep(0.05), seen.append(event.status)))
    tracker.transition(first, JobStatus.QUEUED)
    tracker.transition(first, JobStatus.RUNNING)
    tracker.archive()
    assert seen == ["queued", "running"]
