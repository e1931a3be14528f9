import threading
import time

from flowci.actions import ActionResolver, ActionResult
from flowci.model import JobStatus


def _job(*steps, **fields):
    return {"steps": list(steps) or [{"run": "true"}], **fields}


def _index(events, instance, status):
    return next(e.seq for e in events if e.kind == "job" and e.instance == instance and e.status == status)


def test_needs_run_in_order(run_raw):
    events = []
    result = run_raw(
        {"jobs": {"build": _job({"run": "sleep 0.2"}), "test": _job(needs=["build"])}},
        listeners=[events.append],
    )

    assert result.ok
    assert _index(events, "build", "succeeded") < _index(events, "test", "running")
    assert _index(events, "test", "blocked") < _index(events, "build", "succeeded")


def test_failed_need_skips_dependent_without_running_it(run_raw):
    result = run_raw(
        {
            "jobs": {
                "build": _job({"run": "exit 1"}),
                "test": _job({"run": "echo never"}, needs=["build"], **{"if": "true"}),
                "deploy": _job(needs=["test"]),
            }
        }
    )

    snap = result.snapshot
    assert result.conclusion == "failure"
    assert snap.job("build").status == "failed"
    assert snap.job("test").status == "skipped"
    assert snap.job("test").steps == []
    assert snap.job("deploy").status == "skipped"


def test_status_functions_override_a_failed_need(run_raw):
    result = run_raw(
        {
            "jobs": {
                "build": _job({"run": "exit 1"}),
                "cleanup": _job(needs=["build"], **{"if": "always()"}),
                "report": _job(needs=["build"], **{"if": "${{ failure() }}"}),
                "celebrate": _job(needs=["build"], **{"if": "success() || always() == false"}),
            }
        }
    )

    statuses = result.statuses
    assert statuses["cleanup"] is JobStatus.SUCCEEDED
    assert statuses["report"] is JobStatus.SUCCEEDED
    assert statuses["celebrate"] is JobStatus.SKIPPED


def test_skipped_need_propagates_to_dependents(run_raw):
    result = run_raw(
        {
            "jobs": {
                "optional": _job(**{"if": "github.event_name == 'push'"}),
                "after": _job(needs=["optional"]),
                "report": _job(needs=["optional"], **{"if": "always() && needs.optional.result == 'skipped'"}),
            }
        }
    )

    assert result.statuses == {
        "optional": JobStatus.SKIPPED,
        "after": JobStatus.SKIPPED,
        "report": JobStatus.SUCCEEDED,
    }
    assert result.conclusion == "success"


def test_zero_instance_job_counts_as_skipped(run_raw):
    result = run_raw(
        {
            "jobs": {
                "none": _job(strategy={"matrix": {"os": ["mac"], "exclude": [{"os": "mac"}]}}),
                "after": _job(needs=["none"]),
                "anyway": _job(needs=["none"], **{"if": "always()"}),
            }
        }
    )
    assert result.statuses == {"after": JobStatus.SKIPPED, "anyway": JobStatus.SUCCEEDED}


def test_needs_outputs_flow_into_conditions(run_raw):
    result = run_raw(
        {
            "jobs": {
                "version": _job(
                    {"id": "v", "run": 'echo "channel=beta" >> "$FLOWCI_OUTPUT"'},
                    outputs={"channel": "${{ steps.v.outputs.channel }}"},
                ),
                "stable": _job(needs=["version"], **{"if": "needs.version.outputs.channel == 'stable'"}),
                "beta": _job(needs=["version"], **{"if": "needs.version.outputs.channel == 'beta'"}),
            }
        }
    )
    assert result.statuses["stable"] is JobStatus.SKIPPED
    assert result.statuses["beta"] is JobStatus.SUCCEEDED


def test_matrix_instances_all_run(run_raw):
    result = run_raw(
        {"jobs": {"test": _job({"run": "test -n '${{ matrix.py }}'"}, strategy={"matrix": {"py": ["3.11", "3.12"]}})}}
    )
    assert result.statuses == {"test (3.11)": JobStatus.SUCCEEDED, "test (3.12)": JobStatus.SUCCEEDED}


def test_independent_jobs_fan_out_up_to_pool_size(run_raw):
    started = time.monotonic()
    result = run_raw(
        {"jobs": {name: _job({"run": "sleep 0.5"}) for name in ("a", "b", "c")}},
        workers=3,
    )
    assert result.ok
    assert time.monotonic() - started < 1.4


def test_concurrency_group_serializes_instances(run_raw):
    lock = threading.Lock()
    active = [0]
    peak = [0]
    resolver = ActionResolver()

    @resolver.action("test/exclusive")
    def exclusive(call):
        with lock:
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        time.sleep(0.2)
        with lock:
            active[0] -= 1
        return ActionResult()

    step = {"uses": "test/exclusive"}
    result = run_raw(
        {
            "jobs": {
                "deploy-a": _job(step, concurrency="deploy"),
                "deploy-b": _job(step, concurrency="deploy"),
            }
        },
        resolver=resolver,
    )

    assert result.ok
    assert peak[0] == 1


def test_cancel_in_progress_waits_for_the_superseded_holder(run_raw):
    lock = threading.Lock()
    active = [0]
    peak = [0]
    old_started = threading.Event()
    resolver = ActionResolver()

    def enter():
        with lock:
            active[0] += 1
            peak[0] = max(peak[0], active[0])

    def leave():
        with lock:
            active[0] -= 1

    @resolver.action("test/old")
    def old(call):
        enter()
        old_started.set()
        time.sleep(0.6)
        leave()
        return ActionResult()

    @resolver.action("test/wait-for-old")
    def wait_for_old(call):
        assert old_started.wait(10)
        return ActionResult()

    @resolver.action("test/new")
    def new(call):
        enter()
        time.sleep(0.1)
        leave()
        return ActionResult()

    group = {"group": "deploy", "cancel-in-progress": True}
    result = run_raw(
        {
            "jobs": {
                "deploy-old": _job({"uses": "test/old"}, concurrency=group),
                "gate": _job({"uses": "test/wait-for-old"}),
                "deploy-new": _job({"uses": "test/new"}, needs=["gate"], concurrency=group),
            }
        },
        resolver=resolver,
    )

    assert result.statuses == {
        "deploy-old": JobStatus.CANCELLED,
        "gate": JobStatus.SUCCEEDED,
        "deploy-new": JobStatus.SUCCEEDED,
    }
    assert peak[0] == 1
    assert "superseded" in result.snapshot.job("deploy-old").error


def test_runs_on_without_a_matching_worker_fails(run_raw):
    result = run_raw({"jobs": {"gpu": _job(**{"runs-on": "gpu"}), "cpu": _job()}})
    assert result.statuses == {"gpu": JobStatus.FAILED, "cpu": JobStatus.SUCCEEDED}
    assert "runs-on 'gpu'" in result.snapshot.job("gpu").error


def test_runs_on_with_a_matching_worker(run_raw):
    result = run_raw({"jobs": {"gpu": _job(**{"runs-on": "gpu"})}}, labels=["gpu", "linux"])
    assert result.statuses == {"gpu": JobStatus.SUCCEEDED}


def test_worker_crash_fails_the_instance_once(run_raw):
    calls = []
    resolver = ActionResolver()

    @resolver.action("test/crash")
    def crash(call):
        calls.append(call.ref)
        raise RuntimeError("disk on fire")

    result = run_raw({"jobs": {"flaky": _job({"uses": "test/crash"})}}, resolver=resolver)

    assert result.statuses == {"flaky": JobStatus.FAILED}
    assert calls == ["test/crash"]
    assert "worker fault" in result.snapshot.job("flaky").error


def test_fail_fast_cancels_matrix_siblings(run_raw):
    result = run_raw(
        {
            "jobs": {
                "test": _job(
                    {"run": "if [ '${{ matrix.n }}' = '1' ]; then exit 1; fi; sleep 5"},
                    strategy={"matrix": {"n": [1, 2]}, "fail-fast": True},
                )
            }
        }
    )
    assert result.statuses == {"test (1)": JobStatus.FAILED, "test (2)": JobStatus.CANCELLED}


def test_without_fail_fast_siblings_finish(run_raw):
    result = run_raw(
        {
            "jobs": {
                "test": _job(
                    {"run": "if [ '${{ matrix.n }}' = '1' ]; then exit 1; fi"},
                    strategy={"matrix": {"n": [1, 2]}},
                )
            }
        }
    )
    assert result.statuses == {"test (1)": JobStatus.FAILED, "test (2)": JobStatus.SUCCEEDED}


def test_run_cancellation(run_raw):
    timers = []

    def cancel_soon(scheduler):
        timer = threading.Timer(0.3, scheduler.cancel)
        timers.append(timer)
        timer.start()

    started = time.monotonic()
    result = run_raw(
        {"jobs": {"long": _job({"run": "sleep 10"}), "after": _job(needs=["long"])}},
        on_start=cancel_soon,
    )
    for t in timers:
        t.join()

    assert time.monotonic() - started < 5
    assert result.statuses == {"long": JobStatus.CANCELLED, "after": JobStatus.SKIPPED}
    assert result.conclusion == "cancelled"
    assert result.snapshot.job("long").steps[0].status == "cancelled"


def test_cancelled_holder_keeps_its_group_until_its_worker_stops(run_raw):
    lock = threading.Lock()
    active = [0]
    peak = [0]
    resolver = ActionResolver()

    @resolver.action("test/exclusive")
    def exclusive(call):
        with lock:
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        time.sleep(0.6)
        with lock:
            active[0] -= 1
        return ActionResult()

    timers = []

    def cancel_first(scheduler):
        timer = threading.Timer(0.2, scheduler.cancel, args=("deploy-a",))
        timers.append(timer)
        timer.start()

    step = {"uses": "test/exclusive"}
    result = run_raw(
        {
            "jobs": {
                "deploy-a": _job(step, concurrency="deploy"),
                "deploy-b": _job(step, concurrency="deploy"),
            }
        },
        resolver=resolver,
        on_start=cancel_first,
    )
    for t in timers:
        t.join()

    assert result.statuses == {"deploy-a": JobStatus.CANCELLED, "deploy-b": JobStatus.SUCCEEDED}
    assert peak[0] == 1


def test_malformed_job_condition_skips_with_a_warning(run_raw):
    events = []
    result = run_raw(
        {"jobs": {"build": _job(), "deploy": _job(needs=["build"], **{"if": "github.ref == ("})}},
        listeners=[events.append],
    )

    assert result.statuses == {"build": JobStatus.SUCCEEDED, "deploy": JobStatus.SKIPPED}
    warnings = [e for e in events if e.kind == "warning" and e.instance == "deploy"]
    assert len(warnings) == 1
    assert "treating `if` as false" in warnings[0].reason
    assert result.snapshot.job("deploy").steps == []


def test_single_worker_runs_ready_jobs_in_declaration_order(run_raw):
    events = []
    names = ["zeta", "alpha", "mid", "beta"]
    result = run_raw(
        {"jobs": {name: _job({"run": "sleep 0.05"}) for name in names}},
        workers=1,
        listeners=[events.append],
    )

    assert result.ok
    started = [e.instance for e in events if e.kind == "job" and e.status == "running"]
    assert started == names


def test_slow_listener_does_not_delay_other_jobs(run_raw):
    stamps = {}
    resolver = ActionResolver()

    @resolver.action("test/stamp")
    def stamp(call):
        stamps[call.inputs["job"]] = time.monotonic()
        return ActionResult()

    def slow(event):
        if event.kind == "job" and event.instance == "a" and event.status == "running":
            time.sleep(1.5)

    started = time.monotonic()
    result = run_raw(
        {
            "jobs": {
                "a": _job({"uses": "test/stamp", "with": {"job": "a"}}),
                "b": _job({"uses": "test/stamp", "with": {"job": "b"}}),
            }
        },
        resolver=resolver,
        listeners=[slow],
    )

    assert result.ok
    assert stamps["b"] - started < 1.0
    assert stamps["a"] - started < 1.0
