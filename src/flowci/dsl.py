# src/flowci/dsl.py
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Union

from .definition import parse
from .model import WorkflowDefinition

Raw = Dict[str, Any]


def _put(target: Raw, key: str, value: Any) -> None:
    # leave unset fields out so the raw mapping reads like a hand-written one
    if value is not None and value != {} and value != []:
        target[key] = value


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: Optional[str] = None,
    if_: Optional[str] = None,
    continue_on_error: bool = False,
    env: Optional[Dict[str, Any]] = None,
    cwd: Optional[str] = None,
    timeout_minutes: Optional[float] = None,
) -> Raw:
    """Create a shell step."""
    step: Raw = {"name": name, "run": cmd}
    _put(step, "id", id)
    _put(step, "if", if_)
    if continue_on_error:
        step["continue-on-error"] = True
    _put(step, "env", env)
    _put(step, "working-directory", cwd)
    _put(step, "timeout-minutes", timeout_minutes)
    return step


def uses(
    ref: str,
    *,
    name: Optional[str] = None,
    with_: Optional[Dict[str, Any]] = None,
    id: Optional[str] = None,
    if_: Optional[str] = None,
    continue_on_error: bool = False,
    env: Optional[Dict[str, Any]] = None,
) -> Raw:
    """Create an action step, e.g. uses("flowci/cache", with_={"key": "deps", "path": ".venv"})."""
    step: Raw = {"uses": ref}
    _put(step, "name", name)
    _put(step, "with", with_)
    _put(step, "id", id)
    _put(step, "if", if_)
    if continue_on_error:
        step["continue-on-error"] = True
    _put(step, "env", env)
    return step


def matrix(*, fail_fast: bool = False, exclude: Optional[List[Dict[str, Any]]] = None, **axes: List[Any]) -> Raw:
    """
    Matrix strategy: matrix(python=["3.11", "3.12"], os=["linux"], exclude=[{"python": "3.11"}]).
    Axes keep keyword order; the first one varies slowest.
    """
    spec: Raw = {k: list(v) for k, v in axes.items()}
    if exclude:
        spec["exclude"] = [dict(e) for e in exclude]
    strategy: Raw = {"matrix": spec}
    if fail_fast:
        strategy["fail-fast"] = True
    return strategy


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Raw,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Raw]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    if_: Optional[str] = None,
    strategy: Optional[Raw] = None,
    runs_on: Optional[str] = None,
    env: Optional[Dict[str, Any]] = None,
    outputs: Optional[Dict[str, str]] = None,
    concurrency: Optional[str] = None,
    cancel_in_progress: Optional[bool] = None,
    timeout_minutes: Optional[float] = None,
) -> Raw:
    steps_final: List[Raw] = []
    if steps_list:
        steps_final.extend(steps_list)
    steps_final.extend(steps)

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    j: Raw = {"name": name, "steps": steps_final}
    _put(j, "needs", list(needs or []))
    _put(j, "if", if_)
    _put(j, "strategy", strategy)
    _put(j, "runs-on", runs_on)
    _put(j, "env", env)
    _put(j, "outputs", outputs)
    _put(j, "timeout-minutes", timeout_minutes)
    if concurrency is not None:
        group: Raw = {"group": concurrency}
        _put(group, "cancel-in-progress", cancel_in_progress)
        j["concurrency"] = group
    elif cancel_in_progress is not None:
        raise ValueError(f"job({name!r}): cancel_in_progress needs a concurrency group")
    return j


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Raw] = []
        self._env: dict[str, str] = {}
        self._outputs: dict[str, str] = {}
        self._if: Optional[str] = None
        self._strategy: Optional[Raw] = None
        self._runs_on: Optional[str] = None
        self._group: Optional[str] = None
        self._cancel_in_progress: Optional[bool] = None
        self._timeout: Optional[float] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs: Any):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use_action(self, ref: str, **kwargs: Any):
        self._steps.append(uses(ref, **kwargs))
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, *, fail_fast: bool = False, exclude: Optional[List[Dict[str, Any]]] = None, **axes):
        self._strategy = matrix(fail_fast=fail_fast, exclude=exclude, **axes)
        return self

    def when(self, condition: str):
        self._if = condition
        return self

    def on_runner(self, label: str):
        self._runs_on = label
        return self

    def in_group(self, group: str, *, cancel_in_progress: Optional[bool] = None):
        self._group = group
        self._cancel_in_progress = cancel_in_progress
        return self

    def output(self, name: str, expression: str):
        self._outputs[name] = expression
        return self

    def timeout(self, minutes: float):
        self._timeout = minutes
        return self

    def build(self) -> Raw:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return job(
            self.name,
            steps_list=self._steps,
            needs=self._needs,
            if_=self._if,
            strategy=self._strategy,
            runs_on=self._runs_on,
            env=self._env,
            outputs=self._outputs,
            concurrency=self._group,
            cancel_in_progress=self._cancel_in_progress,
            timeout_minutes=self._timeout,
        )


def build(name: str) -> JobBuilder:
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helper
# ---------------------------------------------------------------------

def wf(
    *jobs: Union[Raw, JobBuilder],
    name: str = "workflow",
    on: Union[str, List[str], Mapping[str, Any], None] = None,
    env: Optional[Dict[str, Any]] = None,
    cancel_in_progress: Optional[bool] = None,
) -> WorkflowDefinition:
    """
    Parse jobs into a WorkflowDefinition. Use it in a workflow file:

        def workflow():
            return wf(
                job("lint", sh("ruff", "ruff check .")),
                job("test", sh("pytest", "pytest -q"), needs=["lint"]),
                name="ci",
                on={"push": {"branches": ["main"]}},
            )

    Don't bind the name `workflow` to anything but that function in the file.
    """
    raw: Raw = {
        "name": name,
        "jobs": [j.build() if isinstance(j, JobBuilder) else j for j in jobs],
    }
    if on is not None:
        raw["on"] = dict(on) if isinstance(on, Mapping) else on
    _put(raw, "env", env)
    if cancel_in_progress is not None:
        raw["concurrency"] = {"cancel-in-progress": cancel_in_progress}
    return parse(raw)
