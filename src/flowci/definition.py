# definition.py
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .dag import check_acyclic
from .errors import DefinitionError
from .matrix import expand_all
from .model import (
    ConcurrencyPolicy,
    ConcurrencySpec,
    JobTemplate,
    MatrixSpec,
    StepKind,
    StepTemplate,
    Trigger,
    WorkflowDefinition,
)

Scalar = Union[str, int, float, bool]


def _stringify(value: Scalar) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_list(value: Union[str, List[str], None]) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


# ---------------------------------------------------------------------
# Raw schema (shape of the already-parsed declarative document)
# ---------------------------------------------------------------------

class _Raw(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class RawStep(_Raw):
    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Scalar] = Field(default_factory=dict, alias="with")
    if_: Optional[Union[str, bool]] = Field(default=None, alias="if")
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    env: Dict[str, Scalar] = Field(default_factory=dict)
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)

    @model_validator(mode="after")
    def _one_kind(self) -> "RawStep":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        if self.run is not None and not self.run.strip():
            raise ValueError("'run' must not be empty")
        return self


class RawConcurrency(_Raw):
    group: str
    cancel_in_progress: Optional[bool] = Field(default=None, alias="cancel-in-progress")


class RawStrategy(_Raw):
    matrix: Dict[str, Any]
    fail_fast: bool = Field(default=False, alias="fail-fast")

    @field_validator("matrix")
    @classmethod
    def _check_matrix(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        for axis, values in value.items():
            if axis == "exclude":
                if not isinstance(values, list) or not all(isinstance(e, dict) for e in values):
                    raise ValueError("matrix.exclude must be a list of mappings")
                continue
            if axis == "include":
                raise ValueError("matrix.include is not supported")
            if not isinstance(values, list):
                raise ValueError(f"matrix axis {axis!r} must be a list of values")
        return value


class RawJob(_Raw):
    name: Optional[str] = None
    needs: Union[str, List[str], None] = None
    runs_on: Optional[str] = Field(default=None, alias="runs-on")
    if_: Optional[Union[str, bool]] = Field(default=None, alias="if")
    env: Dict[str, Scalar] = Field(default_factory=dict)
    outputs: Dict[str, str] = Field(default_factory=dict)
    concurrency: Union[str, RawConcurrency, None] = None
    strategy: Optional[RawStrategy] = None
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    steps: List[RawStep] = Field(min_length=1)


class RawWorkflow(_Raw):
    name: str = "workflow"
    on: Union[str, List[str], Dict[str, Optional[Dict[str, Any]]], None] = None
    env: Dict[str, Scalar] = Field(default_factory=dict)
    concurrency: Union[bool, Dict[str, Any], None] = None
    jobs: Union[Dict[str, RawJob], List[RawJob]]


# ---------------------------------------------------------------------
# Raw -> model
# ---------------------------------------------------------------------

def _step(raw: RawStep, index: int) -> StepTemplate:
    if raw.run is not None:
        kind = StepKind.RUN
        default_name = raw.run.strip().splitlines()[0]
    else:
        kind = StepKind.USES
        default_name = raw.uses or f"step {index + 1}"

    if_ = raw.if_
    if isinstance(if_, bool):
        if_ = "true" if if_ else "false"

    return StepTemplate(
        name=raw.name or default_name,
        kind=kind,
        run=raw.run,
        uses=raw.uses,
        inputs={k: _stringify(v) for k, v in raw.with_.items()},
        id=raw.id,
        if_=if_,
        continue_on_error=raw.continue_on_error,
        env={k: _stringify(v) for k, v in raw.env.items()},
        working_directory=raw.working_directory,
        timeout_minutes=raw.timeout_minutes,
    )


def _matrix(name: str, raw: Optional[RawStrategy]) -> Optional[MatrixSpec]:
    if raw is None:
        return None
    axes = {k: list(v) for k, v in raw.matrix.items() if k != "exclude"}
    exclude = [dict(e) for e in raw.matrix.get("exclude", [])]
    for entry in exclude:
        unknown = sorted(set(entry) - set(axes))
        if unknown:
            raise DefinitionError(
                f"Job '{name}' matrix exclude names unknown axes {unknown}",
                job=name,
            )
    return MatrixSpec(axes=axes, exclude=exclude, fail_fast=raw.fail_fast)


def _concurrency(raw: Union[str, RawConcurrency, None]) -> Optional[ConcurrencySpec]:
    if raw is None:
        return None
    if isinstance(raw, str):
        return ConcurrencySpec(group=raw)
    return ConcurrencySpec(group=raw.group, cancel_in_progress=raw.cancel_in_progress)


def _job(name: str, raw: RawJob) -> JobTemplate:
    if_ = raw.if_
    if isinstance(if_, bool):
        if_ = "true" if if_ else "false"

    return JobTemplate(
        name=name,
        steps=tuple(_step(s, i) for i, s in enumerate(raw.steps)),
        needs=tuple(dict.fromkeys(_as_list(raw.needs))),
        matrix=_matrix(name, raw.strategy),
        if_=if_,
        concurrency=_concurrency(raw.concurrency),
        runs_on=raw.runs_on,
        env={k: _stringify(v) for k, v in raw.env.items()},
        outputs=dict(raw.outputs),
        timeout_minutes=raw.timeout_minutes,
    )


def _triggers(raw: Union[str, List[str], Dict[str, Optional[Dict[str, Any]]], None]) -> Tuple[Trigger, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (Trigger(event=raw),)
    if isinstance(raw, list):
        return tuple(Trigger(event=e) for e in raw)

    out: List[Trigger] = []
    for event, opts in raw.items():
        opts = dict(opts or {})
        branches = opts.pop("branches", None)
        paths = opts.pop("paths", None)
        out.append(
            Trigger(
                event=event,
                branches=_as_list(branches) or None,
                paths=_as_list(paths) or None,
                options=opts,
            )
        )
    return tuple(out)


def _policy(raw: Union[bool, Dict[str, Any], None]) -> ConcurrencyPolicy:
    if raw is None:
        return ConcurrencyPolicy()
    if isinstance(raw, bool):
        return ConcurrencyPolicy(cancel_in_progress=raw)
    value = raw.get("cancel-in-progress", raw.get("cancel_in_progress", False))
    if not isinstance(value, bool):
        raise DefinitionError("concurrency.cancel-in-progress must be a boolean")
    return ConcurrencyPolicy(cancel_in_progress=value)


def _named_jobs(raw: RawWorkflow) -> List[Tuple[str, RawJob]]:
    if isinstance(raw.jobs, dict):
        return list(raw.jobs.items())

    named: List[Tuple[str, RawJob]] = []
    for i, job in enumerate(raw.jobs):
        if not job.name:
            raise DefinitionError(f"jobs[{i}] is missing required field 'name'")
        named.append((job.name, job))

    names = [n for n, _ in named]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise DefinitionError(f"Duplicate job names found: {dupes}")
    return named


def _check_instance_ids(jobs: Dict[str, JobTemplate]) -> None:
    # matrix values are rendered as text, so 1 and 1.0, or a job called
    # "test (3.12)" next to a matrix job `test`, can land on the same id
    owners: Dict[str, List[str]] = {}
    for inst in expand_all(jobs.values()):
        owners.setdefault(inst.id, []).append(inst.job_name)
    problems = [
        f"instance id {iid!r} is produced more than once (jobs: {', '.join(names)})"
        for iid, names in owners.items()
        if len(names) > 1
    ]
    if problems:
        raise DefinitionError("Duplicate job instance ids", problems=problems)


def parse(raw: Mapping[str, Any]) -> WorkflowDefinition:
    """
    Turn an already-parsed workflow document into a WorkflowDefinition.

    Raises DefinitionError on missing required fields, duplicate job names,
    `needs` on an undefined job, self-references and dependency cycles.
    Pure: no side effects.
    """
    if not isinstance(raw, Mapping):
        raise DefinitionError(f"Workflow definition must be a mapping, got {type(raw).__name__}")

    try:
        doc = RawWorkflow.model_validate(dict(raw))
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        ]
        raise DefinitionError("Invalid workflow definition", problems=problems) from e

    named = _named_jobs(doc)
    if not named:
        raise DefinitionError("Workflow defines no jobs")

    jobs: Dict[str, JobTemplate] = {name: _job(name, rj) for name, rj in named}
    check_acyclic({name: t.needs for name, t in jobs.items()})
    _check_instance_ids(jobs)

    return WorkflowDefinition(
        name=doc.name,
        jobs=jobs,
        triggers=_triggers(doc.on),
        env={k: _stringify(v) for k, v in doc.env.items()},
        concurrency=_policy(doc.concurrency),
    )


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def _reject_duplicate_keys(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for k, v in pairs:
        if k in out:
            raise DefinitionError(f"Duplicate key in workflow file: {k!r}")
        out[k] = v
    return out


def load_workflow(path: Union[str, Path]) -> WorkflowDefinition:
    """
    Load a workflow from a file path.

    Supported files:
      - .py   defining `workflow()` (returning a WorkflowDefinition or a raw
              mapping) or a `WORKFLOW` variable
      - .json holding the raw mapping
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix == ".json":
        try:
            raw = json.loads(wf_path.read_text(encoding="utf-8"), object_pairs_hook=_reject_duplicate_keys)
        except json.JSONDecodeError as e:
            raise DefinitionError(f"Workflow file is not valid JSON: {e}") from e
        return parse(raw)

    if wf_path.suffix != ".py":
        raise DefinitionError(f"Workflow must be a .py or .json file, got: {wf_path.name}")

    module_name = f"flowci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        result = globals_dict["workflow"]()
    elif "WORKFLOW" in globals_dict:
        result = globals_dict["WORKFLOW"]
    else:
        raise DefinitionError(
            f"{wf_path.name} must define workflow() or WORKFLOW",
        )

    if isinstance(result, WorkflowDefinition):
        return result
    if isinstance(result, Mapping):
        return parse(result)
    raise DefinitionError(
        "workflow() must return a WorkflowDefinition or a mapping, "
        f"got {type(result).__name__}"
    )
