# executor.py
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import tarfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .actions import ActionResolver, builtin_name
from .cache import compute_cache_key, split_paths
from .context import RunContext
from .errors import ArtifactNotFoundError, ExpressionError, FlowError, StepExecutionError, WorkerFault
from .expressions import evaluate_condition, interpolate
from .model import JobInstance, JobStatus, StepKind, StepResult, StepStatus, StepTemplate
from .state import RunStateTracker
from .ui.console import get_console

OUTPUT_TAIL = 64 * 1024
POLL_SECONDS = 0.1
CHECKOUT_IGNORE = shutil.ignore_patterns(".git", ".flowci", "__pycache__")
_POSIX = os.name == "posix"


def _kill(proc: subprocess.Popen) -> None:
    # the shell runs in its own session; kill the whole group so its children
    # do not keep the output pipe open
    try:
        if _POSIX:
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


class _StepCancelled(Exception):
    pass


@dataclass
class _StepOutcome:
    exit_code: Optional[int] = 0
    output: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)


@dataclass
class _JobState:
    """Per-run-of-a-job scratch state, never shared across threads."""
    instance: JobInstance
    workspace: Path
    env: Dict[str, str]
    expr: Dict[str, Any]
    deadline: Optional[float]
    steps: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    post: List[Tuple[str, Callable[[], None]]] = field(default_factory=list)


def parse_output_file(text: str) -> Dict[str, str]:
    """
    Step outputs written to $FLOWCI_OUTPUT:
        name=value
        name<<EOF
        multi-line value
        EOF
    """
    outputs: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, delim = line.split("<<", 1)
            value: List[str] = []
            while i < len(lines) and lines[i] != delim:
                value.append(lines[i])
                i += 1
            i += 1  # delimiter
            outputs[name.strip()] = "\n".join(value)
        elif "=" in line:
            name, value_s = line.split("=", 1)
            outputs[name.strip()] = value_s
    return outputs


class ExecutionEngine:
    """
    Runs one JobInstance's steps, in order, on its assigned worker.

    - `if:` false skips the step, not the job
    - a failed step halts the job unless it has continue-on-error
    - built-in actions (checkout, cache, upload/download-artifact) use the
      run's shared stores; any other `uses:` goes through the ActionResolver
    """

    def __init__(
        self,
        ctx: RunContext,
        tracker: RunStateTracker,
        resolver: Optional[ActionResolver] = None,
    ):
        self.ctx = ctx
        self.tracker = tracker
        self.resolver = resolver or ActionResolver()

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    def run(self, instance: JobInstance) -> JobStatus:
        try:
            workspace = self.ctx.workspace_for(instance)
        except OSError as e:
            raise WorkerFault(f"could not prepare workspace: {e}", job=instance.id) from e

        template = instance.template
        needs = self.tracker.needs_context(template.needs)
        expr = self.ctx.expression_context(instance, needs=needs)
        env = self._resolve_env(instance, instance.env, expr)
        expr["env"] = env
        instance.env = env

        timeout = template.timeout_minutes
        state = _JobState(
            instance=instance,
            workspace=workspace,
            env=env,
            expr=expr,
            deadline=time.monotonic() + timeout * 60 if timeout else None,
        )

        failed = False
        for idx, step in enumerate(template.steps):
            if instance.cancelled:
                self._record_rest(state, template.steps[idx:], StepStatus.CANCELLED, "job cancelled")
                return JobStatus.CANCELLED

            if failed:
                self._record(state, step, StepStatus.SKIPPED, error="skipped: a previous step failed")
                continue

            result = self._run_step(state, idx, step)
            if result.status is StepStatus.CANCELLED:
                self._record_rest(state, template.steps[idx + 1:], StepStatus.CANCELLED, "job cancelled")
                return JobStatus.CANCELLED
            if result.status is StepStatus.FAILED and not step.continue_on_error:
                failed = True

        if failed:
            return JobStatus.FAILED
        if instance.cancelled:
            return JobStatus.CANCELLED

        for label, hook in state.post:
            try:
                hook()
            except (OSError, FlowError) as e:
                self.tracker.warn(instance, f"post-job {label} failed: {e}")

        instance.outputs = self._job_outputs(state)
        return JobStatus.SUCCEEDED

    def _resolve_env(self, instance: JobInstance, raw: Dict[str, str], expr: Dict[str, Any]) -> Dict[str, str]:
        env: Dict[str, str] = {}
        for k, v in raw.items():
            try:
                env[k] = interpolate(v, {**expr, "env": env})
            except ExpressionError as e:
                self.tracker.warn(instance, f"env {k}: {e.message}; left unresolved")
                env[k] = v
        return env

    def _job_outputs(self, state: _JobState) -> Dict[str, str]:
        ctx = {**state.expr, "steps": state.steps}
        outputs: Dict[str, str] = {}
        for name, template in state.instance.template.outputs.items():
            try:
                outputs[name] = interpolate(template, ctx)
            except ExpressionError as e:
                self.tracker.warn(state.instance, f"output {name}: {e.message}")
        return outputs

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _record(
        self,
        state: _JobState,
        step: StepTemplate,
        status: StepStatus,
        *,
        outcome: Optional[_StepOutcome] = None,
        duration: float = 0.0,
        error: Optional[str] = None,
    ) -> StepResult:
        outcome = outcome or _StepOutcome(exit_code=None)
        result = StepResult(
            name=step.name,
            status=status,
            step_id=step.id,
            exit_code=outcome.exit_code,
            output=outcome.output,
            outputs=dict(outcome.outputs),
            duration=duration,
            error=error,
        )
        self.tracker.record_step(state.instance, result)
        if step.id:
            conclusion = "success" if status is StepStatus.FAILED and step.continue_on_error else result.outcome
            state.steps[step.id] = {
                "outputs": dict(outcome.outputs),
                "outcome": result.outcome,
                "conclusion": conclusion,
            }
        if status is not StepStatus.SKIPPED:
            get_console().print_step_result(state.instance.id, step.name, status.value, duration, outcome.output)
        return result

    def _record_rest(self, state: _JobState, steps, status: StepStatus, reason: str) -> None:
        for step in steps:
            self._record(state, step, status, error=reason)

    def _step_context(self, state: _JobState, step: StepTemplate) -> Dict[str, Any]:
        ctx = {**state.expr, "steps": state.steps}
        env = dict(state.env)
        for k, v in step.env.items():
            try:
                env[k] = interpolate(v, {**ctx, "env": env})
            except ExpressionError as e:
                raise StepExecutionError(
                    f"env {k}: {e.message}", exit_code=1, job=state.instance.id, step=step.name
                ) from e
        ctx["env"] = env
        return ctx

    def _run_step(self, state: _JobState, idx: int, step: StepTemplate) -> StepResult:
        instance = state.instance

        try:
            ctx = self._step_context(state, step)
        except StepExecutionError as e:
            return self._record(state, step, StepStatus.FAILED, outcome=_StepOutcome(exit_code=1), error=e.message)

        try:
            should_run = evaluate_condition(step.if_, ctx)
        except ExpressionError as e:
            self.tracker.warn(instance, f"{e.message}; treating `if` as false", step=step.name)
            return self._record(state, step, StepStatus.SKIPPED, error=f"invalid condition: {e.reason}")

        if not should_run:
            return self._record(state, step, StepStatus.SKIPPED, error="condition evaluated to false")

        get_console().print_step(instance.id, step.name)
        start = time.monotonic()
        try:
            if step.kind is StepKind.RUN:
                outcome = self._run_command(state, idx, step, ctx)
            else:
                outcome = self._run_action(state, step, ctx)
        except _StepCancelled:
            return self._record(state, step, StepStatus.CANCELLED, duration=time.monotonic() - start, error="job cancelled")
        except (StepExecutionError, ArtifactNotFoundError, ExpressionError) as e:
            failed = _StepOutcome(
                exit_code=getattr(e, "exit_code", 1),
                output=getattr(e, "output", "") or "",
            )
            return self._record(
                state,
                step,
                StepStatus.FAILED,
                outcome=failed,
                duration=time.monotonic() - start,
                error=e.message,
            )
        except (OSError, tarfile.TarError) as e:
            # unreadable source files, a corrupt cache archive
            return self._record(
                state,
                step,
                StepStatus.FAILED,
                outcome=_StepOutcome(exit_code=1),
                duration=time.monotonic() - start,
                error=f"{type(e).__name__}: {e}",
            )

        return self._record(state, step, StepStatus.SUCCEEDED, outcome=outcome, duration=time.monotonic() - start)

    def _step_timeout(self, state: _JobState, step: StepTemplate) -> Optional[float]:
        limits: List[float] = []
        if step.timeout_minutes:
            limits.append(time.monotonic() + step.timeout_minutes * 60)
        if state.deadline is not None:
            limits.append(state.deadline)
        return min(limits) if limits else None

    def _run_command(self, state: _JobState, idx: int, step: StepTemplate, ctx: Dict[str, Any]) -> _StepOutcome:
        instance = state.instance
        command = interpolate(step.run or "", ctx)

        cwd = (state.workspace / (step.working_directory or ".")).resolve()
        if not cwd.is_dir():
            raise StepExecutionError(f"working directory not found: {cwd}", exit_code=1, job=instance.id, step=step.name)

        out_dir = state.workspace.parent / ".outputs"
        out_dir.mkdir(parents=True, exist_ok=True)
        output_file = out_dir / f"{state.workspace.name}-{idx}.env"
        output_file.write_text("", encoding="utf-8")

        env = os.environ.copy()
        env.update(ctx["env"])
        env.update(
            {
                "CI": "true",
                "FLOWCI": "true",
                "FLOWCI_RUN_ID": self.ctx.run_id,
                "FLOWCI_JOB": instance.id,
                "FLOWCI_WORKSPACE": str(state.workspace),
                "FLOWCI_OUTPUT": str(output_file),
            }
        )

        deadline = self._step_timeout(state, step)
        proc = subprocess.Popen(
            command,
            shell=True,
            start_new_session=_POSIX,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )

        timed_out = False
        while True:
            try:
                stdout, _ = proc.communicate(timeout=POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if instance.cancelled:
                    _kill(proc)
                    proc.communicate()
                    raise _StepCancelled()
                if deadline is not None and time.monotonic() >= deadline:
                    timed_out = True
                    _kill(proc)
                    stdout, _ = proc.communicate()
                    break

        output = (stdout or "")[-OUTPUT_TAIL:]
        if timed_out:
            raise StepExecutionError(
                "step timed out", exit_code=124, output=output, job=instance.id, step=step.name
            )
        if proc.returncode != 0:
            raise StepExecutionError(
                f"command exited with {proc.returncode}",
                exit_code=proc.returncode,
                output=output,
                job=instance.id,
                step=step.name,
                details={"cmd": command},
            )

        outputs = parse_output_file(output_file.read_text(encoding="utf-8"))
        return _StepOutcome(exit_code=0, output=output, outputs=outputs)

    def _run_action(self, state: _JobState, step: StepTemplate, ctx: Dict[str, Any]) -> _StepOutcome:
        ref = interpolate(step.uses or "", ctx)
        inputs = {k: interpolate(v, ctx) for k, v in step.inputs.items()}

        builtin = builtin_name(ref)
        if builtin is not None:
            return _BUILTINS[builtin](self, state, step, inputs)

        result = self.resolver.invoke(ref, inputs, ctx["env"], state.workspace)
        if state.instance.cancelled:
            raise _StepCancelled()
        if result.exit_code != 0:
            raise StepExecutionError(
                f"action {ref!r} exited with {result.exit_code}",
                exit_code=result.exit_code,
                output=result.output,
                job=state.instance.id,
                step=step.name,
            )
        return _StepOutcome(exit_code=0, output=result.output, outputs=dict(result.outputs))

    # ------------------------------------------------------------------
    # Built-in actions
    # ------------------------------------------------------------------

    def _require(self, inputs: Dict[str, str], name: str, step: StepTemplate, instance: JobInstance) -> str:
        value = inputs.get(name, "").strip()
        if not value:
            raise StepExecutionError(f"missing required input {name!r}", exit_code=1, job=instance.id, step=step.name)
        return value

    def _checkout(self, state: _JobState, step: StepTemplate, inputs: Dict[str, str]) -> _StepOutcome:
        dest = (state.workspace / inputs.get("path", ".")).resolve()
        src = self.ctx.source_dir
        if not src.is_dir():
            raise StepExecutionError(f"source directory not found: {src}", exit_code=1, job=state.instance.id, step=step.name)
        # never copy the run's own home into itself
        home = self.ctx.home
        ignore_home = shutil.ignore_patterns(home.name) if home.parent == src else None

        def _ignore(d, names):
            ignored = set(CHECKOUT_IGNORE(d, names))
            if ignore_home is not None and Path(d).resolve() == src:
                ignored |= set(ignore_home(d, names))
            return ignored

        shutil.copytree(src, dest, ignore=_ignore, dirs_exist_ok=True)
        return _StepOutcome(output=f"checked out {src} into {dest}")

    def _cache(self, state: _JobState, step: StepTemplate, inputs: Dict[str, str]) -> _StepOutcome:
        instance = state.instance
        key_template = self._require(inputs, "key", step, instance)
        paths = split_paths(self._require(inputs, "path", step, instance))
        hash_files = split_paths(inputs.get("hash-files"))

        key = compute_cache_key(key_template, workspace=state.workspace, hash_files=hash_files)
        hit = self.ctx.cache.restore(key, workspace=state.workspace)
        get_console().print_cache(instance.id, f"{hit.reason} ({key})")

        if not hit.hit:
            def _save() -> None:
                self.ctx.cache.save(key, paths, workspace=state.workspace)
                get_console().print_cache(instance.id, f"saved ({key})")

            state.post.append((f"cache save {key}", _save))

        return _StepOutcome(
            output=hit.reason,
            outputs={"cache-hit": "true" if hit.hit else "false", "cache-key": key},
        )

    def _upload_artifact(self, state: _JobState, step: StepTemplate, inputs: Dict[str, str]) -> _StepOutcome:
        name = inputs.get("name", "artifact").strip() or "artifact"
        paths = split_paths(self._require(inputs, "path", step, state.instance))
        try:
            files = self.ctx.artifacts.upload(name, paths, workspace=state.workspace)
        except ValueError as e:
            raise StepExecutionError(str(e), exit_code=1, job=state.instance.id, step=step.name) from e
        return _StepOutcome(
            output=f"uploaded {len(files)} file(s) as {name!r}",
            outputs={"artifact-name": name, "file-count": str(len(files))},
        )

    def _download_artifact(self, state: _JobState, step: StepTemplate, inputs: Dict[str, str]) -> _StepOutcome:
        name = self._require(inputs, "name", step, state.instance)
        dest = (state.workspace / inputs.get("path", ".")).resolve()
        try:
            files = self.ctx.artifacts.download(name, dest=dest)
        except ArtifactNotFoundError as e:
            e.job, e.step = state.instance.id, step.name
            raise
        except ValueError as e:
            raise StepExecutionError(str(e), exit_code=1, job=state.instance.id, step=step.name) from e
        return _StepOutcome(
            output=f"downloaded {len(files)} file(s) from {name!r}",
            outputs={"download-path": str(dest)},
        )


_BUILTINS: Dict[str, Callable[[ExecutionEngine, _JobState, StepTemplate, Dict[str, str]], _StepOutcome]] = {
    "checkout": ExecutionEngine._checkout,
    "cache": ExecutionEngine._cache,
    "upload-artifact": ExecutionEngine._upload_artifact,
    "download-artifact": ExecutionEngine._download_artifact,
}
